"""Management command to drain the failed-operation queue on demand."""
from __future__ import annotations

from typing import Optional

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from subscriptions.models import FailedOperation
from subscriptions.services.drain import MANUAL_INTERVENTION, drain_failed_operations, due_operation_ids
from subscriptions.services.failed_operations import requeue_manual_operations


class Command(BaseCommand):
    help = "Re-attempt due failed operations (revocations and access grants) immediately."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of operations to attempt in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List operations that are due without attempting them.",
        )
        parser.add_argument(
            "--requeue-manual",
            action="store_true",
            help="Move operations flagged for manual intervention back to the queue before draining.",
        )

    def handle(self, *args, **options) -> None:
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")
        now = timezone.now()

        if options.get("requeue_manual"):
            if dry_run:
                flagged = FailedOperation.objects.filter(status=FailedOperation.Status.MANUAL_INTERVENTION).count()
                self.stdout.write(f"{flagged} flagged operations would be requeued.")
            else:
                stats = requeue_manual_operations(now=now)
                self.stdout.write(f"Requeued {stats['requeued']} operations ({stats['skipped']} skipped).")

        if dry_run:
            ids = due_operation_ids(now=now, limit=limit)
            for operation in FailedOperation.objects.filter(pk__in=ids).order_by("next_retry_at"):
                self.stdout.write(
                    f"{operation.pk}: {operation.action} subscriber={operation.subscriber_id} "
                    f"attempts={operation.attempts}/{operation.max_attempts}"
                )
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(ids)} operations are due."))
            return

        stats = drain_failed_operations(now=now, limit=limit)
        if stats["total"] == 0:
            self.stdout.write(self.style.WARNING("No failed operations are due."))
            return

        summary = (
            f"Drain complete: {stats['succeeded']} succeeded, {stats['obsolete']} obsolete, "
            f"{stats['failed']} rescheduled, {stats[MANUAL_INTERVENTION]} flagged, "
            f"{stats['errors']} errors, {stats['total']} total."
        )
        if stats["errors"]:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
