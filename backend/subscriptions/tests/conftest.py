from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from projects.models import Plan, Project
from subscriptions.models import Subscriber
from subscriptions.services import telegram_gateway
from subscriptions.tests.helpers import CONNECT_WEBHOOK_SECRET, WEBHOOK_SECRET, FakeGateway


@pytest.fixture(autouse=True)
def engine_settings(settings):
    settings.GATEWAY_RETRY_BASE_DELAY_SECONDS = 0
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.STRIPE_CONNECT_WEBHOOK_SECRET = CONNECT_WEBHOOK_SECRET
    settings.WEBHOOK_RATE_LIMIT_REQUESTS = 100
    settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS = 60
    cache.clear()
    yield settings
    cache.clear()


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(telegram_gateway, "get_gateway", lambda project: fake)
    return fake


@pytest.fixture
def owner(db):
    return get_user_model().objects.create_user(username="owner", email="owner@example.com", password="pass1234")


@pytest.fixture
def staff_user(db):
    return get_user_model().objects.create_user(
        username="staff",
        email="staff@example.com",
        password="pass1234",
        is_staff=True,
    )


@pytest.fixture
def project(owner):
    return Project.objects.create(
        owner=owner,
        project_name="Signals Pro",
        bot_token="123:abc",
        channel_id="-100111",
    )


@pytest.fixture
def plan(project):
    return Plan.objects.create(project=project, plan_name="Monthly", price=Decimal("19.99"), duration_days=30)


@pytest.fixture
def make_subscriber(project, plan):
    counter = {"value": 1000}

    def factory(**overrides):
        counter["value"] += 1
        fields = {
            "project": project,
            "plan": plan,
            "telegram_user_id": counter["value"],
            "first_name": "Ada",
            "status": Subscriber.Status.ACTIVE,
            "start_date": timezone.now() - timedelta(days=25),
            "expiry_date": timezone.now() + timedelta(days=5),
        }
        fields.update(overrides)
        return Subscriber.objects.create(**fields)

    return factory


@pytest.fixture
def api_client(owner):
    client = APIClient()
    client.force_authenticate(user=owner)
    return client
