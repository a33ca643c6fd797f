from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import IntegrityError

from projects.models import Plan, Project

pytestmark = pytest.mark.django_db


@pytest.fixture
def owner():
    return get_user_model().objects.create_user(username="owner", password="pass1234")


def test_ownership_check(owner):
    project = Project.objects.create(owner=owner, project_name="Alpha", bot_token="1:a", channel_id="-1001")
    stranger = get_user_model().objects.create_user(username="stranger", password="pass1234")

    assert project.is_owned_by(owner)
    assert not project.is_owned_by(stranger)
    assert not project.is_owned_by(AnonymousUser())


def test_price_in_minor_units(owner):
    project = Project.objects.create(owner=owner, project_name="Alpha", bot_token="1:a", channel_id="-1001")
    plan = Plan.objects.create(project=project, plan_name="Weekly", price=Decimal("4.99"), duration_days=7)

    assert plan.price_in_minor_units == 499
    assert str(plan) == "Weekly (7d)"


def test_connected_account_is_unique_per_project(owner):
    Project.objects.create(owner=owner, project_name="Alpha", bot_token="1:a", channel_id="-1001",
                           stripe_account_id="acct_1")

    with pytest.raises(IntegrityError):
        Project.objects.create(owner=owner, project_name="Beta", bot_token="2:b", channel_id="-1002",
                               stripe_account_id="acct_1")


def test_projects_without_connected_account_coexist(owner):
    Project.objects.create(owner=owner, project_name="Alpha", bot_token="1:a", channel_id="-1001")
    Project.objects.create(owner=owner, project_name="Beta", bot_token="2:b", channel_id="-1002")

    assert Project.objects.filter(stripe_account_id__isnull=True).count() == 2
