import itertools
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from creator_analytics.dataset import AnalyticsDataset
from creator_analytics.models import CampaignSend, EventRecord, EventType, Plan, Role, UserRecord

UTC = timezone.utc

_ids = itertools.count(1)


def at(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def user(
    user_id: str,
    signup_at: datetime,
    role: Role = Role.FOLLOWER,
    plan: Plan = Plan.FREE,
    **extra: Any,
) -> UserRecord:
    return UserRecord(id=user_id, signup_at=signup_at, role=role, plan=plan, **extra)


def event(
    user_id: str,
    event_type: EventType,
    occurred_at: datetime,
    value: Optional[float] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> EventRecord:
    return EventRecord(
        id=f"evt-{next(_ids)}",
        user_id=user_id,
        type=event_type,
        occurred_at=occurred_at,
        value=value,
        properties=properties or {},
    )


def click_on(creator_id: str, occurred_at: datetime, visitor_id: str = "visitor") -> EventRecord:
    return event(visitor_id, EventType.CLICK, occurred_at, properties={"creator_id": creator_id})


def send(channel: str, sent_at: datetime) -> CampaignSend:
    return CampaignSend(id=f"send-{next(_ids)}", channel=channel, sent_at=sent_at)


@pytest.fixture(autouse=True)
def _clean_analytics_env(monkeypatch):
    """Keep developer shells from leaking ANALYTICS_* overrides into tests."""

    for name in list(os.environ):
        if name.startswith("ANALYTICS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_dataset():
    def _make(users, events=(), campaigns=(), **kwargs) -> AnalyticsDataset:
        return AnalyticsDataset(users=users, events=events, campaigns=campaigns, **kwargs)

    return _make


@pytest.fixture
def creator_platform():
    """
    Small creator platform used by the façade and HTTP tests.

    Two creators and two followers signed up in January 2024; activity runs
    through February.
    """

    users = [
        user("c1", at(2024, 1, 2, 9), Role.CREATOR, Plan.PRO, first_product_at=at(2024, 1, 3), upgrade_at=at(2024, 1, 20), handle="@Maya"),
        user("c2", at(2024, 1, 9, 9), Role.CREATOR, first_product_at=at(2024, 1, 12), handle="leo"),
        user("f1", at(2024, 1, 4, 9), channel="email"),
        user("f2", at(2024, 1, 16, 9), channel="push"),
    ]
    events = [
        event("c1", EventType.PRODUCT_CREATED, at(2024, 1, 3)),
        event("c1", EventType.SUBSCRIPTION_STARTED, at(2024, 1, 20), value=9.99),
        event("c2", EventType.PRODUCT_CREATED, at(2024, 1, 12)),
        event("c1", EventType.POST_CREATED, at(2024, 2, 5)),
        event("f1", EventType.FOLLOW, at(2024, 1, 5)),
        event("f1", EventType.FAVORITE, at(2024, 1, 6)),
        event("f1", EventType.SESSION, at(2024, 1, 7), value=300, properties={"pages": 4}),
        click_on("c1", at(2024, 1, 10), visitor_id="f1"),
        click_on("c1", at(2024, 2, 10), visitor_id="f2"),
        click_on("c2", at(2024, 2, 12), visitor_id="f2"),
        event("f2", EventType.SESSION, at(2024, 2, 12), value=600, properties={"pages": 1}),
    ]
    return users, events
