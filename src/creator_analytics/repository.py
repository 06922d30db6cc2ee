from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .errors import DataUnavailable
from .models import CampaignSend, EventRecord, EventType, Plan, Role, UserRecord
from .periods import coerce_timezone, normalize_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSnapshot:
    users: Sequence[UserRecord] = field(default_factory=tuple)
    events: Sequence[EventRecord] = field(default_factory=tuple)
    campaigns: Sequence[CampaignSend] = field(default_factory=tuple)


def _lower_bound(column: str, start: Optional[datetime]) -> str:
    return "" if start is None else f" AND {column} >= :start"


def _bounds(start: Optional[datetime], end: datetime) -> dict:
    params = {"end": end}
    if start is not None:
        params["start"] = start
    return params


class AnalyticsRepository:
    """
    Read API over the event source and the user projection.

    ``load`` returns everything that happened strictly before ``end``;
    implementations raise ``DataUnavailable`` instead of returning an empty
    snapshot when the store cannot be read.
    """

    def load(self, end: datetime, start: Optional[datetime] = None) -> SourceSnapshot:
        raise NotImplementedError

    def handle_exists(self, handle: str) -> bool:
        raise NotImplementedError


class InMemoryRepository(AnalyticsRepository):
    """Serve a fixed set of records, e.g. the inline payload of an ad-hoc request."""

    def __init__(
        self,
        users: Sequence[UserRecord],
        events: Sequence[EventRecord],
        campaigns: Sequence[CampaignSend] = (),
        timezone: str = "UTC",
    ) -> None:
        self.tz = coerce_timezone(timezone)
        self.users = tuple(users)
        self.events = tuple(events)
        self.campaigns = tuple(campaigns)

    def load(self, end: datetime, start: Optional[datetime] = None) -> SourceSnapshot:
        end = normalize_datetime(end, self.tz)
        start = None if start is None else normalize_datetime(start, self.tz)

        def _within(moment: datetime) -> bool:
            moment = normalize_datetime(moment, self.tz)
            return moment < end and (start is None or moment >= start)

        return SourceSnapshot(
            users=tuple(user for user in self.users if normalize_datetime(user.signup_at, self.tz) < end),
            events=tuple(event for event in self.events if _within(event.occurred_at)),
            campaigns=tuple(send for send in self.campaigns if _within(send.sent_at)),
        )

    def handle_exists(self, handle: str) -> bool:
        return any((user.handle or "").lstrip("@").lower() == handle for user in self.users)


class SQLAnalyticsRepository(AnalyticsRepository):
    """
    Load the analytics snapshot from the platform database.

    Expected tables:
      - users(id, signup_at, role, plan, first_product_at, upgrade_at, name, handle, channel)
      - events(id, user_id, event_type, occurred_at, value, properties_json)
      - campaign_sends(id, channel, sent_at, campaign_id)
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def load(self, end: datetime, start: Optional[datetime] = None) -> SourceSnapshot:
        try:
            return SourceSnapshot(
                users=self._load_users(end),
                events=self._load_events(end, start),
                campaigns=self._load_campaigns(end, start),
            )
        except SQLAlchemyError as exc:
            raise DataUnavailable("event store", str(exc)) from exc

    def handle_exists(self, handle: str) -> bool:
        query = text("SELECT 1 FROM users WHERE lower(handle) = :handle LIMIT 1")
        try:
            with self.engine.connect() as connection:
                return connection.execute(query, {"handle": handle}).first() is not None
        except SQLAlchemyError as exc:
            raise DataUnavailable("user store", str(exc)) from exc

    def _load_users(self, end: datetime) -> Sequence[UserRecord]:
        query = text(
            """
            SELECT id, signup_at, role, plan, first_product_at, upgrade_at, name, handle, channel
            FROM users
            WHERE signup_at < :end
            ORDER BY signup_at ASC
            """
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query, {"end": end}).fetchall()
        users = []
        for row in rows:
            user = self._row_to_user(row)
            if user is not None:
                users.append(user)
        return tuple(users)

    def _load_events(self, end: datetime, start: Optional[datetime]) -> Sequence[EventRecord]:
        query = text(
            "SELECT id, user_id, event_type, occurred_at, value, properties_json FROM events "
            f"WHERE occurred_at < :end{_lower_bound('occurred_at', start)} "
            "ORDER BY occurred_at ASC, id ASC"
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query, _bounds(start, end)).fetchall()
        events = []
        for row in rows:
            event = self._row_to_event(row)
            if event is not None:
                events.append(event)
        return tuple(events)

    def _load_campaigns(self, end: datetime, start: Optional[datetime]) -> Sequence[CampaignSend]:
        query = text(
            "SELECT id, channel, sent_at, campaign_id FROM campaign_sends "
            f"WHERE sent_at < :end{_lower_bound('sent_at', start)} "
            "ORDER BY sent_at ASC"
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query, _bounds(start, end)).fetchall()
        return tuple(
            CampaignSend(
                id=str(row.id),
                channel=str(row.channel),
                sent_at=row.sent_at,
                campaign_id=None if row.campaign_id is None else str(row.campaign_id),
            )
            for row in rows
        )

    @staticmethod
    def _row_to_user(row: Row) -> Optional[UserRecord]:
        try:
            role = Role(str(row.role))
            plan = Plan(str(row.plan or Plan.FREE.value))
        except ValueError:
            logger.warning("Skipping user %s with unknown role/plan %r/%r", row.id, row.role, row.plan)
            return None
        return UserRecord(
            id=str(row.id),
            signup_at=row.signup_at,
            role=role,
            plan=plan,
            first_product_at=row.first_product_at,
            upgrade_at=row.upgrade_at,
            name=row.name,
            handle=row.handle,
            channel=row.channel,
        )

    @staticmethod
    def _row_to_event(row: Row) -> Optional[EventRecord]:
        try:
            event_type = EventType(str(row.event_type))
        except ValueError:
            logger.warning("Skipping event %s with unknown type %r", row.id, row.event_type)
            return None
        properties = row.properties_json
        if isinstance(properties, str):
            try:
                properties = json.loads(properties)
            except json.JSONDecodeError:
                logger.warning("Unreadable properties on event %s", row.id)
                properties = {}
        elif properties is None:
            properties = {}
        return EventRecord(
            id=str(row.id),
            user_id=str(row.user_id),
            type=event_type,
            occurred_at=row.occurred_at,
            value=None if row.value is None else float(row.value),
            properties=properties,
        )


@dataclass(frozen=True)
class RepositoryConfig:
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        return cls(database_url=os.getenv("ANALYTICS_DATABASE_URL"))


def build_repository_from_env(config: Optional[RepositoryConfig] = None) -> Optional[AnalyticsRepository]:
    cfg = config or RepositoryConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url)
        return SQLAnalyticsRepository(engine)
    return None
