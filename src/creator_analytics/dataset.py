from __future__ import annotations

import threading
from bisect import bisect_left
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Collection, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from .errors import InvalidParameter, QueryCancelled
from .models import (
    CampaignSend,
    EventRecord,
    EventType,
    Plan,
    PlanFilter,
    Role,
    RoleFilter,
    UserRecord,
)
from .periods import coerce_timezone, normalize_datetime

ACTIVITY_EVENTS = frozenset(
    {
        EventType.CLICK,
        EventType.FAVORITE,
        EventType.FOLLOW,
        EventType.SESSION,
        EventType.PRODUCT_CREATED,
        EventType.POST_CREATED,
        EventType.SUBSCRIPTION_STARTED,
    }
)

_ROLE_FILTERS = {
    RoleFilter.ALL: None,
    RoleFilter.CREATORS: Role.CREATOR,
    RoleFilter.FOLLOWERS: Role.FOLLOWER,
}
_PLAN_FILTERS = {
    PlanFilter.ALL: None,
    PlanFilter.FREE: Plan.FREE,
    PlanFilter.PRO: Plan.PRO,
}
_CANCEL_CHECK_EVERY = 1024


class CancellationToken:
    """Cooperative cancel flag shared between a caller and an in-flight scan."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled()


class AnalyticsDataset:
    """
    Immutable snapshot of the event source.

    All timestamps are localized to ``timezone`` once on construction so the
    calendar bucketing downstream never has to think about conversions. Events
    are sorted by ``occurred_at`` with a stable sort, so events sharing a
    timestamp keep their append order.
    """

    def __init__(
        self,
        users: Sequence[UserRecord],
        events: Sequence[EventRecord],
        campaigns: Sequence[CampaignSend] = (),
        timezone: str = "UTC",
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.tz = coerce_timezone(timezone)
        self.cancel = cancel or CancellationToken()

        localized_users = [self._localize_user(user) for user in users]
        self.users: Dict[str, UserRecord] = {
            user.id: user for user in sorted(localized_users, key=lambda user: (user.signup_at, user.id))
        }
        self.events: Sequence[EventRecord] = tuple(
            sorted(
                (replace(event, occurred_at=self.localize(event.occurred_at)) for event in events),
                key=lambda event: event.occurred_at,
            )
        )
        self.campaigns: Sequence[CampaignSend] = tuple(
            sorted(
                (replace(send, sent_at=self.localize(send.sent_at)) for send in campaigns),
                key=lambda send: send.sent_at,
            )
        )

        self._events_by_user: Dict[str, List[EventRecord]] = defaultdict(list)
        self._clicks_by_creator: Dict[str, List[EventRecord]] = defaultdict(list)
        for event in self.events:
            self._events_by_user[event.user_id].append(event)
            if event.type is EventType.CLICK:
                creator_id = event.properties.get("creator_id")
                if creator_id:
                    self._clicks_by_creator[str(creator_id)].append(event)
        self._times_by_user = {
            user_id: [event.occurred_at for event in user_events]
            for user_id, user_events in self._events_by_user.items()
        }

    def localize(self, moment: datetime) -> datetime:
        return normalize_datetime(moment, self.tz)

    def _localize_user(self, user: UserRecord) -> UserRecord:
        return replace(
            user,
            signup_at=self.localize(user.signup_at),
            first_product_at=None if user.first_product_at is None else self.localize(user.first_product_at),
            upgrade_at=None if user.upgrade_at is None else self.localize(user.upgrade_at),
        )

    def check_cancelled(self) -> None:
        self.cancel.raise_if_cancelled()

    def filter_users(
        self,
        role: RoleFilter = RoleFilter.ALL,
        plan: PlanFilter = PlanFilter.ALL,
        signed_up_before: Optional[datetime] = None,
    ) -> List[UserRecord]:
        try:
            wanted_role = _ROLE_FILTERS[RoleFilter(role)]
        except ValueError:
            raise InvalidParameter("role", role, [item.value for item in RoleFilter]) from None
        try:
            wanted_plan = _PLAN_FILTERS[PlanFilter(plan)]
        except ValueError:
            raise InvalidParameter("plan", plan, [item.value for item in PlanFilter]) from None

        selected = []
        for user in self.users.values():
            if wanted_role is not None and user.role is not wanted_role:
                continue
            if wanted_plan is not None and user.plan is not wanted_plan:
                continue
            if signed_up_before is not None and user.signup_at >= signed_up_before:
                continue
            selected.append(user)
        return selected

    def iter_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        types: Optional[Collection[EventType]] = None,
    ) -> Iterator[EventRecord]:
        """Yield events in ``[start, end)`` in stable ``occurred_at`` order."""

        for index, event in enumerate(self.events):
            if index % _CANCEL_CHECK_EVERY == 0:
                self.check_cancelled()
            if start is not None and event.occurred_at < start:
                continue
            if end is not None and event.occurred_at >= end:
                break
            if types is not None and event.type not in types:
                continue
            yield event

    def events_for(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        types: Optional[Collection[EventType]] = None,
    ) -> List[EventRecord]:
        user_events = self._events_by_user.get(user_id)
        if not user_events:
            return []
        times = self._times_by_user[user_id]
        low = 0 if start is None else bisect_left(times, start)
        high = len(times) if end is None else bisect_left(times, end)
        window = user_events[low:high]
        if types is None:
            return list(window)
        return [event for event in window if event.type in types]

    def has_activity(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        types: Collection[EventType] = ACTIVITY_EVENTS,
    ) -> bool:
        return bool(self.events_for(user_id, start=start, end=end, types=types))

    def active_users(
        self,
        start: datetime,
        end: datetime,
        user_ids: Optional[Iterable[str]] = None,
        types: Collection[EventType] = ACTIVITY_EVENTS,
    ) -> Set[str]:
        if user_ids is None:
            return {event.user_id for event in self.iter_events(start=start, end=end, types=types)}
        self.check_cancelled()
        return {user_id for user_id in user_ids if self.has_activity(user_id, start, end, types)}

    def last_activity_before(
        self,
        user_id: str,
        moment: datetime,
        types: Collection[EventType] = ACTIVITY_EVENTS,
    ) -> Optional[datetime]:
        for event in reversed(self.events_for(user_id, end=moment, types=types)):
            return event.occurred_at
        return None

    def clicks_received(
        self,
        creator_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[EventRecord]:
        return [
            event
            for event in self._clicks_by_creator.get(creator_id, ())
            if (start is None or event.occurred_at >= start) and (end is None or event.occurred_at < end)
        ]

    def campaigns_between(self, start: datetime, end: datetime, channel: Optional[str] = None) -> List[CampaignSend]:
        return [
            send
            for send in self.campaigns
            if start <= send.sent_at < end and (channel is None or send.channel == channel)
        ]
