from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .dataset import AnalyticsDataset
from .errors import InvalidParameter
from .models import EventRecord, EventType, FunnelResult, FunnelStepResult, UserRecord

UserState = Callable[[UserRecord], Optional[datetime]]
EventPredicate = Callable[[EventRecord], bool]

ACTOR = "actor"
CREATOR = "creator"


@dataclass(frozen=True)
class FunnelStep:
    """
    One milestone of a funnel.

    A step is satisfied either by a user-state timestamp (``user_state``, e.g.
    "has an account" -> ``signup_at``) or by the first matching event. With
    ``attribution="creator"`` the matching clicks are the ones received on the
    user's products rather than the ones the user made.
    """

    name: str
    event_types: Tuple[EventType, ...] = ()
    user_state: Optional[UserState] = None
    attribution: str = ACTOR
    predicate: Optional[EventPredicate] = None

    def __post_init__(self) -> None:
        if self.user_state is None and not self.event_types:
            raise InvalidParameter("funnel_step", self.name)
        if self.attribution not in (ACTOR, CREATOR):
            raise InvalidParameter("attribution", self.attribution, (ACTOR, CREATOR))
        if self.attribution == CREATOR and set(self.event_types) - {EventType.CLICK}:
            raise InvalidParameter("attribution", self.attribution, (ACTOR,))


@dataclass(frozen=True)
class FunnelDefinition:
    id: str
    name: str
    steps: Sequence[FunnelStep] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.steps:
            raise InvalidParameter("funnel", self.id)


def _has_account(user: UserRecord) -> Optional[datetime]:
    return user.signup_at


SIGNUP_STEP = FunnelStep(name="Signup", user_state=_has_account)

PREDEFINED_FUNNELS: Dict[str, FunnelDefinition] = {
    "signup_product_click": FunnelDefinition(
        id="signup_product_click",
        name="Signup → First Product → First Click",
        steps=(
            SIGNUP_STEP,
            FunnelStep(name="First Product", event_types=(EventType.PRODUCT_CREATED,)),
            FunnelStep(name="First Click", event_types=(EventType.CLICK,), attribution=CREATOR),
        ),
    ),
    "signup_pro": FunnelDefinition(
        id="signup_pro",
        name="Signup → Creator Pro",
        steps=(
            SIGNUP_STEP,
            FunnelStep(name="Active Creator", event_types=(EventType.PRODUCT_CREATED,)),
            FunnelStep(name="Creator Pro", event_types=(EventType.SUBSCRIPTION_STARTED,)),
        ),
    ),
    "visitor_active": FunnelDefinition(
        id="visitor_active",
        name="Signup → Active User",
        steps=(
            SIGNUP_STEP,
            FunnelStep(name="First Follow", event_types=(EventType.FOLLOW,)),
            FunnelStep(name="First Favorite", event_types=(EventType.FAVORITE,)),
            FunnelStep(name="Active User", event_types=(EventType.SESSION,)),
        ),
    ),
}


def get_funnel(funnel_id: str) -> FunnelDefinition:
    definition = PREDEFINED_FUNNELS.get(funnel_id)
    if definition is None:
        raise InvalidParameter("funnel_id", funnel_id, sorted(PREDEFINED_FUNNELS))
    return definition


class FunnelAnalyzer:
    """
    Walk every user through the funnel steps in order.

    State ``i`` advances to ``i + 1`` on the first event satisfying step
    ``i + 1`` at or after the timestamp that completed step ``i``, other than
    the event that completed step ``i`` itself. Later repeats are ignored
    and there is no failure state: a user who never satisfies a step simply
    stops there. Step populations are therefore non-increasing by
    construction.
    """

    def __init__(self, dataset: AnalyticsDataset) -> None:
        self.dataset = dataset

    def analyze(
        self,
        definition: FunnelDefinition,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        users: Optional[Sequence[UserRecord]] = None,
    ) -> FunnelResult:
        start = None if start is None else self.dataset.localize(start)
        end = None if end is None else self.dataset.localize(end)

        reached = [0] * len(definition.steps)
        elapsed: List[List[timedelta]] = [[] for _ in definition.steps]

        for user in users if users is not None else self.dataset.users.values():
            self.dataset.check_cancelled()
            previous_at: Optional[datetime] = None
            previous_event: Optional[str] = None
            for index, step in enumerate(definition.steps):
                match = self.first_match(step, user, after=previous_at, end=end, exclude=previous_event)
                if match is None:
                    break
                occurred_at, event_id = match
                if index == 0 and start is not None and occurred_at < start:
                    break
                reached[index] += 1
                if previous_at is not None:
                    elapsed[index].append(occurred_at - previous_at)
                previous_at = occurred_at
                previous_event = event_id

        steps = [
            FunnelStepResult(
                name=step.name,
                value=reached[index],
                avg_time=statistics.median(elapsed[index]) if index and elapsed[index] else None,
            )
            for index, step in enumerate(definition.steps)
        ]
        return FunnelResult(funnel_id=definition.id, name=definition.name, steps=steps)

    def first_match(
        self,
        step: FunnelStep,
        user: UserRecord,
        after: Optional[datetime],
        end: Optional[datetime],
        exclude: Optional[str] = None,
    ) -> Optional[Tuple[datetime, Optional[str]]]:
        """First ``(timestamp, event id)`` satisfying ``step``; user-state steps carry no event id."""

        if step.user_state is not None:
            moment = step.user_state(user)
            if moment is None:
                return None
            if (after is not None and moment < after) or (end is not None and moment >= end):
                return None
            return moment, None

        if step.attribution == CREATOR:
            candidates = self.dataset.clicks_received(user.id, start=after, end=end)
        else:
            candidates = self.dataset.events_for(user.id, start=after, end=end, types=step.event_types)
        for event in candidates:
            if event.id == exclude:
                continue
            if step.predicate is None or step.predicate(event):
                return event.occurred_at, event.id
        return None
