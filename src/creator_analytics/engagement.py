from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from statistics import mean
from typing import List, Optional, Sequence

from .configuration import EngagementConfig, FeatureTargets
from .dataset import ACTIVITY_EVENTS, AnalyticsDataset
from .models import (
    ONE_DECIMAL,
    DateRange,
    EngagementMetrics,
    EventType,
    FeatureAdoption,
    ScoreBucket,
    SessionAnalytics,
    UserRecord,
    UserScore,
    percentage,
)


def _round(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return float(Decimal(str(value)).quantize(ONE_DECIMAL))


def _delta(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous is None:
        return None
    return _round(current - previous)


class EngagementScorer:
    """
    Weighted engagement score per active user.

    ``score = products * product_weight + posts * post_weight + clicks * click_weight``
    where clicks are the clicks received on the user's products. Weights come
    from configuration.
    """

    def __init__(
        self,
        dataset: AnalyticsDataset,
        config: Optional[EngagementConfig] = None,
        targets: Optional[FeatureTargets] = None,
    ) -> None:
        self.dataset = dataset
        self.config = config or EngagementConfig()
        self.targets = targets or FeatureTargets()

    def compute(self, window: DateRange, users: Optional[Sequence[UserRecord]] = None) -> EngagementMetrics:
        window = DateRange(start=self.dataset.localize(window.start), end=self.dataset.localize(window.end))
        previous = window.previous()
        scores = self.score_users(window, users)
        return EngagementMetrics(
            score_distribution=self.distribution(scores),
            top_users=self.top_users(scores),
            feature_adoption=self.feature_adoption(window, previous),
            session_analytics=self.session_analytics(window, previous),
        )

    def score(self, products: int, posts: int, clicks: int) -> float:
        weights = self.config.weights
        return products * weights.product_weight + posts * weights.post_weight + clicks * weights.click_weight

    def bucket_for(self, score: float) -> str:
        for bucket in self.config.buckets:
            if bucket.upper is None or score <= bucket.upper:
                return bucket.label
        # Bounded last bucket: scores beyond it fall in the last label.
        return self.config.buckets[-1].label

    def score_users(self, window: DateRange, users: Optional[Sequence[UserRecord]] = None) -> List[UserScore]:
        population = users if users is not None else self.dataset.filter_users(signed_up_before=window.end)
        scores: List[UserScore] = []
        for user in population:
            self.dataset.check_cancelled()
            own_events = self.dataset.events_for(user.id, start=window.start, end=window.end)
            clicks = len(self.dataset.clicks_received(user.id, start=window.start, end=window.end))
            active = clicks > 0 or any(event.type in ACTIVITY_EVENTS for event in own_events)
            if not active:
                continue
            products = sum(1 for event in own_events if event.type is EventType.PRODUCT_CREATED)
            posts = sum(1 for event in own_events if event.type is EventType.POST_CREATED)
            value = self.score(products, posts, clicks)
            scores.append(
                UserScore(
                    user_id=user.id,
                    score=value,
                    bucket=self.bucket_for(value),
                    products=products,
                    posts=posts,
                    clicks=clicks,
                    signup_at=user.signup_at,
                    name=user.name,
                    handle=user.handle,
                )
            )
        return scores

    def distribution(self, scores: Sequence[UserScore]) -> List[ScoreBucket]:
        counts = {bucket.label: 0 for bucket in self.config.buckets}
        for entry in scores:
            counts[entry.bucket] += 1
        total = len(scores)
        return [
            ScoreBucket(range=label, count=count, percentage=percentage(count, total))
            for label, count in counts.items()
        ]

    def top_users(self, scores: Sequence[UserScore], k: Optional[int] = None) -> List[UserScore]:
        limit = self.config.top_k if k is None else k
        ordered = sorted(scores, key=lambda entry: (-entry.score, entry.signup_at, entry.user_id))
        return ordered[:limit]

    def feature_adoption(self, window: DateRange, previous: DateRange) -> List[FeatureAdoption]:
        """Share of accounts that adopted each feature by the end of each window."""

        def _adoption(end: datetime, adopted) -> Optional[float]:
            population = self.dataset.filter_users(signed_up_before=end)
            adopters = sum(1 for user in population if adopted(user, end))
            return percentage(adopters, len(population))

        def _created(event_type: EventType):
            def _check(user: UserRecord, end: datetime) -> bool:
                return bool(self.dataset.events_for(user.id, end=end, types=(event_type,)))

            return _check

        def _upgraded(user: UserRecord, end: datetime) -> bool:
            return user.upgrade_at is not None and user.upgrade_at < end

        features = (
            ("product_created", _created(EventType.PRODUCT_CREATED), self.targets.product),
            ("post_created", _created(EventType.POST_CREATED), self.targets.post),
            ("upgraded_to_pro", _upgraded, self.targets.upgrade),
        )
        return [
            FeatureAdoption(
                feature=name,
                current=_adoption(window.end, adopted),
                previous=_adoption(previous.end, adopted),
                target=target,
            )
            for name, adopted, target in features
        ]

    def session_analytics(self, window: DateRange, previous: DateRange) -> SessionAnalytics:
        current = self._session_stats(window)
        before = self._session_stats(previous)
        return SessionAnalytics(
            sessions=current["sessions"],
            avg_duration_minutes=current["duration"],
            avg_duration_delta=_delta(current["duration"], before["duration"]),
            pages_per_session=current["pages"],
            pages_per_session_delta=_delta(current["pages"], before["pages"]),
            bounce_rate=current["bounce"],
            bounce_rate_delta=_delta(current["bounce"], before["bounce"]),
        )

    def _session_stats(self, window: DateRange) -> dict:
        durations: List[float] = []
        pages: List[float] = []
        sessions = 0
        for event in self.dataset.iter_events(window.start, window.end, types=(EventType.SESSION,)):
            sessions += 1
            if event.value is not None:
                durations.append(float(event.value))
            viewed = event.properties.get("pages")
            if viewed is not None:
                pages.append(float(viewed))
        return {
            "sessions": sessions,
            "duration": _round(mean(durations) / 60) if durations else None,
            "pages": _round(mean(pages)) if pages else None,
            "bounce": percentage(sum(1 for viewed in pages if viewed <= 1), len(pages)),
        }
