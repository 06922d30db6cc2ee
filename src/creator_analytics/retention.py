from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from .cohorts import CohortBucketer
from .configuration import RetentionConfig
from .dataset import AnalyticsDataset
from .errors import InsufficientData
from .models import (
    Anchor,
    CellStatus,
    Granularity,
    HorizonPoint,
    PlanFilter,
    RetentionCurve,
    RetentionCurvePoint,
    RetentionMetrics,
    RoleFilter,
    Stickiness,
    UserRecord,
    percentage,
)
from .periods import start_of_day

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


class RetentionCalculator:
    """
    Day-offset retention for a filtered population.

    A user counts as retained on day N when they have a qualifying activity in
    ``[signup + N days, signup + N + 1 days)``; signup itself is the day 0
    activity. Users whose day-N window has not fully elapsed are left out of
    both the numerator and the denominator for day N.
    """

    def __init__(self, dataset: AnalyticsDataset, config: Optional[RetentionConfig] = None) -> None:
        self.dataset = dataset
        self.config = config or RetentionConfig()

    def compute(
        self,
        as_of: datetime,
        role: RoleFilter = RoleFilter.ALL,
        plan: PlanFilter = PlanFilter.ALL,
        granularity: Granularity = Granularity.MONTHLY,
    ) -> RetentionMetrics:
        as_of = self.dataset.localize(as_of)
        population = self.dataset.filter_users(role=role, plan=plan, signed_up_before=as_of)
        return RetentionMetrics(
            curves=self.cohort_curves(population, as_of, granularity),
            fixed_horizon=[self.horizon_point(population, days, as_of) for days in self.config.horizons],
            stickiness=self.stickiness(population, as_of),
        )

    def retained_on_day(self, user: UserRecord, day: int) -> bool:
        if day == 0:
            return True
        start = user.signup_at + timedelta(days=day)
        return self.dataset.has_activity(user.id, start, start + ONE_DAY)

    def observed_by(self, user: UserRecord, day: int, as_of: datetime) -> bool:
        """Whether the whole day-``day`` window of ``user`` lies before ``as_of``."""

        if day == 0:
            return user.signup_at <= as_of
        return user.signup_at + timedelta(days=day + 1) <= as_of

    def day_retention(self, users: Iterable[UserRecord], day: int, as_of: datetime) -> Tuple[int, int]:
        """Return ``(retained, eligible)`` among users whose day-``day`` window has elapsed."""

        eligible = [user for user in users if self.observed_by(user, day, as_of)]
        self.dataset.check_cancelled()
        retained = sum(1 for user in eligible if self.retained_on_day(user, day))
        return retained, len(eligible)

    def horizon_point(self, population: Sequence[UserRecord], days: int, as_of: datetime) -> HorizonPoint:
        retained, eligible = self.day_retention(population, days, as_of)
        label = f"D{days}"
        if eligible == 0:
            return HorizonPoint(
                label=label,
                days=days,
                value=None,
                retained=0,
                eligible=0,
                status=CellStatus.INSUFFICIENT_DATA,
            )
        return HorizonPoint(
            label=label,
            days=days,
            value=percentage(retained, eligible),
            retained=retained,
            eligible=eligible,
        )

    def horizon_value(self, population: Sequence[UserRecord], days: int, as_of: datetime) -> float:
        point = self.horizon_point(population, days, self.dataset.localize(as_of))
        if point.value is None:
            raise InsufficientData(point.label)
        return point.value

    def cohort_curves(
        self,
        population: Sequence[UserRecord],
        as_of: datetime,
        granularity: Granularity = Granularity.MONTHLY,
    ) -> List[RetentionCurve]:
        """The most recent non-empty, fully elapsed signup cohorts plus the benchmark."""

        cohorts = CohortBucketer(self.dataset).build(
            Anchor.SIGNUP,
            granularity,
            as_of,
            # Look back far enough to find ``max_curves`` non-empty cohorts on sparse data.
            window=max(self.config.max_curves * 4, 12),
            users=list(population),
        )
        by_id = {user.id: user for user in population}
        chosen = [cohort for cohort in reversed(cohorts) if cohort.size and not cohort.is_open(as_of)]
        chosen = chosen[: self.config.max_curves]

        curves: List[RetentionCurve] = []
        for cohort in chosen:
            members = [by_id[user_id] for user_id in sorted(cohort.members)]
            points = []
            for day in self.config.curve_days:
                retained, eligible = self.day_retention(members, day, as_of)
                if eligible == 0:
                    points.append(RetentionCurvePoint(cohort.key, day, None, CellStatus.INSUFFICIENT_DATA))
                else:
                    points.append(RetentionCurvePoint(cohort.key, day, percentage(retained, eligible)))
            curves.append(RetentionCurve(label=cohort.key, points=points, size=cohort.size))

        if not curves:
            logger.debug("No elapsed signup cohorts before %s; only the benchmark curve is returned", as_of)
        curves.append(self.benchmark_curve())
        return curves

    def benchmark_curve(self) -> RetentionCurve:
        benchmark = self.config.benchmark
        points = []
        for day in self.config.curve_days:
            value = benchmark.curve.get(day)
            status = CellStatus.OK if value is not None else CellStatus.INSUFFICIENT_DATA
            points.append(RetentionCurvePoint(benchmark.label, day, value, status))
        return RetentionCurve(label=benchmark.label, points=points, is_benchmark=True)

    def stickiness(self, population: Sequence[UserRecord], as_of: datetime) -> Stickiness:
        """DAU of the most recent complete day over MAU of the trailing window ending the same day."""

        day_end = start_of_day(as_of)
        day_start = day_end - ONE_DAY
        mau_start = day_end - timedelta(days=self.config.mau_window_days)
        user_ids = [user.id for user in population]
        monthly = self.dataset.active_users(mau_start, day_end, user_ids=user_ids)
        daily = self.dataset.active_users(day_start, day_end, user_ids=monthly)
        return Stickiness(dau=len(daily), mau=len(monthly), day=day_start)
