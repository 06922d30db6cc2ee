from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .dataset import AnalyticsDataset
from .errors import InvalidParameter
from .models import Cohort, CohortMetricCell, CohortRow, EventType, Metric, percentage
from .periods import add_periods


@dataclass(frozen=True)
class PeriodWindow:
    offset: int
    start: datetime
    end: datetime


MetricFunction = Callable[[AnalyticsDataset, Cohort, PeriodWindow], float]


def _retention(dataset: AnalyticsDataset, cohort: Cohort, window: PeriodWindow) -> float:
    active = dataset.active_users(window.start, window.end, user_ids=cohort.members)
    value = percentage(len(active), cohort.size)
    return 0.0 if value is None else value


def _subscription_intervals(
    dataset: AnalyticsDataset, user_id: str, until: datetime
) -> List[Tuple[datetime, Optional[datetime], float]]:
    """Pair each ``subscription_started`` with the next cancellation."""

    intervals: List[Tuple[datetime, Optional[datetime], float]] = []
    open_start: Optional[Tuple[datetime, float]] = None
    for event in dataset.events_for(
        user_id,
        end=until,
        types=(EventType.SUBSCRIPTION_STARTED, EventType.SUBSCRIPTION_CANCELED),
    ):
        if event.type is EventType.SUBSCRIPTION_STARTED:
            if open_start is not None:
                # A restart without a cancel supersedes the previous price.
                intervals.append((open_start[0], event.occurred_at, open_start[1]))
            open_start = (event.occurred_at, float(event.value or 0.0))
        elif open_start is not None:
            intervals.append((open_start[0], event.occurred_at, open_start[1]))
            open_start = None
    if open_start is not None:
        intervals.append((open_start[0], None, open_start[1]))
    return intervals


def _mrr(dataset: AnalyticsDataset, cohort: Cohort, window: PeriodWindow) -> float:
    total = Decimal("0")
    for user_id in cohort.members:
        for started, ended, monthly in _subscription_intervals(dataset, user_id, window.end):
            if started < window.end and (ended is None or ended > window.start):
                total += Decimal(str(monthly))
    return float(total.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN))


def _count_events(event_type: EventType) -> MetricFunction:
    def _count(dataset: AnalyticsDataset, cohort: Cohort, window: PeriodWindow) -> float:
        return float(
            sum(
                len(dataset.events_for(user_id, start=window.start, end=window.end, types=(event_type,)))
                for user_id in cohort.members
            )
        )

    return _count


METRIC_FUNCTIONS: Dict[Metric, MetricFunction] = {
    Metric.RETENTION: _retention,
    Metric.MRR: _mrr,
    Metric.CLICKS: _count_events(EventType.CLICK),
    Metric.PRODUCTS: _count_events(EventType.PRODUCT_CREATED),
}

_missing = set(Metric) - set(METRIC_FUNCTIONS)
if _missing:  # pragma: no cover - guards new Metric members at import time
    raise RuntimeError(f"No aggregation registered for metrics: {sorted(m.value for m in _missing)}")


def parse_metric(value: object) -> Metric:
    try:
        return Metric(value)
    except ValueError:
        raise InvalidParameter("metric", value, [item.value for item in Metric]) from None


class PeriodMetricAggregator:
    """
    Fill the cohort x period-offset grid for one metric.

    Offsets run from the cohort's own anchor bucket. A cell is emitted only
    when its period has fully elapsed by ``as_of``; unfinished periods and
    empty cohorts produce no cells at all.
    """

    def __init__(self, dataset: AnalyticsDataset) -> None:
        self.dataset = dataset

    def aggregate(
        self,
        cohorts: Sequence[Cohort],
        metric: Metric,
        as_of: datetime,
        periods: int = 8,
    ) -> List[CohortRow]:
        metric = parse_metric(metric)
        compute = METRIC_FUNCTIONS[metric]
        as_of = self.dataset.localize(as_of)

        rows: List[CohortRow] = []
        for cohort in cohorts:
            self.dataset.check_cancelled()
            cells: List[CohortMetricCell] = []
            if cohort.size:
                for window in self.windows(cohort, periods):
                    if window.end > as_of:
                        break
                    cells.append(
                        CohortMetricCell(
                            cohort_key=cohort.key,
                            period_offset=window.offset,
                            metric=metric,
                            value=compute(self.dataset, cohort, window),
                        )
                    )
            rows.append(CohortRow(cohort=cohort, cells=tuple(cells)))
        return rows

    @staticmethod
    def windows(cohort: Cohort, periods: int) -> List[PeriodWindow]:
        return [
            PeriodWindow(
                offset=offset,
                start=add_periods(cohort.start, cohort.granularity, offset),
                end=add_periods(cohort.start, cohort.granularity, offset + 1),
            )
            for offset in range(periods)
        ]
