from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple

from .aggregator import PeriodMetricAggregator, parse_metric
from .availability import Availability, check_handle_availability
from .cache import QueryCache, make_key
from .cohorts import CohortBucketer, parse_anchor, parse_granularity
from .configuration import AnalyticsConfig
from .dataset import AnalyticsDataset, CancellationToken
from .engagement import EngagementScorer
from .errors import AnalyticsError, InvalidParameter
from .funnel import FunnelAnalyzer, get_funnel
from .models import (
    Anchor,
    CohortTable,
    DateRange,
    Granularity,
    Metric,
    PlanFilter,
    QueryResult,
    RoleFilter,
)
from .periods import coerce_timezone, normalize_datetime, resolve_range
from .repository import AnalyticsRepository
from .resurrection import ResurrectionTracker
from .retention import RetentionCalculator

logger = logging.getLogger(__name__)

Compute = Callable[[AnalyticsDataset, DateRange], Any]


@dataclass(frozen=True)
class QueryOptions:
    """
    Per-call query context.

    Every dashboard card passes its own options; nothing is read from shared
    "current period" state. ``start``/``end`` override the rolling ``period``,
    which falls back to the service's configured default when unset.
    """

    period: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    compare_with_previous: bool = False
    now: Optional[datetime] = None
    cancel: Optional[CancellationToken] = None


@dataclass(frozen=True)
class _Plan:
    operation: str
    cache_parts: Tuple[Hashable, ...]
    compute: Compute


def _parse_role(value: object) -> RoleFilter:
    try:
        return RoleFilter(value)
    except ValueError:
        raise InvalidParameter("role", value, [item.value for item in RoleFilter]) from None


def _parse_plan(value: object) -> PlanFilter:
    try:
        return PlanFilter(value)
    except ValueError:
        raise InvalidParameter("plan", value, [item.value for item in PlanFilter]) from None


class AnalyticsQueryService:
    """
    Query façade for the operator dashboard.

    Each call loads a fresh snapshot from the repository, so results are a
    pure function of the event source at that point. Parameter validation
    happens before any data is read.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        config: Optional[AnalyticsConfig] = None,
        cache: Optional[QueryCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.config = config or AnalyticsConfig()
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tz = coerce_timezone(self.config.timezone)

    # ----- public operations -----

    def get_cohort_table(
        self,
        anchor: Any = Anchor.SIGNUP,
        metric: Any = Metric.RETENTION,
        period: Any = Granularity.MONTHLY,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        return self._query(self._plan_cohort_table(anchor, metric, period), options)

    def get_funnel_result(self, funnel_id: str, options: Optional[QueryOptions] = None) -> QueryResult:
        return self._query(self._plan_funnel(funnel_id), options)

    def get_retention_metrics(
        self,
        role: Any = RoleFilter.ALL,
        plan: Any = PlanFilter.ALL,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        return self._query(self._plan_retention(role, plan), options)

    def get_engagement_metrics(self, options: Optional[QueryOptions] = None) -> QueryResult:
        return self._query(self._plan_engagement(), options)

    def get_resurrection_table(self, options: Optional[QueryOptions] = None) -> QueryResult:
        return self._query(self._plan_resurrection(), options)

    def check_handle(self, handle: str) -> Availability:
        return check_handle_availability(handle, self.repository.handle_exists)

    async def aquery(self, operation: str, options: Optional[QueryOptions] = None, **params: Any) -> QueryResult:
        """
        Async entry point used by the HTTP layer.

        The current and comparison windows are computed concurrently on worker
        threads; they share no mutable state.
        """

        plan = self.plan(operation, **params)
        options = options or QueryOptions()
        window = self.resolve_window(options)
        if not options.compare_with_previous:
            current = await asyncio.to_thread(self._run, plan, window, options)
            return QueryResult(current=current, range=window)
        previous_window = window.previous()
        current, previous = await asyncio.gather(
            asyncio.to_thread(self._run, plan, window, options),
            asyncio.to_thread(self._run, plan, previous_window, options),
        )
        return QueryResult(current=current, range=window, previous=previous, previous_range=previous_window)

    async def aoverview(
        self,
        cards: Mapping[str, Tuple[str, Dict[str, Any]]],
        options: Optional[QueryOptions] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Load several dashboard cards at once.

        A failing card is reported in place and never blanks the others.
        """

        names = list(cards)
        outcomes = await asyncio.gather(
            *(self.aquery(cards[name][0], options, **cards[name][1]) for name in names),
            return_exceptions=True,
        )
        payload: Dict[str, Dict[str, Any]] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, AnalyticsError):
                logger.warning("Dashboard card %s failed: %s", name, outcome)
                payload[name] = {"status": "error", "error": outcome.as_dict()}
            elif isinstance(outcome, BaseException):
                logger.error("Dashboard card %s crashed", name, exc_info=outcome)
                payload[name] = {
                    "status": "error",
                    "error": {"code": "internal_error", "message": "card could not be computed"},
                }
            else:
                payload[name] = {"status": "ok", "data": outcome.as_dict()}
        return payload

    # ----- planning -----

    def plan(self, operation: str, **params: Any) -> _Plan:
        planners: Dict[str, Callable[..., _Plan]] = {
            "cohort_table": self._plan_cohort_table,
            "funnel": self._plan_funnel,
            "retention": self._plan_retention,
            "engagement": self._plan_engagement,
            "resurrection": self._plan_resurrection,
        }
        planner = planners.get(operation)
        if planner is None:
            raise InvalidParameter("operation", operation, sorted(planners))
        try:
            return planner(**params)
        except TypeError as exc:
            raise InvalidParameter("parameters", sorted(params)) from exc

    def _plan_cohort_table(
        self,
        anchor: Any = Anchor.SIGNUP,
        metric: Any = Metric.RETENTION,
        period: Any = Granularity.MONTHLY,
    ) -> _Plan:
        anchor = parse_anchor(anchor)
        metric = parse_metric(metric)
        granularity = parse_granularity(period)
        window = self.config.cohorts.window

        def _compute(dataset: AnalyticsDataset, date_range: DateRange) -> CohortTable:
            as_of = date_range.end
            cohorts = CohortBucketer(dataset).build(anchor, granularity, as_of, window=window)
            rows = PeriodMetricAggregator(dataset).aggregate(cohorts, metric, as_of, periods=window)
            return CohortTable(
                anchor=anchor,
                metric=metric,
                granularity=granularity,
                as_of=as_of,
                periods=window,
                rows=rows,
            )

        return _Plan("cohort_table", (metric.value, anchor.value, granularity.value), _compute)

    def _plan_funnel(self, funnel_id: str) -> _Plan:
        definition = get_funnel(funnel_id)

        def _compute(dataset: AnalyticsDataset, date_range: DateRange):
            return FunnelAnalyzer(dataset).analyze(definition, start=date_range.start, end=date_range.end)

        return _Plan("funnel", ("funnel", "-", "-", definition.id), _compute)

    def _plan_retention(self, role: Any = RoleFilter.ALL, plan: Any = PlanFilter.ALL) -> _Plan:
        role = _parse_role(role)
        plan = _parse_plan(plan)
        config = self.config.retention

        def _compute(dataset: AnalyticsDataset, date_range: DateRange):
            return RetentionCalculator(dataset, config).compute(as_of=date_range.end, role=role, plan=plan)

        return _Plan("retention", ("retention", "-", "-", role.value, plan.value), _compute)

    def _plan_engagement(self) -> _Plan:
        config = self.config

        def _compute(dataset: AnalyticsDataset, date_range: DateRange):
            return EngagementScorer(dataset, config.engagement, config.features).compute(date_range)

        return _Plan("engagement", ("engagement", "-", "-"), _compute)

    def _plan_resurrection(self) -> _Plan:
        config = self.config.resurrection

        def _compute(dataset: AnalyticsDataset, date_range: DateRange):
            return ResurrectionTracker(dataset, config).compute(date_range)

        return _Plan("resurrection", ("resurrection", "-", "-"), _compute)

    # ----- execution -----

    def now(self, options: Optional[QueryOptions] = None) -> datetime:
        moment = options.now if options is not None and options.now is not None else self._clock()
        return normalize_datetime(moment, self.tz)

    def resolve_window(self, options: QueryOptions) -> DateRange:
        start = None if options.start is None else normalize_datetime(options.start, self.tz)
        end = None if options.end is None else normalize_datetime(options.end, self.tz)
        period = options.period or self.config.default_period
        return resolve_range(period, self.now(options), start=start, end=end)

    def _query(self, plan: _Plan, options: Optional[QueryOptions]) -> QueryResult:
        options = options or QueryOptions()
        window = self.resolve_window(options)
        current = self._run(plan, window, options)
        if not options.compare_with_previous:
            return QueryResult(current=current, range=window)
        previous_window = window.previous()
        previous = self._run(plan, previous_window, options)
        return QueryResult(current=current, range=window, previous=previous, previous_range=previous_window)

    def _run(self, plan: _Plan, window: DateRange, options: QueryOptions) -> Any:
        if self.cache is None:
            return self._compute(plan, window, options)

        open_period = window.end >= self.now(options)
        first, second, third, *rest = plan.cache_parts
        filters = tuple(rest) + (window.start.isoformat(),)
        if not open_period:
            filters += (window.end.isoformat(),)
        key = make_key(first, second, third, filters, window.end)
        return self.cache.get_or_compute(key, open_period, lambda: self._compute(plan, window, options))

    def _compute(self, plan: _Plan, window: DateRange, options: QueryOptions) -> Any:
        logger.debug("Running %s for %s .. %s", plan.operation, window.start, window.end)
        snapshot = self.repository.load(end=window.end)
        dataset = AnalyticsDataset(
            users=snapshot.users,
            events=snapshot.events,
            campaigns=snapshot.campaigns,
            timezone=self.config.timezone,
            cancel=options.cancel,
        )
        dataset.check_cancelled()
        return plan.compute(dataset, window)
