from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple


class Role(str, Enum):
    FOLLOWER = "follower"
    CREATOR = "creator"
    BRAND = "brand"
    ADMIN = "admin"


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    BRAND = "brand"


class EventType(str, Enum):
    CLICK = "click"
    FAVORITE = "favorite"
    FOLLOW = "follow"
    SESSION = "session"
    PRODUCT_CREATED = "product_created"
    POST_CREATED = "post_created"
    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class Anchor(str, Enum):
    SIGNUP = "signup"
    FIRST_PRODUCT = "first_product"
    UPGRADE = "upgrade"


class Granularity(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Metric(str, Enum):
    RETENTION = "retention"
    MRR = "mrr"
    CLICKS = "clicks"
    PRODUCTS = "products"


class RoleFilter(str, Enum):
    ALL = "all"
    CREATORS = "creators"
    FOLLOWERS = "followers"


class PlanFilter(str, Enum):
    ALL = "all"
    FREE = "free"
    PRO = "pro"


ONE_DECIMAL = Decimal("0.1")


class CellStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class UserRecord:
    """
    Read-only projection of a platform account.

    ``first_product_at`` and ``upgrade_at`` are set once upstream and never
    cleared. ``channel`` is the acquisition channel recorded at signup and is
    the fallback attribution for resurrection campaigns.
    """

    id: str
    signup_at: datetime
    role: Role = Role.FOLLOWER
    plan: Plan = Plan.FREE
    first_product_at: Optional[datetime] = None
    upgrade_at: Optional[datetime] = None
    name: Optional[str] = None
    handle: Optional[str] = None
    channel: Optional[str] = None


@dataclass(frozen=True)
class EventRecord:
    """
    Append-only interaction emitted by the platform.

    ``value`` carries the numeric payload (click revenue, monthly subscription
    price, session duration in seconds). ``properties`` holds the flexible
    payload such as ``creator_id`` for clicks or ``channel`` for attribution.
    """

    id: str
    user_id: str
    type: EventType
    occurred_at: datetime
    value: Optional[float] = None
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CampaignSend:
    """A reactivation campaign delivered over ``channel`` at ``sent_at``."""

    id: str
    channel: str
    sent_at: datetime
    campaign_id: Optional[str] = None


@dataclass(frozen=True)
class DateRange:
    """``start`` is inclusive and ``end`` is exclusive."""

    start: datetime
    end: datetime

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "DateRange":
        return DateRange(start=self.start - self.length, end=self.start)

    def as_dict(self) -> Dict[str, str]:
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


@dataclass(frozen=True)
class Cohort:
    key: str
    anchor: Anchor
    granularity: Granularity
    start: datetime
    end: datetime
    members: frozenset = frozenset()

    @property
    def size(self) -> int:
        return len(self.members)

    def is_open(self, as_of: datetime) -> bool:
        return self.end > as_of


@dataclass(frozen=True)
class CohortMetricCell:
    cohort_key: str
    period_offset: int
    metric: Metric
    value: float


@dataclass(frozen=True)
class CohortRow:
    cohort: Cohort
    cells: Tuple[CohortMetricCell, ...] = ()

    def value_at(self, offset: int) -> Optional[float]:
        """Return the cell value or ``None`` when the cell is absent."""

        for cell in self.cells:
            if cell.period_offset == offset:
                return cell.value
        return None


@dataclass(frozen=True)
class CohortTable:
    anchor: Anchor
    metric: Metric
    granularity: Granularity
    as_of: datetime
    periods: int
    rows: Sequence[CohortRow]

    def as_rows(self) -> List[Dict[str, Any]]:
        """
        Flatten into one dict per cohort with ``p0..pN`` columns.

        Absent cells are emitted as ``None`` so exporters can render a blank
        cell rather than a zero.
        """

        table: List[Dict[str, Any]] = []
        for row in self.rows:
            record: Dict[str, Any] = {"cohort": row.cohort.key, "size": row.cohort.size}
            for offset in range(self.periods):
                record[f"p{offset}"] = row.value_at(offset)
            table.append(record)
        return table

    def as_dict(self) -> Dict[str, Any]:
        return {
            "anchor": self.anchor.value,
            "metric": self.metric.value,
            "period": self.granularity.value,
            "asOf": self.as_of.isoformat(),
            "periods": self.periods,
            "cohorts": self.as_rows(),
        }


@dataclass(frozen=True)
class RetentionCurvePoint:
    cohort_label: str
    day_offset: int
    value: Optional[float]
    status: CellStatus = CellStatus.OK


@dataclass(frozen=True)
class RetentionCurve:
    label: str
    points: Sequence[RetentionCurvePoint]
    size: int = 0
    is_benchmark: bool = False


@dataclass(frozen=True)
class HorizonPoint:
    label: str
    days: int
    value: Optional[float]
    retained: int
    eligible: int
    status: CellStatus = CellStatus.OK

    @property
    def available(self) -> bool:
        return self.status is CellStatus.OK


@dataclass(frozen=True)
class Stickiness:
    dau: int
    mau: int
    day: datetime

    @property
    def ratio(self) -> float:
        if self.mau == 0:
            return 0.0
        return self.dau / self.mau


@dataclass(frozen=True)
class RetentionMetrics:
    curves: Sequence[RetentionCurve]
    fixed_horizon: Sequence[HorizonPoint]
    stickiness: Stickiness

    def horizon(self, label: str) -> HorizonPoint:
        for point in self.fixed_horizon:
            if point.label == label:
                return point
        raise KeyError(label)

    def as_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "horizon": point.label,
                "days": point.days,
                "retention": point.value,
                "retained": point.retained,
                "eligible": point.eligible,
                "status": point.status.value,
            }
            for point in self.fixed_horizon
        ]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "retention": {
                point.label: {
                    "value": point.value,
                    "retained": point.retained,
                    "eligible": point.eligible,
                    "status": point.status.value,
                }
                for point in self.fixed_horizon
            },
            "cohortCurves": [
                {
                    "label": curve.label,
                    "size": curve.size,
                    "benchmark": curve.is_benchmark,
                    "points": [
                        {"day": point.day_offset, "value": point.value, "status": point.status.value}
                        for point in curve.points
                    ],
                }
                for curve in self.curves
            ],
            "stickiness": {
                "ratio": self.stickiness.ratio,
                "dau": self.stickiness.dau,
                "mau": self.stickiness.mau,
                "day": self.stickiness.day.isoformat(),
            },
        }


@dataclass(frozen=True)
class FunnelStepResult:
    name: str
    value: int
    avg_time: Optional[timedelta] = None


def percentage(numerator: float, denominator: float) -> Optional[float]:
    """
    Percentage rounded to one decimal, half-to-even.

    Computed in ``Decimal`` so ratios like 1/8 round on their exact value
    rather than on the nearest binary float.
    """

    if denominator == 0:
        return None
    exact = Decimal(str(numerator)) * 100 / Decimal(str(denominator))
    return float(exact.quantize(ONE_DECIMAL, rounding=ROUND_HALF_EVEN))


@dataclass(frozen=True)
class FunnelResult:
    """
    Ordered step populations.

    Conversions are derived on read. A step whose predecessor has no users has
    no conversion (``None``), which is distinct from a 0% conversion.
    """

    funnel_id: str
    name: str
    steps: Sequence[FunnelStepResult]

    @property
    def values(self) -> List[int]:
        return [step.value for step in self.steps]

    def step_conversion(self, index: int) -> Optional[float]:
        if index <= 0:
            return None
        return percentage(self.steps[index].value, self.steps[index - 1].value)

    def total_conversion(self, index: int) -> Optional[float]:
        if not self.steps:
            return None
        return percentage(self.steps[index].value, self.steps[0].value)

    def drop_off(self, index: int) -> Optional[float]:
        conversion = self.step_conversion(index)
        if conversion is None:
            return None
        return float((Decimal("100") - Decimal(str(conversion))).quantize(ONE_DECIMAL))

    def as_rows(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for index, step in enumerate(self.steps):
            rows.append(
                {
                    "step": step.name,
                    "value": step.value,
                    "avgTimeSeconds": None if step.avg_time is None else step.avg_time.total_seconds(),
                    "stepConversion": self.step_conversion(index),
                    "totalConversion": self.total_conversion(index),
                    "dropOff": self.drop_off(index),
                }
            )
        return rows

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.funnel_id,
            "name": self.name,
            "steps": [
                {
                    "name": step.name,
                    "value": step.value,
                    "avgTime": None if step.avg_time is None else step.avg_time.total_seconds(),
                }
                for step in self.steps
            ],
        }


@dataclass(frozen=True)
class UserScore:
    user_id: str
    score: float
    bucket: str
    products: int
    posts: int
    clicks: int
    signup_at: datetime
    name: Optional[str] = None
    handle: Optional[str] = None


@dataclass(frozen=True)
class ScoreBucket:
    range: str
    count: int
    percentage: Optional[float]


@dataclass(frozen=True)
class FeatureAdoption:
    feature: str
    current: Optional[float]
    previous: Optional[float]
    target: float


@dataclass(frozen=True)
class SessionAnalytics:
    sessions: int
    avg_duration_minutes: Optional[float]
    avg_duration_delta: Optional[float]
    pages_per_session: Optional[float]
    pages_per_session_delta: Optional[float]
    bounce_rate: Optional[float]
    bounce_rate_delta: Optional[float]


@dataclass(frozen=True)
class EngagementMetrics:
    score_distribution: Sequence[ScoreBucket]
    top_users: Sequence[UserScore]
    feature_adoption: Sequence[FeatureAdoption]
    session_analytics: SessionAnalytics

    def as_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "userId": user.user_id,
                "name": user.name,
                "handle": user.handle,
                "score": user.score,
                "bucket": user.bucket,
                "products": user.products,
                "posts": user.posts,
                "clicks": user.clicks,
            }
            for user in self.top_users
        ]

    def as_dict(self) -> Dict[str, Any]:
        sessions = self.session_analytics
        return {
            "scoreDistribution": [
                {"range": bucket.range, "count": bucket.count, "percentage": bucket.percentage}
                for bucket in self.score_distribution
            ],
            "topEngagedUsers": self.as_rows(),
            "featureAdoption": [
                {
                    "feature": adoption.feature,
                    "current": adoption.current,
                    "prev": adoption.previous,
                    "target": adoption.target,
                }
                for adoption in self.feature_adoption
            ],
            "sessionAnalytics": {
                "sessions": sessions.sessions,
                "avgDuration": sessions.avg_duration_minutes,
                "avgDurationDelta": sessions.avg_duration_delta,
                "pagesPerSession": sessions.pages_per_session,
                "pagesPerSessionDelta": sessions.pages_per_session_delta,
                "bounceRate": sessions.bounce_rate,
                "bounceRateDelta": sessions.bounce_rate_delta,
            },
        }


@dataclass(frozen=True)
class ResurrectionRow:
    channel: str
    dormant_count: int
    campaigns_sent: int
    reactivated_count: int

    @property
    def rate(self) -> float:
        if self.dormant_count == 0:
            return 0.0
        return self.reactivated_count / self.dormant_count


@dataclass(frozen=True)
class ResurrectionTable:
    rows: Sequence[ResurrectionRow]

    def as_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "channel": row.channel,
                "dormant": row.dormant_count,
                "campaigns": row.campaigns_sent,
                "resurrected": row.reactivated_count,
                "rate": percentage(row.reactivated_count, row.dormant_count) or 0.0,
            }
            for row in self.rows
        ]

    def as_dict(self) -> Dict[str, Any]:
        return {"rows": self.as_rows()}


@dataclass(frozen=True)
class QueryResult:
    """
    Envelope returned by every façade query.

    ``previous`` is only populated when the caller asked for a comparison with
    the immediately preceding period of equal length.
    """

    current: Any
    range: DateRange
    previous: Optional[Any] = None
    previous_range: Optional[DateRange] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "range": self.range.as_dict(),
            "current": _serialize(self.current),
        }
        if self.previous_range is not None:
            payload["previousRange"] = self.previous_range.as_dict()
            payload["previous"] = _serialize(self.previous)
        return payload


def _serialize(obj: Any) -> Any:
    if hasattr(obj, "as_dict"):
        return obj.as_dict()
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes, dict)):
        return [_serialize(item) for item in obj]
    return obj
