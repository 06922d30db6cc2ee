"""
Creator platform analytics engine.

Turns the platform's append-only event stream and user projection into the
cohort, retention, funnel, engagement and resurrection aggregates shown on the
operator dashboard.
"""

from .configuration import AnalyticsConfig, load_analytics_config  # noqa: F401
from .dataset import AnalyticsDataset, CancellationToken  # noqa: F401
from .errors import (  # noqa: F401
    AnalyticsError,
    DataUnavailable,
    InsufficientData,
    InvalidParameter,
    QueryCancelled,
)
from .models import (  # noqa: F401
    Anchor,
    CampaignSend,
    CohortTable,
    DateRange,
    EngagementMetrics,
    EventRecord,
    EventType,
    FunnelResult,
    Granularity,
    Metric,
    Plan,
    QueryResult,
    ResurrectionTable,
    RetentionMetrics,
    Role,
    UserRecord,
)
from .repository import (  # noqa: F401
    AnalyticsRepository,
    InMemoryRepository,
    RepositoryConfig,
    SQLAnalyticsRepository,
    build_repository_from_env,
)
from .service import AnalyticsQueryService, QueryOptions  # noqa: F401
