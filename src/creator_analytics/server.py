from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .availability import normalize_handle
from .cache import QueryCache
from .configuration import load_analytics_config
from .errors import DataUnavailable, InvalidParameter, QueryCancelled
from .funnel import PREDEFINED_FUNNELS
from .models import CampaignSend, EventRecord, EventType, Plan, Role, UserRecord
from .repository import AnalyticsRepository, InMemoryRepository, build_repository_from_env
from .service import AnalyticsQueryService, QueryOptions

load_dotenv()

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30

app = FastAPI(title="Creator Analytics API", version="0.1.0")
config = load_analytics_config()
repository: Optional[AnalyticsRepository] = build_repository_from_env()
cache: Optional[QueryCache] = QueryCache(config.cache) if repository is not None and config.cache.enable else None


class UserPayload(BaseModel):
    id: str
    signup_at: datetime
    role: Role = Role.FOLLOWER
    plan: Plan = Plan.FREE
    first_product_at: Optional[datetime] = None
    upgrade_at: Optional[datetime] = None
    name: Optional[str] = None
    handle: Optional[str] = None
    channel: Optional[str] = None


class EventPayload(BaseModel):
    id: str
    user_id: str
    type: EventType
    occurred_at: datetime
    value: Optional[float] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class CampaignPayload(BaseModel):
    id: str
    channel: str
    sent_at: datetime
    campaign_id: Optional[str] = None


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    period: Optional[str] = None
    start: Optional[datetime] = Field(default=None, alias="from")
    end: Optional[datetime] = Field(default=None, alias="to")
    compare_with_previous: bool = False
    now: Optional[datetime] = None
    users: Optional[List[UserPayload]] = None
    events: Optional[List[EventPayload]] = None
    campaigns: Optional[List[CampaignPayload]] = None

    @model_validator(mode="after")
    def _validate_range(self) -> "QueryRequest":
        if (self.start is None) != (self.end is None):
            raise ValueError("from and to must be given together")
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("to must be greater than from")
        return self


class CohortRequest(QueryRequest):
    anchor: str = "signup"
    metric: str = "retention"
    granularity: str = "monthly"


class RetentionRequest(QueryRequest):
    role: str = "all"
    plan: str = "all"


class CardRequest(BaseModel):
    operation: str
    params: Dict[str, Any] = Field(default_factory=dict)


def _default_cards() -> Dict[str, CardRequest]:
    return {
        "cohorts": CardRequest(operation="cohort_table"),
        "funnel": CardRequest(operation="funnel", params={"funnel_id": "signup_product_click"}),
        "retention": CardRequest(operation="retention"),
        "engagement": CardRequest(operation="engagement"),
        "resurrection": CardRequest(operation="resurrection"),
    }


class OverviewRequest(QueryRequest):
    cards: Dict[str, CardRequest] = Field(default_factory=_default_cards)


class QueryResponse(BaseModel):
    data: Dict[str, Any]
    source: str


@app.exception_handler(InvalidParameter)
async def _invalid_parameter_handler(request: Request, exc: InvalidParameter) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": exc.as_dict()})


@app.exception_handler(DataUnavailable)
async def _data_unavailable_handler(request: Request, exc: DataUnavailable) -> JSONResponse:
    logger.warning("Data unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"error": exc.as_dict()},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(QueryCancelled)
async def _cancelled_handler(request: Request, exc: QueryCancelled) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": exc.as_dict()})


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/funnels")
async def list_funnels() -> List[Dict[str, Any]]:
    return [
        {"id": definition.id, "name": definition.name, "steps": [step.name for step in definition.steps]}
        for definition in PREDEFINED_FUNNELS.values()
    ]


@app.get("/handles/{handle}")
async def handle_availability(handle: str) -> Dict[str, str]:
    service = AnalyticsQueryService(_handle_repository(), config)
    availability = service.check_handle(handle)
    return {"handle": normalize_handle(handle), "availability": availability.value}


@app.post("/cohorts", response_model=QueryResponse)
async def cohorts_endpoint(request: CohortRequest) -> QueryResponse:
    params = {"anchor": request.anchor, "metric": request.metric, "period": request.granularity}
    return await _run_query("cohort_table", request, params)


@app.post("/funnels/{funnel_id}", response_model=QueryResponse)
async def funnel_endpoint(funnel_id: str, request: QueryRequest) -> QueryResponse:
    return await _run_query("funnel", request, {"funnel_id": funnel_id})


@app.post("/retention", response_model=QueryResponse)
async def retention_endpoint(request: RetentionRequest) -> QueryResponse:
    return await _run_query("retention", request, {"role": request.role, "plan": request.plan})


@app.post("/engagement", response_model=QueryResponse)
async def engagement_endpoint(request: QueryRequest) -> QueryResponse:
    return await _run_query("engagement", request, {})


@app.post("/resurrection", response_model=QueryResponse)
async def resurrection_endpoint(request: QueryRequest) -> QueryResponse:
    return await _run_query("resurrection", request, {})


@app.post("/overview", response_model=QueryResponse)
async def overview_endpoint(request: OverviewRequest) -> QueryResponse:
    service, source = _build_service(request)
    cards = {name: (card.operation, dict(card.params)) for name, card in request.cards.items()}
    data = await service.aoverview(cards, _options(request))
    return QueryResponse(data=data, source=source)


async def _run_query(operation: str, request: QueryRequest, params: Dict[str, Any]) -> QueryResponse:
    service, source = _build_service(request)
    result = await service.aquery(operation, _options(request), **params)
    return QueryResponse(data=result.as_dict(), source=source)


def _options(request: QueryRequest) -> QueryOptions:
    return QueryOptions(
        period=request.period,
        start=request.start,
        end=request.end,
        compare_with_previous=request.compare_with_previous,
        now=request.now,
    )


def _build_service(request: QueryRequest) -> Tuple[AnalyticsQueryService, str]:
    if repository is not None:
        return AnalyticsQueryService(repository, config, cache=cache), "database"

    if request.users is None or request.events is None:
        raise DataUnavailable(
            "event store",
            "ANALYTICS_DATABASE_URL is not configured; supply users+events in the request body for ad-hoc queries",
        )

    inline = InMemoryRepository(
        users=[_convert_user_payload(payload) for payload in request.users],
        events=[_convert_event_payload(payload) for payload in request.events],
        campaigns=[_convert_campaign_payload(payload) for payload in request.campaigns or ()],
        timezone=config.timezone,
    )
    return AnalyticsQueryService(inline, config), "inline"


def _handle_repository() -> AnalyticsRepository:
    if repository is not None:
        return repository
    return _UnconfiguredRepository()


class _UnconfiguredRepository(AnalyticsRepository):
    def handle_exists(self, handle: str) -> bool:
        raise DataUnavailable("user store", "ANALYTICS_DATABASE_URL is not configured")


def _convert_user_payload(payload: UserPayload) -> UserRecord:
    return UserRecord(
        id=payload.id,
        signup_at=payload.signup_at,
        role=payload.role,
        plan=payload.plan,
        first_product_at=payload.first_product_at,
        upgrade_at=payload.upgrade_at,
        name=payload.name,
        handle=payload.handle,
        channel=payload.channel,
    )


def _convert_event_payload(payload: EventPayload) -> EventRecord:
    return EventRecord(
        id=payload.id,
        user_id=payload.user_id,
        type=payload.type,
        occurred_at=payload.occurred_at,
        value=payload.value,
        properties=payload.properties,
    )


def _convert_campaign_payload(payload: CampaignPayload) -> CampaignSend:
    return CampaignSend(
        id=payload.id,
        channel=payload.channel,
        sent_at=payload.sent_at,
        campaign_id=payload.campaign_id,
    )
