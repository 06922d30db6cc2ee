import pytest
from httpx import ASGITransport, AsyncClient

from creator_analytics import server
from creator_analytics.errors import DataUnavailable, QueryCancelled
from creator_analytics.repository import AnalyticsRepository, InMemoryRepository


def _inline(users, events):
    return {
        "users": [
            {
                "id": record.id,
                "signup_at": record.signup_at.isoformat(),
                "role": record.role.value,
                "plan": record.plan.value,
                "first_product_at": record.first_product_at.isoformat() if record.first_product_at else None,
                "upgrade_at": record.upgrade_at.isoformat() if record.upgrade_at else None,
                "handle": record.handle,
                "channel": record.channel,
            }
            for record in users
        ],
        "events": [
            {
                "id": record.id,
                "user_id": record.user_id,
                "type": record.type.value,
                "occurred_at": record.occurred_at.isoformat(),
                "value": record.value,
                "properties": record.properties,
            }
            for record in events
        ],
    }


class FailingRepository(AnalyticsRepository):
    def __init__(self, error):
        self.error = error

    def load(self, end, start=None):
        raise self.error

    def handle_exists(self, handle):
        raise self.error


@pytest.fixture
def inline_body(creator_platform):
    users, events = creator_platform
    return _inline(users, events)


@pytest.fixture
async def client(monkeypatch):
    monkeypatch.setattr(server, "repository", None)
    monkeypatch.setattr(server, "cache", None)
    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestCatalogue:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_funnel_catalogue(self, client):
        resp = await client.get("/funnels")
        assert resp.status_code == 200
        ids = {item["id"] for item in resp.json()}
        assert ids == {"signup_product_click", "signup_pro", "visitor_active"}


class TestQueries:
    @pytest.mark.asyncio
    async def test_cohort_table_from_inline_data(self, client, inline_body):
        body = {**inline_body, "anchor": "signup", "metric": "retention", "granularity": "monthly", "now": "2024-03-01T00:00:00+00:00"}
        resp = await client.post("/cohorts", json=body)

        assert resp.status_code == 200
        payload = resp.json()
        assert payload["source"] == "inline"
        january = next(row for row in payload["data"]["current"]["cohorts"] if row["cohort"] == "2024-01")
        assert january["size"] == 4
        assert january["p1"] == 50.0
        assert january["p2"] is None

    @pytest.mark.asyncio
    async def test_funnel_with_comparison(self, client, inline_body):
        body = {
            **inline_body,
            "from": "2024-01-01T00:00:00+00:00",
            "to": "2024-02-01T00:00:00+00:00",
            "compare_with_previous": True,
        }
        resp = await client.post("/funnels/signup_product_click", json=body)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [step["value"] for step in data["current"]["steps"]] == [4, 2, 1]
        assert data["previousRange"]["to"] == data["range"]["from"]

    @pytest.mark.asyncio
    async def test_retention_endpoint(self, client, inline_body):
        body = {**inline_body, "role": "creators", "now": "2024-03-01T00:00:00+00:00"}
        resp = await client.post("/retention", json=body)

        assert resp.status_code == 200
        assert resp.json()["data"]["current"]["retention"]["D1"]["eligible"] == 2

    @pytest.mark.asyncio
    async def test_overview_reports_failed_cards_in_place(self, client, inline_body):
        body = {
            **inline_body,
            "now": "2024-03-01T00:00:00+00:00",
            "cards": {
                "engagement": {"operation": "engagement"},
                "broken": {"operation": "cohort_table", "params": {"anchor": "first_post"}},
            },
        }
        resp = await client.post("/overview", json=body)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["engagement"]["status"] == "ok"
        assert data["broken"]["status"] == "error"
        assert data["broken"]["error"]["parameter"] == "anchor"


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_funnel_is_400(self, client, inline_body):
        resp = await client.post("/funnels/unknown", json=inline_body)

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_parameter"

    @pytest.mark.asyncio
    async def test_unknown_metric_is_400(self, client, inline_body):
        resp = await client.post("/cohorts", json={**inline_body, "metric": "revenue"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_half_open_range_is_rejected(self, client, inline_body):
        resp = await client.post("/engagement", json={**inline_body, "from": "2024-01-01T00:00:00+00:00"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_source_is_503(self, client):
        resp = await client.post("/engagement", json={})

        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == str(server.RETRY_AFTER_SECONDS)
        assert resp.json()["error"]["code"] == "data_unavailable"

    @pytest.mark.asyncio
    async def test_database_outage_is_503(self, client, monkeypatch):
        monkeypatch.setattr(server, "repository", FailingRepository(DataUnavailable("event store", "timeout")))
        resp = await client.post("/resurrection", json={})

        assert resp.status_code == 503
        assert "Retry-After" in resp.headers

    @pytest.mark.asyncio
    async def test_cancelled_query_is_409(self, client, monkeypatch):
        monkeypatch.setattr(server, "repository", FailingRepository(QueryCancelled()))
        resp = await client.post("/engagement", json={})

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "query_cancelled"


class TestHandles:
    @pytest.mark.asyncio
    async def test_unverifiable_handle_is_unknown(self, client):
        resp = await client.get("/handles/@maya")

        assert resp.status_code == 200
        assert resp.json() == {"handle": "maya", "availability": "unknown"}

    @pytest.mark.asyncio
    async def test_taken_handle(self, client, monkeypatch, creator_platform):
        users, events = creator_platform
        monkeypatch.setattr(server, "repository", InMemoryRepository(users, events))
        resp = await client.get("/handles/Maya")

        assert resp.json()["availability"] == "taken"

    @pytest.mark.asyncio
    async def test_short_handle_is_400(self, client):
        resp = await client.get("/handles/ab")
        assert resp.status_code == 400
