import pytest

from conftest import at, click_on, event, user
from creator_analytics.configuration import EngagementConfig, EngagementWeights
from creator_analytics.engagement import EngagementScorer
from creator_analytics.models import DateRange, EventType, Plan, Role

WINDOW = DateRange(start=at(2024, 2, 1), end=at(2024, 3, 1))


@pytest.fixture
def platform(make_dataset):
    users = [
        user("busy", at(2024, 1, 2), Role.CREATOR, name="Busy Bee", handle="busy"),
        user("quiet", at(2024, 1, 3), Role.CREATOR),
        user("early_tie", at(2024, 1, 1), Role.CREATOR),
        user("late_tie", at(2024, 1, 5), Role.CREATOR),
        user("idle", at(2024, 1, 4)),
    ]
    events = [
        event("busy", EventType.PRODUCT_CREATED, at(2024, 2, 2)),
        event("busy", EventType.PRODUCT_CREATED, at(2024, 2, 3)),
        event("busy", EventType.POST_CREATED, at(2024, 2, 4)),
        *[click_on("busy", at(2024, 2, 10, hour)) for hour in range(4)],
        event("quiet", EventType.FAVORITE, at(2024, 2, 7)),
        event("early_tie", EventType.POST_CREATED, at(2024, 2, 8)),
        event("late_tie", EventType.POST_CREATED, at(2024, 2, 9)),
        # Outside the window.
        event("idle", EventType.POST_CREATED, at(2024, 1, 20)),
    ]
    return make_dataset(users, events)


def test_score_uses_configured_weights(platform):
    scores = {entry.user_id: entry for entry in EngagementScorer(platform).score_users(WINDOW)}

    busy = scores["busy"]
    assert (busy.products, busy.posts, busy.clicks) == (2, 1, 4)
    assert busy.score == 37.0
    assert busy.bucket == "11-50"
    assert scores["quiet"].score == 0.0
    assert scores["quiet"].bucket == "0"


def test_inactive_users_are_not_scored(platform):
    scored = {entry.user_id for entry in EngagementScorer(platform).score_users(WINDOW)}

    assert "idle" not in scored
    # The click visitor has no account, so only platform users show up.
    assert scored == {"busy", "quiet", "early_tie", "late_tie"}


def test_top_users_break_ties_by_earlier_signup(platform):
    top = EngagementScorer(platform).compute(WINDOW).top_users

    assert [entry.user_id for entry in top] == ["busy", "early_tie", "late_tie", "quiet"]


def test_top_k_limits_the_leaderboard(platform):
    scorer = EngagementScorer(platform, EngagementConfig(top_k=2))
    assert len(scorer.compute(WINDOW).top_users) == 2


def test_distribution_covers_every_bucket(platform):
    distribution = EngagementScorer(platform).compute(WINDOW).score_distribution

    assert [bucket.range for bucket in distribution] == ["0", "1-10", "11-50", "51-100", "100+"]
    assert [bucket.count for bucket in distribution] == [1, 0, 3, 0, 0]
    assert distribution[2].percentage == 75.0


def test_custom_weights_change_scores(platform):
    config = EngagementConfig(weights=EngagementWeights(product_weight=1, post_weight=1, click_weight=1))
    busy = next(entry for entry in EngagementScorer(platform, config).score_users(WINDOW) if entry.user_id == "busy")

    assert busy.score == 7.0
    assert busy.bucket == "1-10"


def test_empty_window_has_no_percentages(make_dataset):
    distribution = EngagementScorer(make_dataset([user("a", at(2024, 1, 1))])).compute(WINDOW).score_distribution

    assert all(bucket.count == 0 and bucket.percentage is None for bucket in distribution)


def test_feature_adoption_is_cumulative(make_dataset):
    dataset = make_dataset(
        [
            user("a", at(2024, 1, 1), Role.CREATOR, Plan.PRO, upgrade_at=at(2024, 2, 10)),
            user("b", at(2024, 1, 1)),
        ],
        [event("a", EventType.PRODUCT_CREATED, at(2024, 1, 15))],
    )
    adoption = {item.feature: item for item in EngagementScorer(dataset).compute(WINDOW).feature_adoption}

    assert adoption["product_created"].current == 50.0
    assert adoption["product_created"].previous == 50.0
    assert adoption["upgraded_to_pro"].current == 50.0
    assert adoption["upgraded_to_pro"].previous == 0.0
    assert adoption["post_created"].current == 0.0
    assert adoption["product_created"].target == 85.0


def test_session_analytics(make_dataset):
    dataset = make_dataset(
        [user("a", at(2024, 1, 1))],
        [
            event("a", EventType.SESSION, at(2024, 1, 20), value=120, properties={"pages": 2}),
            event("a", EventType.SESSION, at(2024, 2, 2), value=300, properties={"pages": 1}),
            event("a", EventType.SESSION, at(2024, 2, 3), value=600, properties={"pages": 3}),
        ],
    )
    sessions = EngagementScorer(dataset).compute(WINDOW).session_analytics

    assert sessions.sessions == 2
    assert sessions.avg_duration_minutes == 7.5
    assert sessions.avg_duration_delta == 5.5
    assert sessions.pages_per_session == 2.0
    assert sessions.pages_per_session_delta == 0.0
    assert sessions.bounce_rate == 50.0
    assert sessions.bounce_rate_delta == 50.0


def test_no_sessions_means_no_data_not_zero(make_dataset):
    sessions = EngagementScorer(make_dataset([user("a", at(2024, 1, 1))])).compute(WINDOW).session_analytics

    assert sessions.sessions == 0
    assert sessions.avg_duration_minutes is None
    assert sessions.bounce_rate is None
    assert sessions.avg_duration_delta is None
