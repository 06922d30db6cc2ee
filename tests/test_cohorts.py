import pytest

from conftest import at, user
from creator_analytics.cohorts import CohortBucketer
from creator_analytics.errors import InvalidParameter
from creator_analytics.models import Anchor, Granularity, Role


def test_signup_cohorts_by_iso_week(make_dataset):
    dataset = make_dataset(
        [
            user("a", at(2024, 1, 1, 8)),
            user("b", at(2024, 1, 7, 23)),
            user("c", at(2024, 1, 8, 0)),
        ]
    )
    cohorts = CohortBucketer(dataset).build(Anchor.SIGNUP, Granularity.WEEKLY, as_of=at(2024, 1, 20), window=3)

    assert [cohort.key for cohort in cohorts] == ["2024-W01", "2024-W02", "2024-W03"]
    assert cohorts[0].members == frozenset({"a", "b"})
    assert cohorts[1].members == frozenset({"c"})
    assert cohorts[2].size == 0


def test_empty_buckets_are_kept(make_dataset):
    dataset = make_dataset([user("a", at(2024, 1, 10))])
    cohorts = CohortBucketer(dataset).build(Anchor.SIGNUP, Granularity.MONTHLY, as_of=at(2024, 6, 1), window=8)

    assert len(cohorts) == 8
    assert [cohort.key for cohort in cohorts][-1] == "2024-05"
    assert sum(cohort.size for cohort in cohorts) == 1


def test_users_without_anchor_are_not_bucketed(make_dataset):
    dataset = make_dataset(
        [
            user("maker", at(2024, 1, 2), Role.CREATOR, first_product_at=at(2024, 2, 3)),
            user("browser", at(2024, 1, 2)),
        ]
    )
    cohorts = CohortBucketer(dataset).build(Anchor.FIRST_PRODUCT, Granularity.MONTHLY, as_of=at(2024, 3, 1), window=2)

    assert cohorts[0].key == "2024-01"
    assert cohorts[0].size == 0
    assert cohorts[1].members == frozenset({"maker"})


def test_anchor_after_as_of_is_excluded(make_dataset):
    dataset = make_dataset([user("late", at(2024, 2, 20))])
    cohorts = CohortBucketer(dataset).build(Anchor.SIGNUP, Granularity.MONTHLY, as_of=at(2024, 2, 15), window=1)

    assert cohorts[0].key == "2024-02"
    assert cohorts[0].size == 0


def test_cohort_is_open_until_its_bucket_ends(make_dataset):
    dataset = make_dataset([user("a", at(2024, 2, 2))])
    cohort = CohortBucketer(dataset).build(Anchor.SIGNUP, Granularity.MONTHLY, as_of=at(2024, 2, 15), window=1)[0]

    assert cohort.is_open(at(2024, 2, 15))
    assert not cohort.is_open(at(2024, 3, 1))


def test_unknown_anchor_is_invalid(make_dataset):
    with pytest.raises(InvalidParameter) as excinfo:
        CohortBucketer(make_dataset([])).build("first_post", Granularity.WEEKLY, as_of=at(2024, 1, 1))
    assert excinfo.value.parameter == "anchor"


def test_unknown_granularity_is_invalid(make_dataset):
    with pytest.raises(InvalidParameter):
        CohortBucketer(make_dataset([])).build(Anchor.SIGNUP, "daily", as_of=at(2024, 1, 1))
