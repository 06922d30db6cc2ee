from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from .dataset import AnalyticsDataset
from .errors import InvalidParameter
from .models import Anchor, Cohort, Granularity, UserRecord
from .periods import add_periods, bucket_key, recent_buckets, truncate

logger = logging.getLogger(__name__)

AnchorResolver = Callable[[UserRecord], Optional[datetime]]

ANCHOR_RESOLVERS: Dict[Anchor, AnchorResolver] = {
    Anchor.SIGNUP: lambda user: user.signup_at,
    Anchor.FIRST_PRODUCT: lambda user: user.first_product_at,
    Anchor.UPGRADE: lambda user: user.upgrade_at,
}


def parse_anchor(value: object) -> Anchor:
    try:
        return Anchor(value)
    except ValueError:
        raise InvalidParameter("anchor", value, [item.value for item in Anchor]) from None


def parse_granularity(value: object) -> Granularity:
    try:
        return Granularity(value)
    except ValueError:
        raise InvalidParameter("period", value, [item.value for item in Granularity]) from None


class CohortBucketer:
    """
    Group users into calendar buckets keyed by their anchor event.

    Buckets with no members are kept as empty cohorts so the heatmap stays
    rectangular.
    """

    def __init__(self, dataset: AnalyticsDataset) -> None:
        self.dataset = dataset

    def build(
        self,
        anchor: Anchor,
        granularity: Granularity,
        as_of: datetime,
        window: int = 8,
        users: Optional[List[UserRecord]] = None,
    ) -> List[Cohort]:
        anchor = parse_anchor(anchor)
        granularity = parse_granularity(granularity)
        if window < 1:
            raise InvalidParameter("window", window)

        resolve = ANCHOR_RESOLVERS[anchor]
        as_of = self.dataset.localize(as_of)
        bucket_starts = recent_buckets(as_of, granularity, window)
        wanted = set(bucket_starts)

        members: Dict[datetime, Set[str]] = defaultdict(set)
        skipped = 0
        for user in users if users is not None else self.dataset.users.values():
            anchored_at = resolve(user)
            if anchored_at is None:
                skipped += 1
                continue
            if anchored_at >= as_of:
                continue
            bucket = truncate(anchored_at, granularity)
            if bucket in wanted:
                members[bucket].add(user.id)

        if skipped:
            logger.debug("Skipped %d users without a %s anchor", skipped, anchor.value)

        return [
            Cohort(
                key=bucket_key(start, granularity),
                anchor=anchor,
                granularity=granularity,
                start=start,
                end=add_periods(start, granularity, 1),
                members=frozenset(members.get(start, ())),
            )
            for start in bucket_starts
        ]
