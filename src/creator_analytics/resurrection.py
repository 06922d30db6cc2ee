from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from .configuration import ResurrectionConfig
from .dataset import ACTIVITY_EVENTS, AnalyticsDataset
from .models import CampaignSend, DateRange, ResurrectionRow, ResurrectionTable, UserRecord

logger = logging.getLogger(__name__)

UNKNOWN_CHANNEL = "unknown"


class ResurrectionTracker:
    """
    Dormant-user reactivation per engagement channel.

    A user is dormant when, at the start of the window, they have been signed
    up for longer than the dormancy threshold and had no qualifying activity
    within it. A dormant user is reactivated when a qualifying activity lands
    within ``reactivation_window_days`` after a campaign send on their channel.
    """

    def __init__(self, dataset: AnalyticsDataset, config: Optional[ResurrectionConfig] = None) -> None:
        self.dataset = dataset
        self.config = config or ResurrectionConfig()

    def compute(self, window: DateRange, users: Optional[Sequence[UserRecord]] = None) -> ResurrectionTable:
        start = self.dataset.localize(window.start)
        end = self.dataset.localize(window.end)
        dormant_since = start - timedelta(days=self.config.dormancy_days)

        dormant: Dict[str, List[UserRecord]] = defaultdict(list)
        for user in users if users is not None else self.dataset.users.values():
            self.dataset.check_cancelled()
            if self.is_dormant(user, start, dormant_since):
                dormant[self.channel_for(user, start)].append(user)

        sends: Dict[str, List[CampaignSend]] = defaultdict(list)
        for send in self.dataset.campaigns_between(start, end):
            sends[send.channel].append(send)

        rows = []
        for channel in self._channels(dormant, sends):
            reactivated = sum(1 for user in dormant.get(channel, ()) if self.was_reactivated(user, sends[channel], end))
            rows.append(
                ResurrectionRow(
                    channel=channel,
                    dormant_count=len(dormant.get(channel, ())),
                    campaigns_sent=len(sends.get(channel, ())),
                    reactivated_count=reactivated,
                )
            )
        return ResurrectionTable(rows=rows)

    def is_dormant(self, user: UserRecord, at: datetime, dormant_since: datetime) -> bool:
        if user.signup_at > dormant_since:
            return False
        last_active = self.dataset.last_activity_before(user.id, at)
        return last_active is None or last_active < dormant_since

    def channel_for(self, user: UserRecord, at: datetime) -> str:
        """Last channel seen on the user's events before ``at``, else the acquisition channel."""

        for event in reversed(self.dataset.events_for(user.id, end=at)):
            channel = event.properties.get("channel")
            if channel:
                return str(channel)
        return user.channel or UNKNOWN_CHANNEL

    def was_reactivated(self, user: UserRecord, sends: Sequence[CampaignSend], end: datetime) -> bool:
        window = timedelta(days=self.config.reactivation_window_days)
        for send in sends:
            until = min(send.sent_at + window, end)
            if self.dataset.has_activity(user.id, send.sent_at, until, types=ACTIVITY_EVENTS):
                return True
        return False

    def _channels(self, dormant: Dict[str, List[UserRecord]], sends: Dict[str, List[CampaignSend]]) -> List[str]:
        configured = list(self.config.channels)
        extra = sorted((set(dormant) | set(sends)) - set(configured))
        if extra:
            logger.debug("Reporting channels outside the configured set: %s", ", ".join(extra))
        return configured + extra
