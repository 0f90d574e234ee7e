# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Read-only rollups over the message store and scheduler state."""

from __future__ import annotations

from typing import Any

from .persistence import MessageStore
from .scheduler import SchedulerLoop


class StatsAggregator:
    """Summarize message counts per status and the scheduler state.

    The result contains no time-dependent values, so two calls without an
    intervening mutation return equal dictionaries.
    """

    def __init__(self, store: MessageStore, scheduler: SchedulerLoop):
        self.store = store
        self.scheduler = scheduler

    async def get_stats(self, user_id: str | None = None) -> dict[str, Any]:
        """Return per-status counts, optionally restricted to one sender.

        Args:
            user_id: Only count messages whose ``sender_user_id`` matches.

        Returns:
            ``{"by_status": {...}, "total_scheduled": int, "scheduler": {...}}``
            with every status present in ``by_status``.
        """
        by_status = await self.store.count_by_status(user_id)
        return {
            "by_status": by_status,
            "total_scheduled": by_status.get("scheduled", 0),
            "scheduler": self.scheduler.state(),
        }
