"""Inactivity sweep: close IN_PROGRESS rooms nobody has touched for a while."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import List, Optional

from .data import DataStoreProtocol

logger = logging.getLogger(__name__)

DEFAULT_INACTIVE_DAYS = 7


def close_inactive_rooms(
    store: DataStoreProtocol,
    *,
    now: Optional[datetime] = None,
    inactive_days: int = DEFAULT_INACTIVE_DAYS,
) -> List[str]:
    """Move stale IN_PROGRESS rooms to CLOSED and return their ids.

    CLOSED is terminal, so a swept room never reaches COMPLETED. The store
    performs a guarded update, which makes concurrent sweeps harmless.
    """

    if inactive_days < 1:
        raise ValueError("inactive_days must be >= 1")
    cutoff = (now or datetime.now(tz=UTC)) - timedelta(days=inactive_days)
    closed = store.close_inactive_rooms(cutoff=cutoff)
    if closed:
        logger.info("Closed %d inactive rooms (cutoff=%s)", len(closed), cutoff.isoformat())
    return closed
