from __future__ import annotations

import bisect
import logging
import random
import time
from itertools import accumulate
from typing import Dict, Optional, Tuple

from .errors import DrawInactive, NoEntries
from .models import Document, WinnerRecord
from .registry import clear_schedule, get_draw

log = logging.getLogger(__name__)


def weighted_pick(entries: Dict[str, int], rng=random) -> Tuple[str, int]:
    """Pick a user with probability proportional to their ticket count.

    Equivalent to expanding every user into ``count`` tickets and indexing
    ``floor(random() * total)`` into that list, without building the list.
    Returns ``(user_id, total_tickets)``.
    """
    users = [u for u, c in entries.items() if c > 0]
    counts = [entries[u] for u in users]
    total = sum(counts)
    if total <= 0:
        raise ValueError("no tickets")
    cumulative = list(accumulate(counts))
    ticket = min(int(rng.random() * total), total - 1)
    return users[bisect.bisect_right(cumulative, ticket)], total


def select_winner(document: Document, draw_id: str, *, rng=random, now: Optional[float] = None) -> WinnerRecord:
    draw = get_draw(document, draw_id)
    if not draw.active:
        raise DrawInactive(draw.id)
    try:
        winner_id, total = weighted_pick(draw.entries, rng)
    except ValueError:
        raise NoEntries(draw.id) from None

    record = WinnerRecord(
        draw_id=draw.id,
        draw_name=draw.name,
        timestamp=time.time() if now is None else now,
        winner_id=winner_id,
        reward=draw.reward,
        total_entries=total,
        winner_entries=draw.entries[winner_id],
    )
    document.record_winner(record)
    account = document.users.get(winner_id)
    if account is not None:
        account.wins += 1
        if document.config.feature("achievement_system") and "lucky_winner" not in account.achievements:
            account.achievements.append("lucky_winner")
    if draw.draw_time is not None:
        clear_schedule(draw)
    log.info(
        "Selected winner %s for %s (%d/%d entries)",
        winner_id, draw.name, record.winner_entries, record.total_entries,
    )
    return record
