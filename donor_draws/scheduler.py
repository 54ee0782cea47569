"""
Decisions for the periodic scheduler tick.

The loop itself lives in the bot (``tasks.loop``); these functions only read
the document, so running them on overlapping ticks is harmless as long as
the caller re-reads under the guild lock and marks what it acted on.
"""
from __future__ import annotations

from typing import List

from .models import Document, Draw

DEFAULT_NOTIFY_LEAD_SECONDS = 60 * 60


def draws_to_notify(document: Document, now: float, lead_seconds: float = DEFAULT_NOTIFY_LEAD_SECONDS) -> List[Draw]:
    out = []
    for draw in document.draws.values():
        if not draw.active or draw.draw_time is None or draw.notification_sent:
            continue
        if draw.draw_time - lead_seconds <= now < draw.draw_time:
            out.append(draw)
    return sorted(out, key=lambda d: (d.draw_time, d.id))


def draws_due(document: Document, now: float) -> List[Draw]:
    due = [d for d in document.draws.values() if d.active and d.draw_time is not None and d.draw_time <= now]
    return sorted(due, key=lambda d: (d.draw_time, d.id))
