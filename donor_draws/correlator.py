"""
Short-lived table that pairs a donor's ``$tip @x 5 #draw`` command with the
tipping bot's later confirmation, which does not repeat the draw tag.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from .models import PendingTip
from .tipparse import parse_intent

log = logging.getLogger(__name__)

PENDING_TIP_TTL = 5 * 60


def _key(value) -> Optional[str]:
    return str(value) if value is not None else None


class TipCorrelator:
    def __init__(self, ttl_seconds: float = PENDING_TIP_TTL):
        self.ttl = ttl_seconds
        # message id -> pending tip; dict order is insertion order
        self._pending: Dict[str, PendingTip] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def _live(self, tip: PendingTip, now: float) -> bool:
        return now - tip.timestamp < self.ttl

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = [k for k, tip in self._pending.items() if not self._live(tip, now)]
        for key in expired:
            del self._pending[key]
        return len(expired)

    def record_intent(
        self,
        sender_id: str,
        recipient_id: str,
        target_draw_id: Optional[str],
        message_id: str,
        channel_id: Optional[str] = None,
        now: Optional[float] = None,
        *,
        guild_id: Optional[str] = None,
    ) -> PendingTip:
        now = time.time() if now is None else now
        tip = PendingTip(
            sender_id=str(sender_id),
            recipient_id=str(recipient_id),
            target_draw_id=target_draw_id.lower() if target_draw_id else None,
            timestamp=now,
            channel_id=_key(channel_id),
            message_id=str(message_id),
            guild_id=_key(guild_id),
        )
        self._pending[str(message_id)] = tip
        swept = self.sweep(now)
        if swept:
            log.debug("Swept %d expired pending tip(s)", swept)
        log.info(
            "Recorded tip intent %s -> %s (%s)",
            tip.sender_id, tip.recipient_id,
            f"draw #{tip.target_draw_id}" if tip.target_draw_id else "no draw tag",
        )
        return tip

    def record_from_message(
        self,
        content: str,
        sender_id: str,
        message_id: str,
        channel_id: Optional[str] = None,
        now: Optional[float] = None,
        *,
        guild_id: Optional[str] = None,
    ) -> Optional[PendingTip]:
        intent = parse_intent(content)
        if intent is None:
            return None
        return self.record_intent(
            sender_id, intent.recipient_id, intent.target_draw_id, message_id, channel_id, now, guild_id=guild_id,
        )

    def match_and_consume(
        self,
        sender_id: str,
        recipient_id: str,
        now: Optional[float] = None,
        *,
        guild_id: Optional[str] = None,
    ) -> Optional[PendingTip]:
        """Pop the oldest live intent for exactly this (guild, sender, recipient)."""
        guild_id = _key(guild_id)
        now = time.time() if now is None else now
        best_key = None
        best: Optional[PendingTip] = None
        for key, tip in self._pending.items():
            if tip.sender_id != str(sender_id) or tip.recipient_id != str(recipient_id):
                continue
            if tip.guild_id != guild_id:
                continue
            if not self._live(tip, now):
                continue
            if best is None or tip.timestamp < best.timestamp:
                best_key, best = key, tip
        if best_key is not None:
            del self._pending[best_key]
        return best
