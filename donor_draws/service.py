"""
Donation pipeline: tip confirmation -> price -> entries -> save.

The slow part (price lookup) happens before the guild lock is taken, so a
stalled price API never holds up other writes to the same guild. Everything
that reads and writes the document happens under ``store.locked``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from . import registry
from .allocator import AllocationResult, allocate
from .correlator import TipCorrelator
from .errors import NoEntries
from .models import DonorTier, Draw, PendingTip, WinnerRecord
from .prices import PriceResolver
from .scheduler import DEFAULT_NOTIFY_LEAD_SECONDS, draws_due, draws_to_notify
from .store import DocumentStore
from .tiers import tier_for
from .tipparse import TipConfirmation
from .winner import select_winner

log = logging.getLogger(__name__)


@dataclass
class DonationReceipt:
    sender_id: str
    recipient_id: str
    usd_amount: float
    target_draw_id: Optional[str]
    allocation: AllocationResult
    tier: Optional[DonorTier]
    tiers: List[DonorTier]
    saved: bool


@dataclass
class TickReport:
    notify: List[Draw] = field(default_factory=list)
    winners: List[WinnerRecord] = field(default_factory=list)
    empty: List[Draw] = field(default_factory=list)
    saved: bool = True

    @property
    def changed(self) -> bool:
        return bool(self.notify or self.winners or self.empty)


class DonationService:
    def __init__(
        self,
        store: DocumentStore,
        resolver: PriceResolver,
        correlator: Optional[TipCorrelator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.resolver = resolver
        self.correlator = correlator or TipCorrelator()
        self.clock = clock

    def handle_intent(self, guild_id, content: str, sender_id, message_id, channel_id=None) -> Optional[PendingTip]:
        return self.correlator.record_from_message(
            content, str(sender_id), str(message_id),
            str(channel_id) if channel_id is not None else None,
            now=self.clock(),
            guild_id=str(guild_id),
        )

    async def usd_value(self, confirmation: TipConfirmation, content: str) -> Optional[float]:
        if confirmation.usd_estimate:
            return confirmation.usd_estimate
        return await self.resolver.resolve(confirmation.symbol, confirmation.amount, content)

    async def handle_confirmation(
        self,
        guild_id,
        confirmation: TipConfirmation,
        content: str = "",
        *,
        sender_name: Optional[str] = None,
        sender_role_ids: Iterable[str] = (),
        recipient_role_ids: Callable[[str], Iterable[str]] = lambda _rid: (),
    ) -> List[DonationReceipt]:
        guild_id = str(guild_id)
        config = self.store.load(guild_id).config
        if not config.accepts(confirmation.symbol):
            log.info("Ignoring tip in %s: %s is not an accepted currency", guild_id, confirmation.symbol)
            return []
        if not config.allowed_recipients:
            log.debug("Guild %s has no allowed recipients configured", guild_id)
            return []

        usd = await self.usd_value(confirmation, content)
        if not usd or usd <= 0:
            log.warning(
                "Dropping tip of %s %s from %s: no USD value",
                confirmation.amount, confirmation.symbol, confirmation.sender_id,
            )
            return []

        receipts: List[DonationReceipt] = []
        async with self.store.locked(guild_id) as doc:
            now = self.clock()
            for recipient_id in confirmation.recipient_ids:
                roles = [str(r) for r in recipient_role_ids(recipient_id)]
                if not registry.is_allowed_recipient(doc, recipient_id, roles):
                    continue
                pending = self.correlator.match_and_consume(
                    confirmation.sender_id, recipient_id, now, guild_id=guild_id,
                )
                target = pending.target_draw_id if pending else None
                result = allocate(
                    doc, confirmation.sender_id, sender_name, usd, target,
                    role_ids=sender_role_ids,
                    currency=confirmation.symbol,
                    original_amount=confirmation.amount,
                    now=now,
                )
                log.info(
                    "Processed donation in %s: %s -> %s $%.2f (%d entries)",
                    guild_id, confirmation.sender_id, recipient_id, usd, result.entries_added,
                )
                receipts.append(DonationReceipt(
                    sender_id=confirmation.sender_id,
                    recipient_id=recipient_id,
                    usd_amount=usd,
                    target_draw_id=target,
                    allocation=result,
                    tier=tier_for(result.total_donated, doc.config.donor_tiers),
                    tiers=list(doc.config.donor_tiers),
                    saved=False,
                ))
            if receipts:
                saved = self.store.save(guild_id, doc)
                for receipt in receipts:
                    receipt.saved = saved
        return receipts

    async def run_schedule(self, guild_id, now: Optional[float] = None,
                           lead_seconds: float = DEFAULT_NOTIFY_LEAD_SECONDS) -> TickReport:
        """Mark upcoming-draw notifications and fire due draws for one guild."""
        report = TickReport()
        now = self.clock() if now is None else now
        async with self.store.locked(str(guild_id)) as doc:
            if doc.config.feature("draw_notifications"):
                for draw in draws_to_notify(doc, now, lead_seconds):
                    draw.notification_sent = True
                    report.notify.append(draw)
            if doc.config.feature("automated_draws"):
                for draw in draws_due(doc, now):
                    try:
                        report.winners.append(select_winner(doc, draw.id, now=now))
                    except NoEntries:
                        log.info("Scheduled draw %s in %s has no entries; cancelling schedule", draw.id, guild_id)
                        registry.clear_schedule(draw)
                        report.empty.append(draw)
            if report.changed:
                report.saved = self.store.save(str(guild_id), doc)
        return report
