"""
Turn a confirmed USD donation into draw entries.

Entries are always written to both ``Draw.entries[user]`` and
``UserAccount.entries[draw]`` with the same value, and never push a draw past
``max_entries``. Persisting is left to the caller so that one donation event
costs exactly one save.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .models import DONATION_LOG_LIMIT, Document, Donation, Draw, UserAccount
from .registry import find_cheapest_eligible

log = logging.getLogger(__name__)

DAY = 24 * 60 * 60

ACHIEVEMENT_THRESHOLDS = [
    ("first_donation", lambda u: u.total_donated > 0),
    ("generous_donor", lambda u: u.total_donated >= 100),
    ("big_spender", lambda u: u.total_donated >= 500),
    ("whale", lambda u: u.total_donated >= 1000),
    ("lucky_winner", lambda u: u.wins > 0),
]

ACHIEVEMENT_INFO = {
    "first_donation": ("🌱 First Donation", "Make your first donation"),
    "generous_donor": ("💝 Generous Donor", "Donate $100 in total"),
    "big_spender": ("💎 Big Spender", "Donate $500 in total"),
    "whale": ("🐋 Whale", "Donate $1,000 in total"),
    "lucky_winner": ("🍀 Lucky Winner", "Win a draw"),
}


@dataclass
class DrawOutcome:
    draw_id: str
    draw_name: str
    entry_count: int
    is_full: bool
    min_amount: float


@dataclass
class AllocationResult:
    entered_draws: List[DrawOutcome] = field(default_factory=list)
    total_donated: float = 0.0
    # set when an explicit target draw could not take entries
    target_error: Optional[str] = None

    @property
    def entries_added(self) -> int:
        return sum(o.entry_count for o in self.entered_draws)


class ManualStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    FULL = "full"
    INVALID = "invalid"


@dataclass
class ManualAssignment:
    status: ManualStatus
    draw_id: str
    entries_added: int = 0
    requested: int = 0
    total_donated: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ManualStatus.OK

    @property
    def clamped(self) -> bool:
        return self.ok and self.entries_added < self.requested


def entries_for(usd_amount: float, min_amount: float) -> int:
    if min_amount <= 0:
        return 0
    # rounding keeps 0.3 / 0.1 from landing on 2.999...
    return int(math.floor(round(usd_amount / min_amount, 9)))


def is_vip(document: Document, role_ids: Iterable[str]) -> bool:
    role_ids = {str(r) for r in role_ids}
    cfg = document.config
    if cfg.vip_role_id:
        return cfg.vip_role_id in role_ids
    return any(t.role_id and t.role_id in role_ids for t in cfg.donor_tiers)


def gate(document: Document, draw: Draw, user_id: str, usd_amount: float, role_ids=()) -> Optional[str]:
    """Return why ``draw`` cannot take automatic entries, or None if it can."""
    if not draw.active:
        return "inactive"
    if draw.manual_entries_only:
        return "manual_only"
    if draw.vip_only and not is_vip(document, role_ids):
        return "vip_only"
    if document.config.feature("blacklist_system"):
        if document.config.global_blacklist.blocks(user_id, role_ids) or draw.blacklist.blocks(user_id, role_ids):
            return "blacklisted"
    if not draw.accepts_amount(usd_amount):
        return "out_of_range"
    if entries_for(usd_amount, draw.min_amount) < 1:
        return "below_minimum"
    return None


def _apply(document: Document, draw: Draw, user_id: str, account: UserAccount, requested: int) -> int:
    to_add = min(requested, draw.available)
    if to_add <= 0:
        return 0
    draw.entries[user_id] = draw.entries.get(user_id, 0) + to_add
    account.entries[draw.id] = draw.entries[user_id]
    return to_add


def _update_streak(account: UserAccount, now: float) -> None:
    last = account.last_donation_at
    if last is None:
        account.current_streak = 1
    elif int((now - last) // DAY) <= 1:
        account.current_streak += 1
    else:
        account.current_streak = 1
    account.longest_streak = max(account.longest_streak, account.current_streak)
    account.last_donation_at = now


def award_achievements(account: UserAccount) -> List[str]:
    new = []
    for key, earned in ACHIEVEMENT_THRESHOLDS:
        if key not in account.achievements and earned(account):
            account.achievements.append(key)
            new.append(key)
    return new


def record_donation(
    document: Document,
    account: UserAccount,
    usd_amount: float,
    currency: str = "",
    original_amount: float = 0.0,
    now: Optional[float] = None,
) -> None:
    now = time.time() if now is None else now
    account.total_donated += usd_amount
    account.donations.append(Donation(usd_amount, currency, original_amount, now))
    if len(account.donations) > DONATION_LOG_LIMIT:
        del account.donations[: len(account.donations) - DONATION_LOG_LIMIT]
    if document.config.feature("donation_streaks"):
        _update_streak(account, now)
    if document.config.feature("achievement_system"):
        award_achievements(account)


def allocate(
    document: Document,
    user_id: str,
    username: Optional[str],
    usd_amount: float,
    target_draw_id: Optional[str] = None,
    *,
    role_ids: Iterable[str] = (),
    currency: str = "",
    original_amount: float = 0.0,
    now: Optional[float] = None,
) -> AllocationResult:
    """Credit ``usd_amount`` to the user and add entries.

    With a ``target_draw_id`` only that draw is considered, and a target
    that cannot take entries yields no entries at all. Without one, the
    cheapest eligible draw is entered.
    """
    user_id = str(user_id)
    role_ids = tuple(str(r) for r in role_ids)
    account = document.user(user_id, username)
    record_donation(document, account, usd_amount, currency, original_amount, now)
    result = AllocationResult(total_donated=account.total_donated)

    if target_draw_id:
        draw = document.draws.get(target_draw_id.lower())
        if draw is None:
            result.target_error = "not_found"
            log.info("Donation from %s targeted unknown draw #%s", user_id, target_draw_id)
            return result
        reason = gate(document, draw, user_id, usd_amount, role_ids)
        if reason:
            result.target_error = reason
            log.info("Draw %s refused donation from %s: %s", draw.id, user_id, reason)
            return result
        targets = [draw]
    else:
        draw = _cheapest_allowed(document, user_id, usd_amount, role_ids)
        targets = [draw] if draw else []

    for draw in targets:
        requested = entries_for(usd_amount, draw.min_amount)
        added = _apply(document, draw, user_id, account, requested)
        result.entered_draws.append(DrawOutcome(
            draw_id=draw.id,
            draw_name=draw.name,
            entry_count=added,
            is_full=added < requested,
            min_amount=draw.min_amount,
        ))
        if added:
            log.info("Added %d entries for %s to %s", added, account.username, draw.name)
        else:
            log.info("Draw %s is full; no entries for %s", draw.id, account.username)
    return result


def _cheapest_allowed(document: Document, user_id: str, usd_amount: float, role_ids) -> Optional[Draw]:
    """Cheapest active draw whose range holds the amount and that passes every gate."""
    draw = find_cheapest_eligible(document, usd_amount)
    if draw is not None and gate(document, draw, user_id, usd_amount, role_ids) is None:
        return draw
    # the cheapest by range may be gated for this user; try the rest in order
    candidates = sorted(
        (d for d in document.draws.values() if gate(document, d, user_id, usd_amount, role_ids) is None),
        key=lambda d: (d.min_amount, d.id),
    )
    return candidates[0] if candidates else None


def manually_assign_entries(
    document: Document,
    user_id: str,
    draw_id: str,
    entry_count: int,
    usd_amount: float = 0.0,
    *,
    username: Optional[str] = None,
    now: Optional[float] = None,
) -> ManualAssignment:
    """Admin grant of entries; skips eligibility but not the capacity clamp."""
    draw = document.draws.get((draw_id or "").lower())
    if draw is None:
        return ManualAssignment(ManualStatus.NOT_FOUND, draw_id)
    if entry_count is None or int(entry_count) < 1 or (usd_amount or 0) < 0:
        return ManualAssignment(ManualStatus.INVALID, draw.id, requested=entry_count or 0)
    if not draw.active:
        return ManualAssignment(ManualStatus.INACTIVE, draw.id, requested=entry_count)
    if draw.available <= 0:
        return ManualAssignment(ManualStatus.FULL, draw.id, requested=entry_count)

    user_id = str(user_id)
    account = document.user(user_id, username)
    if usd_amount and usd_amount > 0:
        record_donation(document, account, usd_amount, "MANUAL", 0.0, now)
    added = _apply(document, draw, user_id, account, int(entry_count))
    log.info("Manually assigned %d/%d entries for %s to %s", added, entry_count, account.username, draw.name)
    return ManualAssignment(
        ManualStatus.OK, draw.id, entries_added=added, requested=int(entry_count),
        total_donated=account.total_donated,
    )


def assign_entries_to_many(
    document: Document,
    members: Iterable[Tuple[str, str]],
    draw_id: str,
    entry_count: int,
    usd_amount: float = 0.0,
    now: Optional[float] = None,
) -> List[ManualAssignment]:
    """Manual assignment for each ``(user_id, username)``; stops once the draw fills."""
    results = []
    for user_id, username in members:
        res = manually_assign_entries(document, user_id, draw_id, entry_count, usd_amount, username=username, now=now)
        results.append(res)
        if res.status in (ManualStatus.NOT_FOUND, ManualStatus.INACTIVE, ManualStatus.INVALID, ManualStatus.FULL):
            break
    return results
