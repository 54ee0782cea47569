"""
Draw lifecycle and guild settings held in a ``Document``.

Functions here only mutate the in-memory document; the caller is expected to
hold the guild lock and save afterwards.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .errors import DrawNotFound, DuplicateDrawId, InvalidDrawInput
from .models import (
    UNBOUNDED_AMOUNT,
    Document,
    Draw,
    Recipient,
    RoleRecipient,
    UserAccount,
    UserRecipient,
    WinnerRecord,
)

log = logging.getLogger(__name__)

DRAW_CATEGORIES = {
    "monthly": "Monthly Draws",
    "special": "Special Events",
    "community": "Community Goals",
    "milestone": "Milestone Rewards",
    "seasonal": "Seasonal Events",
    "vip": "VIP Exclusive",
    "daily": "Daily Draws",
    "weekly": "Weekly Draws",
}

_EDITABLE = {
    "name", "min_amount", "max_amount", "reward", "max_entries", "active",
    "manual_entries_only", "vip_only", "category",
}


def _normalize_max(max_amount: float) -> float:
    return UNBOUNDED_AMOUNT if not max_amount else float(max_amount)


def _validate(min_amount: float, max_amount: float, max_entries: int) -> None:
    if min_amount is None or min_amount <= 0:
        raise InvalidDrawInput("Minimum amount must be greater than zero.")
    if max_amount < min_amount:
        raise InvalidDrawInput("Maximum amount cannot be below the minimum amount.")
    if max_entries is None or int(max_entries) < 1:
        raise InvalidDrawInput("Maximum entries must be at least 1.")


def get_draw(document: Document, draw_id: str) -> Draw:
    draw = document.draws.get((draw_id or "").lower()) or document.draws.get(draw_id)
    if draw is None:
        raise DrawNotFound(draw_id)
    return draw


def create_draw(
    document: Document,
    draw_id: str,
    name: str,
    min_amount: float,
    max_amount: float,
    reward: str,
    max_entries: int,
    *,
    category: str = "monthly",
    now: Optional[float] = None,
) -> Draw:
    draw_id = (draw_id or "").strip().lower()
    if not draw_id or any(c.isspace() for c in draw_id) or draw_id.startswith("#"):
        raise InvalidDrawInput("Draw ID must be a single word without spaces or '#'.")
    if draw_id in document.draws:
        raise DuplicateDrawId(draw_id)
    max_amount = _normalize_max(max_amount)
    _validate(min_amount, max_amount, max_entries)
    if category not in DRAW_CATEGORIES:
        raise InvalidDrawInput(f"Unknown category {category!r}.")
    draw = Draw(
        id=draw_id,
        name=name or draw_id,
        min_amount=float(min_amount),
        max_amount=max_amount,
        reward=reward,
        max_entries=int(max_entries),
        category=category,
        created_at=time.time() if now is None else now,
    )
    document.draws[draw_id] = draw
    log.info("Created draw %s (%s)", draw_id, draw.name)
    return draw


def edit_draw(document: Document, draw_id: str, **fields) -> List[str]:
    """Apply the non-None ``fields``; returns the names of fields that changed."""
    draw = get_draw(document, draw_id)
    unknown = set(fields) - _EDITABLE
    if unknown:
        raise InvalidDrawInput(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
    updates = {k: v for k, v in fields.items() if v is not None}
    if "max_amount" in updates:
        updates["max_amount"] = _normalize_max(updates["max_amount"])
    if "category" in updates and updates["category"] not in DRAW_CATEGORIES:
        raise InvalidDrawInput(f"Unknown category {updates['category']!r}.")
    _validate(
        updates.get("min_amount", draw.min_amount),
        updates.get("max_amount", draw.max_amount),
        updates.get("max_entries", draw.max_entries),
    )
    if "max_entries" in updates and int(updates["max_entries"]) < draw.total_entries:
        raise InvalidDrawInput(
            f"Maximum entries cannot be below the {draw.total_entries} entries already in the draw."
        )
    changed = []
    for key, value in updates.items():
        if getattr(draw, key) != value:
            setattr(draw, key, value)
            changed.append(key)
    if changed:
        log.info("Edited draw %s: %s", draw.id, ", ".join(changed))
    return changed


def reset_draw(document: Document, draw_id: str) -> int:
    """Clear the draw's entries and every user's mirror of them.

    Returns the number of entries removed.
    """
    draw = get_draw(document, draw_id)
    removed = draw.total_entries
    draw.entries = {}
    for account in document.users.values():
        account.entries.pop(draw.id, None)
    log.info("Reset draw %s (%d entries removed)", draw.id, removed)
    return removed


def format_draw_time(fire_at: float) -> str:
    return datetime.fromtimestamp(fire_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def schedule_draw(document: Document, draw_id: str, fire_at: float) -> Draw:
    draw = get_draw(document, draw_id)
    draw.draw_time = float(fire_at)
    draw.draw_time_formatted = format_draw_time(fire_at)
    draw.notification_sent = False
    return draw


def cancel_schedule(document: Document, draw_id: str) -> Draw:
    draw = get_draw(document, draw_id)
    clear_schedule(draw)
    return draw


def clear_schedule(draw: Draw) -> None:
    draw.draw_time = None
    draw.draw_time_formatted = None
    draw.notification_sent = False


def find_cheapest_eligible(document: Document, usd_amount: float) -> Optional[Draw]:
    candidates = [d for d in document.draws.values() if d.active and d.accepts_amount(usd_amount)]
    if not candidates:
        return None
    return min(candidates, key=lambda d: (d.min_amount, d.id))


def active_draws(document: Document) -> List[Draw]:
    return sorted((d for d in document.draws.values() if d.active), key=lambda d: (d.min_amount, d.id))


# --- leaderboards ---

def top_donors(document: Document, limit: int = 10) -> List[Tuple[str, UserAccount]]:
    donors = [(uid, u) for uid, u in document.users.items() if u.total_donated > 0]
    donors.sort(key=lambda item: item[1].total_donated, reverse=True)
    return donors[: max(0, limit)]


def entry_leaderboard(document: Document, draw_id: str, limit: int = 10) -> List[Tuple[str, int]]:
    draw = get_draw(document, draw_id)
    ranked = sorted(draw.entries.items(), key=lambda item: item[1], reverse=True)
    return ranked[: max(0, limit)]


def recent_winners(document: Document, limit: int = 10) -> List[WinnerRecord]:
    """Newest first."""
    return list(reversed(document.draw_history))[: max(0, limit)]


def guild_stats(document: Document) -> dict:
    donors = [u for u in document.users.values() if u.total_donated > 0]
    return {
        "donors": len(donors),
        "total_donated": sum(u.total_donated for u in donors),
        "active_draws": sum(1 for d in document.draws.values() if d.active),
        "draws_held": len(document.draw_history),
    }


def reset_leaderboard(document: Document) -> int:
    """Zero every donor total and clear all entries; returns users touched."""
    for draw in document.draws.values():
        draw.entries = {}
    for account in document.users.values():
        account.total_donated = 0.0
        account.entries = {}
    log.info("Leaderboard reset (%d users)", len(document.users))
    return len(document.users)


# --- guild settings ---

def add_currency(document: Document, symbol: str) -> bool:
    symbol = (symbol or "").strip().upper()
    if not symbol or symbol in document.config.accepted_currencies:
        return False
    document.config.accepted_currencies.append(symbol)
    return True


def remove_currency(document: Document, symbol: str) -> bool:
    symbol = (symbol or "").strip().upper()
    if symbol not in document.config.accepted_currencies:
        return False
    document.config.accepted_currencies.remove(symbol)
    return True


def add_recipient(document: Document, recipient: Recipient) -> bool:
    if any(r.id == recipient.id for r in document.config.allowed_recipients):
        return False
    document.config.allowed_recipients.append(recipient)
    return True


def remove_recipient(document: Document, recipient_id: str) -> Optional[Recipient]:
    for r in document.config.allowed_recipients:
        if r.id == str(recipient_id):
            document.config.allowed_recipients.remove(r)
            return r
    return None


def is_allowed_recipient(document: Document, user_id: str, role_ids=()) -> bool:
    role_ids = {str(r) for r in role_ids}
    for r in document.config.allowed_recipients:
        if isinstance(r, UserRecipient) and r.id == str(user_id):
            return True
        if isinstance(r, RoleRecipient) and r.id in role_ids:
            return True
    return False


def set_admin_role(document: Document, role_id: Optional[str]) -> None:
    document.config.admin_role_id = str(role_id) if role_id else None


def set_channels(
    document: Document,
    notification_channel_id: Optional[str] = None,
    log_channel_id: Optional[str] = None,
) -> None:
    if notification_channel_id:
        document.config.notification_channel_id = str(notification_channel_id)
    if log_channel_id:
        document.config.log_channel_id = str(log_channel_id)


def set_vip_role(document: Document, role_id: Optional[str]) -> None:
    document.config.vip_role_id = str(role_id) if role_id else None


def set_feature(document: Document, name: str, enabled: bool) -> None:
    document.config.feature_toggles[name] = bool(enabled)


def blacklist_user(document: Document, user_id: str) -> bool:
    users = document.config.global_blacklist.users
    if str(user_id) in users:
        return False
    users.append(str(user_id))
    return True


def unblacklist_user(document: Document, user_id: str) -> bool:
    users = document.config.global_blacklist.users
    if str(user_id) not in users:
        return False
    users.remove(str(user_id))
    return True


def bind_tier_role(document: Document, tier_key: str, role_id: Optional[str]) -> bool:
    for tier in document.config.donor_tiers:
        if tier.key == tier_key:
            tier.role_id = str(role_id) if role_id else None
            return True
    return False
