from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import discord

from .models import DonorTier

log = logging.getLogger(__name__)

ROLE_TIMEOUT_SECONDS = 10.0


def tier_for(total_donated: float, tiers: Iterable[DonorTier]) -> Optional[DonorTier]:
    """Highest tier whose inclusive range holds ``total_donated``.

    Tiers are checked by descending ``min_amount`` and the first match wins,
    so overlapping configurations resolve to the richer tier.
    """
    for tier in sorted(tiers, key=lambda t: t.min_amount, reverse=True):
        if tier.contains(total_donated):
            return tier
    return None


@dataclass
class RoleChange:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


async def reconcile_member_roles(
    member,
    tier: Optional[DonorTier],
    tiers: Iterable[DonorTier],
    *,
    timeout: float = ROLE_TIMEOUT_SECONDS,
) -> RoleChange:
    """Make ``member`` hold exactly the bound role of ``tier`` among tier roles.

    Best effort: failures are logged and collected, never raised.
    """
    change = RoleChange()
    held = {str(r.id) for r in getattr(member, "roles", [])}
    target = tier.role_id if tier else None

    for other in tiers:
        if not other.role_id or other.role_id == target or other.role_id not in held:
            continue
        try:
            await asyncio.wait_for(
                member.remove_roles(discord.Object(id=int(other.role_id)), reason="Donor tier changed"),
                timeout,
            )
            change.removed.append(other.role_id)
        except Exception as e:
            log.warning("Could not remove role %s from %s: %s", other.role_id, getattr(member, "id", "?"), e)
            change.failures.append(other.role_id)

    if target and target not in held:
        try:
            await asyncio.wait_for(
                member.add_roles(discord.Object(id=int(target)), reason=f"Reached {tier.name}"),
                timeout,
            )
            change.added.append(target)
        except Exception as e:
            log.warning("Could not add role %s to %s: %s", target, getattr(member, "id", "?"), e)
            change.failures.append(target)
    return change
