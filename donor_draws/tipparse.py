"""Parsers for the user's tip command and the tipping bot's confirmation."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

SATOSHI_PER_BTC = 100_000_000

# $tip @user 5 usdt #small
INTENT_RE = re.compile(
    r"^\s*\$?tip\s+<@!?(\d+)>\s+(.+?)(?:\s+#(\w+))?\s*$",
    re.I,
)

_MENTION = r"<@!?\d+>"
CONFIRMATION_RE = re.compile(
    r"(?:✅|<a?:\w+:\d+>)\s*"
    r"<@!?(?P<sender>\d+)>\s+(?:sent|tipped)\s+"
    rf"(?P<recipients>{_MENTION}(?:(?:\s*,\s*|\s*,?\s+and\s+){_MENTION})*)\s+"
    r"\**(?P<amount>[\d,]*\.?\d+)\s+(?P<symbol>[A-Za-z][A-Za-z0-9]*)\**"
    r"(?:\s*\((?:≈\s*)?\$(?P<usd>[\d,]*\.?\d+)\))?"
    r"(?:\s+each)?",
)
MENTION_ID_RE = re.compile(r"<@!?(\d+)>")
USD_ESTIMATE_RE = re.compile(r"\((?:≈\s*)?\$([\d,]*\.?\d+)\)")


@dataclass
class TipIntent:
    recipient_id: str
    amount_text: str
    target_draw_id: Optional[str]


@dataclass
class TipConfirmation:
    sender_id: str
    recipient_ids: List[str]
    amount: float
    symbol: str
    usd_estimate: Optional[float] = None


def _number(text: str) -> float:
    return float(text.replace(",", ""))


def parse_intent(content: str) -> Optional[TipIntent]:
    m = INTENT_RE.match(content or "")
    if not m:
        return None
    recipient_id, amount_text, tag = m.groups()
    return TipIntent(recipient_id, amount_text.strip(), tag.lower() if tag else None)


def is_tip_error(content: str, embed_titles=()) -> bool:
    if "tip error" in (content or "").lower():
        return True
    return any((t or "").strip().lower() == "tip error" for t in embed_titles)


def parse_confirmation(content: str) -> Optional[TipConfirmation]:
    m = CONFIRMATION_RE.search(content or "")
    if not m:
        return None
    try:
        amount = _number(m.group("amount"))
    except ValueError:
        return None
    symbol = m.group("symbol").upper()
    if symbol in ("SATOSHI", "SATOSHIS", "SATS", "SAT"):
        amount = amount / SATOSHI_PER_BTC
        symbol = "BTC"
    usd = None
    if m.group("usd"):
        try:
            usd = _number(m.group("usd"))
        except ValueError:
            usd = None
    recipients = []
    for rid in MENTION_ID_RE.findall(m.group("recipients")):
        if rid not in recipients:
            recipients.append(rid)
    return TipConfirmation(
        sender_id=m.group("sender"),
        recipient_ids=recipients,
        amount=amount,
        symbol=symbol,
        usd_estimate=usd,
    )


def extract_usd_estimate(content: str) -> Optional[float]:
    m = USD_ESTIMATE_RE.search(content or "")
    if not m:
        return None
    try:
        return _number(m.group(1))
    except ValueError:
        return None
