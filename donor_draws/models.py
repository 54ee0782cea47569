"""
Typed in-memory shape of a guild document.

Documents are persisted as JSON (see ``store.py``). Everything read from
disk goes through ``migrate()`` first, which upgrades older layouts to the
current ``SCHEMA_VERSION``, and then through ``Document.from_dict()``, which
tolerates missing or malformed fields the same way the rest of the bot
tolerates a half-written state file: bad values are dropped, not raised.

Ids (users, draws, roles, channels) are always strings, since they are
JSON object keys.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

log = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Stored instead of infinity so documents stay plain JSON.
UNBOUNDED_AMOUNT = 1_000_000.0

HISTORY_LIMIT = 50
DONATION_LOG_LIMIT = 100

DEFAULT_ACCEPTED_CURRENCIES = [
    "AEGS", "LTC", "SOL", "USDT", "BTC", "XRP", "DOGE", "SHIB", "SHIC",
    "BNB", "USDC", "ETH", "XLA", "ADA", "AVAX", "TON", "TRON", "PEP", "BONC",
]

DEFAULT_FEATURE_TOGGLES = {
    "donation_streaks": True,
    "achievement_system": True,
    "draw_notifications": True,
    "automated_draws": True,
    "blacklist_system": True,
}


def _as_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_id(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _as_timestamp(value) -> Optional[float]:
    """Accept epoch seconds, epoch milliseconds or an ISO string."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        # anything this large is a JS-style millisecond stamp
        return ts / 1000.0 if ts > 1e11 else ts
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return _as_timestamp(_as_float(value, 0.0) or None)
    return None


def _counts(raw) -> Dict[str, int]:
    out: Dict[str, int] = {}
    if not isinstance(raw, dict):
        return out
    for key, value in raw.items():
        try:
            count = int(value)
        except (TypeError, ValueError):
            continue
        if count > 0:
            out[str(key)] = count
    return out


def _id_list(raw) -> List[str]:
    out: List[str] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict):
            item = item.get("id")
        ident = _as_id(item)
        if ident and ident not in out:
            out.append(ident)
    return out


@dataclass
class Blacklist:
    users: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    def blocks(self, user_id: str, role_ids=()) -> bool:
        if user_id in self.users:
            return True
        return any(str(r) in self.roles for r in role_ids)

    def to_dict(self) -> dict:
        return {"users": list(self.users), "roles": list(self.roles)}

    @classmethod
    def from_dict(cls, raw) -> "Blacklist":
        if not isinstance(raw, dict):
            return cls()
        return cls(users=_id_list(raw.get("users")), roles=_id_list(raw.get("roles")))


@dataclass
class Draw:
    id: str
    name: str
    min_amount: float
    max_amount: float
    reward: str
    max_entries: int
    entries: Dict[str, int] = field(default_factory=dict)
    active: bool = True
    manual_entries_only: bool = False
    vip_only: bool = False
    draw_time: Optional[float] = None
    draw_time_formatted: Optional[str] = None
    notification_sent: bool = False
    category: str = "monthly"
    created_at: float = field(default_factory=time.time)
    blacklist: Blacklist = field(default_factory=Blacklist)

    @property
    def total_entries(self) -> int:
        return sum(self.entries.values())

    @property
    def available(self) -> int:
        return max(0, self.max_entries - self.total_entries)

    def accepts_amount(self, usd_amount: float) -> bool:
        return self.min_amount <= usd_amount <= self.max_amount

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "reward": self.reward,
            "max_entries": self.max_entries,
            "entries": dict(self.entries),
            "active": self.active,
            "manual_entries_only": self.manual_entries_only,
            "vip_only": self.vip_only,
            "draw_time": self.draw_time,
            "draw_time_formatted": self.draw_time_formatted,
            "notification_sent": self.notification_sent,
            "category": self.category,
            "created_at": self.created_at,
            "blacklist": self.blacklist.to_dict(),
        }

    @classmethod
    def from_dict(cls, draw_id: str, raw: dict) -> "Draw":
        max_amount = _as_float(raw.get("max_amount"), UNBOUNDED_AMOUNT)
        if max_amount <= 0:
            max_amount = UNBOUNDED_AMOUNT
        entries = _counts(raw.get("entries"))
        max_entries = int(_as_float(raw.get("max_entries"), 0))
        if sum(entries.values()) > max_entries:
            # entries are never dropped; widen capacity to what is already held
            log.warning(
                "Draw %s holds %d entries over its capacity of %d; raising capacity",
                draw_id, sum(entries.values()), max_entries,
            )
            max_entries = sum(entries.values())
        return cls(
            id=str(draw_id),
            name=str(raw.get("name") or draw_id),
            min_amount=_as_float(raw.get("min_amount"), 1.0),
            max_amount=max_amount,
            reward=str(raw.get("reward") or ""),
            max_entries=max_entries,
            entries=entries,
            active=bool(raw.get("active", True)),
            manual_entries_only=bool(raw.get("manual_entries_only", False)),
            vip_only=bool(raw.get("vip_only", False)),
            draw_time=_as_timestamp(raw.get("draw_time")),
            draw_time_formatted=raw.get("draw_time_formatted"),
            notification_sent=bool(raw.get("notification_sent", False)),
            category=str(raw.get("category") or "monthly"),
            created_at=_as_timestamp(raw.get("created_at")) or time.time(),
            blacklist=Blacklist.from_dict(raw.get("blacklist")),
        )


@dataclass
class Donation:
    amount: float
    currency: str
    original_amount: float
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "original_amount": self.original_amount,
            "timestamp": self.timestamp,
        }


@dataclass
class UserAccount:
    username: str = "Unknown"
    total_donated: float = 0.0
    entries: Dict[str, int] = field(default_factory=dict)
    wins: int = 0
    achievements: List[str] = field(default_factory=list)
    current_streak: int = 0
    longest_streak: int = 0
    last_donation_at: Optional[float] = None
    donations: List[Donation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "total_donated": self.total_donated,
            "entries": dict(self.entries),
            "wins": self.wins,
            "achievements": list(self.achievements),
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_donation_at": self.last_donation_at,
            "donations": [d.to_dict() for d in self.donations],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "UserAccount":
        donations: List[Donation] = []
        for rec in raw.get("donations") or []:
            if not isinstance(rec, dict):
                continue
            try:
                donations.append(Donation(
                    amount=float(rec["amount"]),
                    currency=str(rec.get("currency") or ""),
                    original_amount=_as_float(rec.get("original_amount")),
                    timestamp=_as_timestamp(rec.get("timestamp")) or 0.0,
                ))
            except (KeyError, TypeError, ValueError):
                continue
        achievements = raw.get("achievements")
        return cls(
            username=str(raw.get("username") or "Unknown"),
            total_donated=max(0.0, _as_float(raw.get("total_donated"))),
            entries=_counts(raw.get("entries")),
            wins=int(_as_float(raw.get("wins"))),
            achievements=[str(a) for a in achievements] if isinstance(achievements, list) else [],
            current_streak=int(_as_float(raw.get("current_streak"))),
            longest_streak=int(_as_float(raw.get("longest_streak"))),
            last_donation_at=_as_timestamp(raw.get("last_donation_at")),
            donations=donations[-DONATION_LOG_LIMIT:],
        )


@dataclass(frozen=True)
class UserRecipient:
    id: str
    name: str = ""


@dataclass(frozen=True)
class RoleRecipient:
    id: str
    name: str = ""


Recipient = Union[UserRecipient, RoleRecipient]


def recipient_to_dict(recipient: Recipient) -> dict:
    kind = "role" if isinstance(recipient, RoleRecipient) else "user"
    return {"kind": kind, "id": recipient.id, "name": recipient.name}


def recipient_from_dict(raw) -> Optional[Recipient]:
    if not isinstance(raw, dict):
        return None
    ident = _as_id(raw.get("id"))
    if not ident:
        return None
    kind = raw.get("kind") or raw.get("type")
    name = str(raw.get("name") or "")
    if kind == "role":
        return RoleRecipient(ident, name)
    if kind == "user":
        return UserRecipient(ident, name)
    return None


@dataclass
class DonorTier:
    key: str
    name: str
    min_amount: float
    max_amount: Optional[float] = None
    role_id: Optional[str] = None

    def contains(self, total: float) -> bool:
        if total < self.min_amount:
            return False
        return self.max_amount is None or total <= self.max_amount

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "role_id": self.role_id,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "DonorTier":
        max_amount = raw.get("max_amount")
        return cls(
            key=str(raw["key"]),
            name=str(raw.get("name") or raw["key"]),
            min_amount=_as_float(raw.get("min_amount")),
            max_amount=None if max_amount is None else _as_float(max_amount),
            role_id=_as_id(raw.get("role_id")),
        )


def default_donor_tiers() -> List[DonorTier]:
    return [
        DonorTier("onyx_donor", "Onyx Donor", 500),
        DonorTier("diamond_donor", "Diamond Donor", 251, 500),
        DonorTier("platinum_donor", "Platinum Donor", 101, 250),
        DonorTier("gold_donor", "Gold Donor", 51, 100),
        DonorTier("silver_donor", "Silver Donor", 26, 50),
        DonorTier("bronze_donor", "Bronze Donor", 5, 25),
    ]


@dataclass
class GuildConfig:
    accepted_currencies: List[str] = field(default_factory=lambda: list(DEFAULT_ACCEPTED_CURRENCIES))
    allowed_recipients: List[Recipient] = field(default_factory=list)
    admin_role_id: Optional[str] = None
    vip_role_id: Optional[str] = None
    notification_channel_id: Optional[str] = None
    log_channel_id: Optional[str] = None
    feature_toggles: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_FEATURE_TOGGLES))
    global_blacklist: Blacklist = field(default_factory=Blacklist)
    donor_tiers: List[DonorTier] = field(default_factory=default_donor_tiers)

    def feature(self, name: str) -> bool:
        return bool(self.feature_toggles.get(name, DEFAULT_FEATURE_TOGGLES.get(name, False)))

    def accepts(self, symbol: str) -> bool:
        return symbol.upper() in self.accepted_currencies

    def to_dict(self) -> dict:
        return {
            "accepted_currencies": list(self.accepted_currencies),
            "allowed_recipients": [recipient_to_dict(r) for r in self.allowed_recipients],
            "admin_role_id": self.admin_role_id,
            "vip_role_id": self.vip_role_id,
            "notification_channel_id": self.notification_channel_id,
            "log_channel_id": self.log_channel_id,
            "feature_toggles": dict(self.feature_toggles),
            "global_blacklist": self.global_blacklist.to_dict(),
            "donor_tiers": [t.to_dict() for t in self.donor_tiers],
        }

    @classmethod
    def from_dict(cls, raw) -> "GuildConfig":
        if not isinstance(raw, dict):
            return cls()
        cfg = cls()
        currencies = raw.get("accepted_currencies")
        if isinstance(currencies, list):
            cfg.accepted_currencies = [str(c).upper() for c in currencies if c]
        recipients = [recipient_from_dict(r) for r in raw.get("allowed_recipients") or []]
        cfg.allowed_recipients = [r for r in recipients if r is not None]
        cfg.admin_role_id = _as_id(raw.get("admin_role_id"))
        cfg.vip_role_id = _as_id(raw.get("vip_role_id"))
        cfg.notification_channel_id = _as_id(raw.get("notification_channel_id"))
        cfg.log_channel_id = _as_id(raw.get("log_channel_id"))
        toggles = raw.get("feature_toggles")
        if isinstance(toggles, dict):
            cfg.feature_toggles.update({str(k): bool(v) for k, v in toggles.items()})
        cfg.global_blacklist = Blacklist.from_dict(raw.get("global_blacklist"))
        tiers = raw.get("donor_tiers")
        if isinstance(tiers, list) and tiers:
            parsed = []
            for rec in tiers:
                try:
                    parsed.append(DonorTier.from_dict(rec))
                except (KeyError, TypeError):
                    continue
            if parsed:
                cfg.donor_tiers = parsed
        return cfg


@dataclass(frozen=True)
class WinnerRecord:
    draw_id: str
    draw_name: str
    timestamp: float
    winner_id: str
    reward: str
    total_entries: int
    winner_entries: int

    @property
    def odds(self) -> float:
        return self.winner_entries / self.total_entries if self.total_entries else 0.0

    def to_dict(self) -> dict:
        return {
            "draw_id": self.draw_id,
            "draw_name": self.draw_name,
            "timestamp": self.timestamp,
            "winner_id": self.winner_id,
            "reward": self.reward,
            "total_entries": self.total_entries,
            "winner_entries": self.winner_entries,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "WinnerRecord":
        return cls(
            draw_id=str(raw["draw_id"]),
            draw_name=str(raw.get("draw_name") or raw["draw_id"]),
            timestamp=_as_timestamp(raw.get("timestamp")) or 0.0,
            winner_id=str(raw["winner_id"]),
            reward=str(raw.get("reward") or ""),
            total_entries=int(_as_float(raw.get("total_entries"))),
            winner_entries=int(_as_float(raw.get("winner_entries"))),
        )


@dataclass
class PendingTip:
    sender_id: str
    recipient_id: str
    target_draw_id: Optional[str]
    timestamp: float
    channel_id: Optional[str] = None
    message_id: Optional[str] = None
    guild_id: Optional[str] = None


@dataclass
class Document:
    draws: Dict[str, Draw] = field(default_factory=dict)
    users: Dict[str, UserAccount] = field(default_factory=dict)
    config: GuildConfig = field(default_factory=GuildConfig)
    draw_history: List[WinnerRecord] = field(default_factory=list)
    version: int = SCHEMA_VERSION

    def user(self, user_id: str, username: Optional[str] = None) -> UserAccount:
        """Return the account for ``user_id``, creating it on first use."""
        account = self.users.get(user_id)
        if account is None:
            account = UserAccount(username=username or "Unknown")
            self.users[user_id] = account
        elif username:
            account.username = username
        return account

    def record_winner(self, record: WinnerRecord) -> None:
        self.draw_history.append(record)
        if len(self.draw_history) > HISTORY_LIMIT:
            del self.draw_history[: len(self.draw_history) - HISTORY_LIMIT]

    def to_dict(self) -> dict:
        return {
            "version": SCHEMA_VERSION,
            "draws": {k: d.to_dict() for k, d in self.draws.items()},
            "users": {k: u.to_dict() for k, u in self.users.items()},
            "config": self.config.to_dict(),
            "draw_history": [r.to_dict() for r in self.draw_history],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "Document":
        raw = migrate(raw)
        doc = cls()
        for draw_id, rec in (raw.get("draws") or {}).items():
            if isinstance(rec, dict):
                doc.draws[str(draw_id)] = Draw.from_dict(draw_id, rec)
        for user_id, rec in (raw.get("users") or {}).items():
            if isinstance(rec, dict):
                doc.users[str(user_id)] = UserAccount.from_dict(rec)
        doc.config = GuildConfig.from_dict(raw.get("config"))
        for rec in raw.get("draw_history") or []:
            try:
                doc.draw_history.append(WinnerRecord.from_dict(rec))
            except (KeyError, TypeError):
                continue
        doc.draw_history = doc.draw_history[-HISTORY_LIMIT:]
        _rebuild_mirrors(doc)
        return doc


def _rebuild_mirrors(doc: Document) -> None:
    """Make every user's entry map mirror the draws, which are authoritative."""
    mirrors: Dict[str, Dict[str, int]] = {}
    for draw_id, draw in doc.draws.items():
        for user_id, count in draw.entries.items():
            mirrors.setdefault(user_id, {})[draw_id] = count
    for user_id, entries in mirrors.items():
        doc.user(user_id)
    for user_id, account in doc.users.items():
        fixed = mirrors.get(user_id, {})
        if account.entries != fixed:
            if account.entries:
                log.debug("Repaired entry mirror for user %s", user_id)
            account.entries = fixed


def default_document(now: Optional[float] = None) -> Document:
    now = time.time() if now is None else now
    doc = Document()
    doc.draws = {
        "small": Draw("small", "Small Appreciation Draw", 5, 19.99, "10 USDT", 100, created_at=now),
        "medium": Draw("medium", "Medium Appreciation Draw", 20, 49.99, "50 USDT", 50, created_at=now),
        "large": Draw("large", "Large Appreciation Draw", 50, UNBOUNDED_AMOUNT, "200 USDT", 20, created_at=now),
    }
    return doc


# --- schema migration ---

_V1_DRAW_KEYS = {
    "name": "name",
    "minAmount": "min_amount",
    "maxAmount": "max_amount",
    "reward": "reward",
    "maxEntries": "max_entries",
    "entries": "entries",
    "active": "active",
    "manualEntriesOnly": "manual_entries_only",
    "vipOnly": "vip_only",
    "drawTime": "draw_time",
    "drawTimeFormatted": "draw_time_formatted",
    "notificationSent": "notification_sent",
    "category": "category",
    "createdAt": "created_at",
    "blacklist": "blacklist",
}

_V1_USER_KEYS = {
    "username": "username",
    "totalDonated": "total_donated",
    "entries": "entries",
    "wins": "wins",
    "achievements": "achievements",
    "currentStreak": "current_streak",
    "longestStreak": "longest_streak",
    "lastDonationDate": "last_donation_at",
}

_V1_TOGGLES = {
    "donationStreaks": "donation_streaks",
    "achievementSystem": "achievement_system",
    "drawNotifications": "draw_notifications",
    "automatedDraws": "automated_draws",
    "blacklistSystem": "blacklist_system",
}


def _rename(raw: dict, mapping: Dict[str, str]) -> dict:
    return {new: raw[old] for old, new in mapping.items() if old in raw}


def _migrate_v1(raw: dict) -> dict:
    draws = {}
    for draw_id, rec in (raw.get("donationDraws") or {}).items():
        if isinstance(rec, dict):
            draws[draw_id] = _rename(rec, _V1_DRAW_KEYS)

    users = {}
    for user_id, rec in (raw.get("users") or {}).items():
        if not isinstance(rec, dict):
            continue
        user = _rename(rec, _V1_USER_KEYS)
        user["donations"] = [
            {
                "amount": d.get("amount"),
                "currency": d.get("currency"),
                "original_amount": d.get("originalAmount"),
                "timestamp": d.get("timestamp"),
            }
            for d in rec.get("donations") or []
            if isinstance(d, dict)
        ]
        users[user_id] = user

    old_cfg = raw.get("config") or {}
    recipients = []
    for rec in old_cfg.get("allowedRecipients") or []:
        if isinstance(rec, dict) and rec.get("type") in ("user", "role"):
            recipients.append({"kind": rec["type"], "id": rec.get("id"), "name": rec.get("name")})
        else:
            # bare usernames cannot be turned into ids
            log.warning("Dropping legacy recipient without an id: %r", rec)
    toggles = {}
    for old, new in _V1_TOGGLES.items():
        if old in (old_cfg.get("featureToggles") or {}):
            toggles[new] = old_cfg["featureToggles"][old]
    config = {
        "allowed_recipients": recipients,
        "admin_role_id": old_cfg.get("adminRoleId"),
        "vip_role_id": old_cfg.get("vipRoleId"),
        "notification_channel_id": old_cfg.get("notificationChannelId"),
        "log_channel_id": old_cfg.get("logChannelId"),
        "feature_toggles": toggles,
        "global_blacklist": old_cfg.get("globalBlacklist"),
    }
    if isinstance(old_cfg.get("acceptedCryptocurrencies"), list):
        config["accepted_currencies"] = old_cfg["acceptedCryptocurrencies"]

    history = []
    for rec in raw.get("drawHistory") or []:
        if isinstance(rec, dict) and rec.get("winnerId"):
            history.append({
                "draw_id": rec.get("drawId"),
                "draw_name": rec.get("drawName"),
                "timestamp": rec.get("drawTime"),
                "winner_id": rec.get("winnerId"),
                "reward": rec.get("reward"),
                "total_entries": rec.get("totalEntries"),
                "winner_entries": rec.get("winnerEntries"),
            })

    return {"version": 2, "draws": draws, "users": users, "config": config, "draw_history": history}


_MIGRATIONS = {1: _migrate_v1}


def schema_version(raw: dict) -> int:
    version = raw.get("version")
    if isinstance(version, int):
        return version
    return 1 if "donationDraws" in raw else SCHEMA_VERSION


def migrate(raw: dict) -> dict:
    """Upgrade a raw document dict to ``SCHEMA_VERSION``; returns a new dict."""
    if not isinstance(raw, dict):
        raise ValueError("document root must be an object")
    version = schema_version(raw)
    if version > SCHEMA_VERSION:
        raise ValueError(f"document version {version} is newer than supported {SCHEMA_VERSION}")
    while version < SCHEMA_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ValueError(f"no migration from document version {version}")
        log.info("Migrating document from version %d", version)
        raw = step(raw)
        version = schema_version(raw)
    return raw
