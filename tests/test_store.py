import asyncio
import json

import pytest

from donor_draws import registry
from donor_draws.allocator import allocate
from donor_draws.errors import StoreUnavailable
from donor_draws.models import UserRecipient

GUILD = "4242"


def test_first_load_writes_defaults(store):
    doc = store.load(GUILD)
    assert set(doc.draws) == {"small", "medium", "large"}
    raw = json.loads((store.data_dir / f"{GUILD}.json").read_text())
    assert raw["version"] == 2
    assert raw["draws"]["small"]["min_amount"] == 5


def test_save_and_reload(store):
    doc = store.load(GUILD)
    allocate(doc, "u1", "alice", 12.0, now=1000.0)
    registry.add_recipient(doc, UserRecipient("99", "host"))
    assert store.save(GUILD, doc)
    again = store.load(GUILD)
    assert again.draws["small"].entries == {"u1": 2}
    assert again.users["u1"].total_donated == 12.0
    assert again.config.allowed_recipients == [UserRecipient("99", "host")]


def test_backups_are_pruned(store):
    doc = store.load(GUILD)
    for _ in range(8):
        assert store.save(GUILD, doc)
    backups = store.list_backups(GUILD)
    assert len(backups) == 5
    stamps = [b["timestamp"] for b in backups]
    assert stamps == sorted(stamps, reverse=True)


def test_corrupt_document_restored_from_newest_backup(store):
    doc = store.load(GUILD)
    registry.create_draw(doc, "extra", "Extra", 1, 2, "x", 5)
    store.save(GUILD, doc)
    store.save(GUILD, doc)
    (store.data_dir / f"{GUILD}.json").write_text("{not json", encoding="utf-8")
    restored = store.load(GUILD)
    assert "extra" in restored.draws
    # the restored copy is written back
    json.loads((store.data_dir / f"{GUILD}.json").read_text())


def test_corrupt_document_without_backups_regenerates(store):
    (store.data_dir / f"{GUILD}.json").write_text("[]", encoding="utf-8")
    doc = store.load(GUILD)
    assert set(doc.draws) == {"small", "medium", "large"}


def test_unwritable_store_is_fatal(store, monkeypatch):
    def boom(path, document):
        raise OSError("read-only file system")

    monkeypatch.setattr(store, "_write", boom)
    with pytest.raises(StoreUnavailable):
        store.load("new-guild")


def test_failed_save_returns_false(store, monkeypatch):
    doc = store.load(GUILD)

    def boom(path, document):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write", boom)
    assert store.save(GUILD, doc) is False


def test_create_and_restore_backup(store):
    doc = store.load(GUILD)
    assert store.create_backup(GUILD)
    name = store.list_backups(GUILD)[0]["file"]
    allocate(doc, "u1", None, 12.0, now=1.0)
    store.save(GUILD, doc)
    assert store.load(GUILD).draws["small"].entries == {"u1": 2}
    assert store.restore_backup(GUILD, name)
    assert store.load(GUILD).draws["small"].entries == {}
    assert not store.restore_backup(GUILD, "other_backup_1.json")
    assert not store.create_backup("no-such-guild")


def test_v1_document_is_migrated_on_load(store):
    legacy = {
        "donationDraws": {
            "small": {
                "name": "Small", "minAmount": 5, "maxAmount": 19.99, "reward": "10 USDT",
                "maxEntries": 100, "entries": {"1": 2}, "active": True, "vipOnly": True,
                "drawTime": 1_700_000_000_000,
            },
            "big": {"name": "Big", "minAmount": 50, "maxAmount": 0, "reward": "x", "maxEntries": 5},
        },
        "users": {
            "1": {
                "username": "al", "totalDonated": 12, "entries": {"small": 7},
                "donations": [{"amount": 12, "currency": "USDT", "originalAmount": 12,
                               "timestamp": "2024-01-01T00:00:00Z"}],
            },
        },
        "config": {
            "allowedRecipients": [{"type": "user", "id": "55", "name": "bob"}, "legacyname"],
            "featureToggles": {"automatedDraws": False},
            "acceptedCryptocurrencies": ["usdt", "btc"],
            "adminRoleId": "321",
        },
        "drawHistory": [{"drawId": "small", "drawName": "Small", "drawTime": 1_700_000_000_000,
                         "winnerId": "1", "reward": "10 USDT", "totalEntries": 2, "winnerEntries": 2}],
    }
    (store.data_dir / f"{GUILD}.json").write_text(json.dumps(legacy), encoding="utf-8")
    doc = store.load(GUILD)
    small = doc.draws["small"]
    assert small.min_amount == 5 and small.max_entries == 100 and small.vip_only
    assert small.draw_time == 1_700_000_000
    assert doc.draws["big"].max_amount >= 1_000_000
    user = doc.users["1"]
    assert user.total_donated == 12
    # entry mirror is rebuilt from the draw
    assert user.entries == {"small": 2}
    assert user.donations[0].original_amount == 12
    assert doc.config.allowed_recipients == [UserRecipient("55", "bob")]
    assert not doc.config.feature("automated_draws")
    assert doc.config.feature("draw_notifications")
    assert doc.config.accepted_currencies == ["USDT", "BTC"]
    assert doc.config.admin_role_id == "321"
    assert doc.draw_history[0].winner_id == "1"
    assert doc.version == 2


def test_lock_prevents_lost_updates(store):
    store.load(GUILD)

    async def donate(i):
        async with store.locked(GUILD) as doc:
            await asyncio.sleep(0)
            allocate(doc, "u", "donor", 5.0, now=float(i))
            store.save(GUILD, doc)

    async def main():
        await asyncio.gather(*(donate(i) for i in range(20)))

    asyncio.run(main())
    doc = store.load(GUILD)
    assert doc.draws["small"].entries == {"u": 20}
    assert doc.users["u"].total_donated == 100.0
