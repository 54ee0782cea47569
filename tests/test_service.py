import asyncio

from donor_draws import registry
from donor_draws.allocator import allocate
from donor_draws.correlator import TipCorrelator
from donor_draws.models import RoleRecipient, UserRecipient
from donor_draws.service import DonationService
from donor_draws.tipparse import parse_confirmation

GUILD = "777000"
HOST = "999"


class FakeResolver:
    def __init__(self, unit_price=1.0):
        self.unit_price = unit_price
        self.calls = []

    async def resolve(self, symbol, amount, context_text=None):
        self.calls.append((symbol, amount))
        if self.unit_price is None:
            return None
        return self.unit_price * amount


def _service(store, resolver=None, now=1_000.0):
    doc = store.load(GUILD)
    registry.add_recipient(doc, UserRecipient(HOST, "host"))
    store.save(GUILD, doc)
    return DonationService(store, resolver or FakeResolver(), TipCorrelator(), clock=lambda: now)


def _confirm(service, content, **kwargs):
    conf = parse_confirmation(content)
    kwargs.setdefault("sender_name", "donor")
    return asyncio.run(service.handle_confirmation(GUILD, conf, content, **kwargs))


def test_tagged_tip_enters_target_draw(store):
    service = _service(store)
    service.handle_intent(GUILD, f"$tip <@{HOST}> 25 usdt #medium", 111, "m1", "c1")
    receipts = _confirm(service, f"✅ <@111> sent <@{HOST}> **25 USDT** (≈ $25.00).")
    assert len(receipts) == 1
    receipt = receipts[0]
    assert receipt.target_draw_id == "medium"
    assert receipt.usd_amount == 25.0
    assert receipt.allocation.entered_draws[0].draw_id == "medium"
    assert receipt.tier.key == "bronze_donor"
    assert receipt.saved
    assert len(service.correlator) == 0
    # the embedded estimate is used, no price lookup
    assert service.resolver.calls == []
    doc = store.load(GUILD)
    assert doc.draws["medium"].entries == {"111": 1}
    assert doc.users["111"].username == "donor"


def test_untagged_tip_uses_resolver(store):
    resolver = FakeResolver(unit_price=1.0)
    service = _service(store, resolver)
    receipts = _confirm(service, f"✅ <@111> sent <@{HOST}> **12 USDT**")
    assert resolver.calls == [("USDT", 12.0)]
    assert receipts[0].target_draw_id is None
    assert receipts[0].allocation.entered_draws[0].draw_id == "small"
    assert store.load(GUILD).draws["small"].entries == {"111": 2}


def test_unaccepted_currency_is_ignored(store):
    resolver = FakeResolver()
    service = _service(store, resolver)
    assert _confirm(service, f"✅ <@111> sent <@{HOST}> **12 FOO**") == []
    assert resolver.calls == []


def test_recipient_must_be_allowed(store):
    service = _service(store)
    assert _confirm(service, "✅ <@111> sent <@5> **12 USDT** (≈ $12)") == []
    assert "111" not in store.load(GUILD).users


def test_role_recipient(store):
    service = _service(store)
    doc = store.load(GUILD)
    registry.add_recipient(doc, RoleRecipient("4000", "Hosts"))
    store.save(GUILD, doc)
    receipts = _confirm(
        service,
        "✅ <@111> sent <@5>, <@6> **12 USDT** (≈ $12) each.",
        recipient_role_ids=lambda rid: ["4000"] if rid == "6" else [],
    )
    assert [r.recipient_id for r in receipts] == ["6"]


def test_unpriced_tip_is_dropped(store):
    service = _service(store, FakeResolver(unit_price=None))
    assert _confirm(service, f"✅ <@111> sent <@{HOST}> **12 USDT**") == []


def test_stale_intent_is_not_used(store):
    service = _service(store, now=1_000.0)
    service.correlator.record_intent("111", HOST, "medium", "old", now=0.0, guild_id=GUILD)
    receipts = _confirm(service, f"✅ <@111> sent <@{HOST}> **25 USDT** (≈ $25)")
    assert receipts[0].target_draw_id is None


def _with_entries(store, draw_id, when):
    doc = store.load(GUILD)
    allocate(doc, "111", "donor", 12.0, draw_id, now=0.0)
    registry.schedule_draw(doc, draw_id, when)
    store.save(GUILD, doc)


def test_schedule_tick_notifies_once_then_fires(store):
    service = _service(store)
    _with_entries(store, "small", 5_000.0)

    report = asyncio.run(service.run_schedule(GUILD, now=2_000.0, lead_seconds=3_600))
    assert [d.id for d in report.notify] == ["small"]
    assert report.saved
    assert store.load(GUILD).draws["small"].notification_sent

    report = asyncio.run(service.run_schedule(GUILD, now=2_100.0, lead_seconds=3_600))
    assert not report.changed

    report = asyncio.run(service.run_schedule(GUILD, now=5_000.0, lead_seconds=3_600))
    assert [r.winner_id for r in report.winners] == ["111"]
    doc = store.load(GUILD)
    assert doc.draws["small"].draw_time is None
    assert doc.draw_history[-1].draw_id == "small"


def test_schedule_tick_cancels_empty_draw(store):
    service = _service(store)
    doc = store.load(GUILD)
    registry.schedule_draw(doc, "large", 5_000.0)
    doc.draws["large"].notification_sent = True
    store.save(GUILD, doc)
    report = asyncio.run(service.run_schedule(GUILD, now=6_000.0))
    assert [d.id for d in report.empty] == ["large"]
    assert report.winners == []
    assert store.load(GUILD).draws["large"].draw_time is None


def test_schedule_tick_respects_toggle(store):
    service = _service(store)
    _with_entries(store, "small", 5_000.0)
    doc = store.load(GUILD)
    registry.set_feature(doc, "automated_draws", False)
    store.save(GUILD, doc)
    report = asyncio.run(service.run_schedule(GUILD, now=6_000.0))
    assert report.winners == []
    assert store.load(GUILD).draws["small"].draw_time == 5_000.0


def test_intent_from_another_guild_is_ignored(store):
    service = _service(store)
    service.handle_intent("123456", f"$tip <@{HOST}> 25 usdt #medium", 111, "m1", "c1")
    receipts = _confirm(service, f"✅ <@111> sent <@{HOST}> **12 USDT** (≈ $12.00)")
    assert receipts[0].target_draw_id is None
    assert receipts[0].allocation.entered_draws[0].draw_id == "small"
    assert len(service.correlator) == 1
