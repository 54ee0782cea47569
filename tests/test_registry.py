import pytest

from donor_draws import registry
from donor_draws.allocator import allocate
from donor_draws.errors import DrawNotFound, DuplicateDrawId, InvalidDrawInput
from donor_draws.models import UNBOUNDED_AMOUNT, Document, RoleRecipient, UserRecipient

from .conftest import NOW, assert_mirrors


def test_create_draw_normalises_id_and_unbounded_max(doc):
    draw = registry.create_draw(doc, "Weekly", "Weekly Draw", 10, 0, "5 USDT", 10, category="weekly", now=NOW)
    assert draw.id == "weekly"
    assert draw.max_amount == UNBOUNDED_AMOUNT
    assert draw.accepts_amount(1e5)
    assert doc.draws["weekly"] is draw
    assert draw.created_at == NOW


def test_create_draw_rejects_duplicates(doc):
    with pytest.raises(DuplicateDrawId):
        registry.create_draw(doc, "SMALL", "Again", 1, 2, "x", 5)


@pytest.mark.parametrize("kwargs", [
    dict(draw_id="has space"),
    dict(draw_id="#tagged"),
    dict(draw_id=""),
    dict(min_amount=0),
    dict(min_amount=10, max_amount=5),
    dict(max_entries=0),
    dict(category="bogus"),
])
def test_create_draw_validation(doc, kwargs):
    args = dict(draw_id="fresh", name="Fresh", min_amount=1, max_amount=10, reward="x", max_entries=5)
    category = kwargs.pop("category", "monthly")
    args.update(kwargs)
    with pytest.raises(InvalidDrawInput):
        registry.create_draw(doc, category=category, **args)
    assert "fresh" not in doc.draws


def test_edit_draw_reports_changed_fields(doc):
    changed = registry.edit_draw(doc, "small", name="Tiny", min_amount=None, reward="10 USDT")
    assert changed == ["name"]
    assert doc.draws["small"].name == "Tiny"
    registry.edit_draw(doc, "small", max_amount=0)
    assert doc.draws["small"].max_amount == UNBOUNDED_AMOUNT


def test_edit_draw_errors(doc):
    with pytest.raises(DrawNotFound):
        registry.edit_draw(doc, "nope", name="x")
    with pytest.raises(InvalidDrawInput):
        registry.edit_draw(doc, "small", entries={})
    with pytest.raises(InvalidDrawInput):
        registry.edit_draw(doc, "small", min_amount=50)
    assert doc.draws["small"].min_amount == 5


def test_get_draw_is_case_insensitive(doc):
    assert registry.get_draw(doc, "SMALL").id == "small"


def test_reset_draw_clears_both_sides_and_is_idempotent(doc):
    allocate(doc, "a", None, 12.0, now=NOW)
    allocate(doc, "b", None, 15.0, now=NOW)
    allocate(doc, "a", None, 25.0, now=NOW)
    assert registry.reset_draw(doc, "small") == 5
    assert doc.draws["small"].entries == {}
    assert "small" not in doc.users["a"].entries
    assert doc.users["a"].entries == {"medium": 1}
    snapshot = doc.to_dict()
    assert registry.reset_draw(doc, "small") == 0
    assert doc.to_dict() == snapshot
    assert_mirrors(doc)


def test_schedule_and_cancel(doc):
    draw = registry.schedule_draw(doc, "small", 1_700_000_000)
    assert draw.draw_time == 1_700_000_000
    assert draw.draw_time_formatted == "2023-11-14 22:13 UTC"
    draw.notification_sent = True
    registry.cancel_schedule(doc, "small")
    assert draw.draw_time is None
    assert draw.draw_time_formatted is None
    assert not draw.notification_sent


def test_find_cheapest_eligible(doc):
    assert registry.find_cheapest_eligible(doc, 25).id == "medium"
    assert registry.find_cheapest_eligible(doc, 60).id == "large"
    assert registry.find_cheapest_eligible(doc, 4) is None
    doc.draws["medium"].active = False
    assert registry.find_cheapest_eligible(doc, 25) is None


def test_active_draws_sorted_by_minimum(doc):
    doc.draws["medium"].active = False
    assert [d.id for d in registry.active_draws(doc)] == ["small", "large"]


def test_leaderboards(doc):
    allocate(doc, "a", "A", 12.0, now=NOW)
    allocate(doc, "b", "B", 19.0, now=NOW)
    allocate(doc, "c", "C", 60.0, now=NOW)
    assert [uid for uid, _ in registry.top_donors(doc, 2)] == ["c", "b"]
    assert registry.entry_leaderboard(doc, "small") == [("b", 3), ("a", 2)]
    with pytest.raises(DrawNotFound):
        registry.entry_leaderboard(doc, "nope")


def test_reset_leaderboard(doc):
    allocate(doc, "a", "A", 12.0, now=NOW)
    allocate(doc, "b", "B", 60.0, now=NOW)
    assert registry.reset_leaderboard(doc) == 2
    assert all(u.total_donated == 0 and not u.entries for u in doc.users.values())
    assert all(not d.entries for d in doc.draws.values())
    assert registry.top_donors(doc) == []


def test_currencies(doc):
    assert registry.add_currency(doc, " xmr ")
    assert not registry.add_currency(doc, "XMR")
    assert doc.config.accepts("xmr")
    assert registry.remove_currency(doc, "xmr")
    assert not registry.remove_currency(doc, "xmr")


def test_recipients(doc):
    assert registry.add_recipient(doc, UserRecipient("10", "host"))
    assert not registry.add_recipient(doc, UserRecipient("10", "host"))
    assert registry.add_recipient(doc, RoleRecipient("77", "Staff"))
    assert registry.is_allowed_recipient(doc, "10")
    assert registry.is_allowed_recipient(doc, "11", role_ids=[77])
    assert not registry.is_allowed_recipient(doc, "11", role_ids=["78"])
    assert registry.remove_recipient(doc, "77") == RoleRecipient("77", "Staff")
    assert registry.remove_recipient(doc, "77") is None


def test_settings(doc):
    registry.set_admin_role(doc, 5)
    registry.set_channels(doc, 6, None)
    registry.set_vip_role(doc, 7)
    assert doc.config.admin_role_id == "5"
    assert doc.config.notification_channel_id == "6"
    assert doc.config.log_channel_id is None
    assert doc.config.vip_role_id == "7"
    assert registry.blacklist_user(doc, 9)
    assert not registry.blacklist_user(doc, "9")
    assert registry.unblacklist_user(doc, 9)
    assert not registry.unblacklist_user(doc, 9)


def test_bind_tier_role(doc):
    assert registry.bind_tier_role(doc, "gold_donor", 123)
    assert next(t for t in doc.config.donor_tiers if t.key == "gold_donor").role_id == "123"
    assert not registry.bind_tier_role(doc, "mythic", 1)


def test_edit_draw_cannot_shrink_below_held_entries(doc):
    allocate(doc, "a", None, 19.0, now=NOW)
    allocate(doc, "b", None, 19.0, now=NOW)
    with pytest.raises(InvalidDrawInput):
        registry.edit_draw(doc, "small", max_entries=2)
    assert doc.draws["small"].max_entries == 100
    assert registry.edit_draw(doc, "small", max_entries=6) == ["max_entries"]
    assert doc.draws["small"].available == 0
    assert_mirrors(doc)


def test_over_capacity_document_is_widened_on_load(doc):
    allocate(doc, "a", None, 19.0, now=NOW)
    raw = doc.to_dict()
    raw["draws"]["small"]["max_entries"] = 1
    loaded = Document.from_dict(raw)
    assert loaded.draws["small"].entries == {"a": 3}
    assert loaded.draws["small"].max_entries == 3
    assert_mirrors(loaded)
