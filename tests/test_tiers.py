import asyncio

import pytest

from donor_draws.models import default_donor_tiers
from donor_draws.tiers import reconcile_member_roles, tier_for

from .conftest import FakeMember


@pytest.mark.parametrize("total, key", [
    (500, "onyx_donor"),
    (10_000, "onyx_donor"),
    (499.99, "diamond_donor"),
    (251, "diamond_donor"),
    (250, "platinum_donor"),
    (101, "platinum_donor"),
    (100, "gold_donor"),
    (51, "gold_donor"),
    (50, "silver_donor"),
    (26, "silver_donor"),
    (25, "bronze_donor"),
    (5, "bronze_donor"),
])
def test_tier_for(total, key):
    assert tier_for(total, default_donor_tiers()).key == key


@pytest.mark.parametrize("total", [0, 4.99, 25.5])
def test_no_tier(total):
    assert tier_for(total, default_donor_tiers()) is None


def _bound_tiers():
    tiers = default_donor_tiers()
    roles = {"bronze_donor": "10", "silver_donor": "20", "gold_donor": "30"}
    for t in tiers:
        t.role_id = roles.get(t.key)
    return tiers


def test_reconcile_swaps_tier_role():
    tiers = _bound_tiers()
    member = FakeMember(1, role_ids=[10, 99])
    change = asyncio.run(reconcile_member_roles(member, tier_for(30, tiers), tiers))
    assert change.removed == ["10"]
    assert change.added == ["20"]
    assert change.failures == []
    assert member.role_ids == {"20", "99"}


def test_reconcile_is_noop_when_already_correct():
    tiers = _bound_tiers()
    member = FakeMember(1, role_ids=[30])
    change = asyncio.run(reconcile_member_roles(member, tier_for(60, tiers), tiers))
    assert change.added == [] and change.removed == []


def test_reconcile_unbound_tier_only_removes():
    tiers = _bound_tiers()
    member = FakeMember(1, role_ids=[10, 20])
    change = asyncio.run(reconcile_member_roles(member, tier_for(600, tiers), tiers))
    assert sorted(change.removed) == ["10", "20"]
    assert member.role_ids == set()


def test_reconcile_failures_are_collected():
    tiers = _bound_tiers()
    member = FakeMember(1, role_ids=[10], fail=True)
    change = asyncio.run(reconcile_member_roles(member, tier_for(60, tiers), tiers))
    assert sorted(change.failures) == ["10", "30"]
    assert member.role_ids == {"10"}
