import pytest

from donor_draws.models import default_document
from donor_draws.store import DocumentStore

NOW = 1_700_000_000.0


class FakeRole:
    def __init__(self, id):
        self.id = int(id)


class FakeMember:
    """Just enough of discord.Member for role reconciliation."""

    def __init__(self, id, role_ids=(), fail=False):
        self.id = int(id)
        self.roles = [FakeRole(r) for r in role_ids]
        self.fail = fail

    async def add_roles(self, *roles, reason=None):
        if self.fail:
            raise RuntimeError("Missing Permissions")
        self.roles.extend(FakeRole(r.id) for r in roles)

    async def remove_roles(self, *roles, reason=None):
        if self.fail:
            raise RuntimeError("Missing Permissions")
        gone = {int(r.id) for r in roles}
        self.roles = [r for r in self.roles if r.id not in gone]

    @property
    def role_ids(self):
        return {str(r.id) for r in self.roles}


def assert_mirrors(doc):
    """Draw entries and user entries agree, and no draw is over capacity."""
    for draw_id, draw in doc.draws.items():
        assert draw.total_entries <= draw.max_entries
        for user_id, count in draw.entries.items():
            assert doc.users[user_id].entries.get(draw_id) == count
    for user_id, account in doc.users.items():
        for draw_id, count in account.entries.items():
            assert doc.draws[draw_id].entries.get(user_id) == count


@pytest.fixture
def doc():
    return default_document(now=NOW)


@pytest.fixture
def store(tmp_path):
    return DocumentStore(tmp_path / "data")
