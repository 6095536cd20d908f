import random
from types import SimpleNamespace

import pytest

from config import settings
from models.game import GameKind
from services.document_store import InMemoryStore, use_document_store
from agents.roster_manager import roster_manager
from agents.role_dealer import role_dealer
from agents.admin_console import admin_console
from agents.game_master import game_master

ADMIN_NAME = "Miriam"
HOST_NAME = "Hannah"
ROSTER = ["Alice", "Bob", "Carol", "Dave", "Eve"]


class InOrder(random.Random):
    """Fisher–Yates never swaps: the first joined players get Judas, then Angel."""

    def randint(self, a, b):
        return b


def uid_for(first_name: str) -> str:
    return f"uid-{first_name.lower()}"


@pytest.fixture(autouse=True)
def store(monkeypatch):
    mem = InMemoryStore()
    use_document_store(mem)
    monkeypatch.setattr(settings, "seed_admin_name", ADMIN_NAME)
    monkeypatch.setattr(settings, "discussion_seconds", 120)
    monkeypatch.setattr(role_dealer, "rng", InOrder())
    yield mem
    use_document_store(None)


@pytest.fixture
def seat():
    """
    Async factory: joins the host and the roster, has the seed admin pick the
    host and the host choose Judas. The table is left in the rules phase.
    """
    async def _seat(names=ROSTER, host=HOST_NAME):
        host_player = await roster_manager.join(uid_for(host), host)
        players = {}
        for name in names:
            players[name] = await roster_manager.join(uid_for(name), name)
        admin = await admin_console.unlock(ADMIN_NAME)
        await admin_console.choose_host(admin, host_player.id)
        cap = await game_master.host_capability(uid_for(host))
        await game_master.choose_game(cap, GameKind.JUDAS)
        return SimpleNamespace(host=host_player, players=players, cap=cap, admin=admin)

    return _seat
