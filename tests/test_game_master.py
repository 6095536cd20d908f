import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from models.game import (
    DayVote, GameKind, GameStatus, HostCapability, NightVote, Phase, Protect, Resolution,
    Role, RoleCounts, SchemaDriftError,
)
from services.document_store import StaleRevisionError
from agents.game_master import game_master
from agents.night_resolver import night_resolver
from agents.day_vote import day_vote_engine
from agents.admin_console import admin_console
from agents.roster_manager import roster_manager
from conftest import ADMIN_NAME, uid_for

NOON = datetime(2025, 4, 14, 12, 0, tzinfo=timezone.utc)


async def _alive(store):
    return {p.first_name: p.alive for p in await store.get_players()}


async def _quiet_night(table, target="Dave"):
    """Alice (Judas) targets `target`, Bob (Angel) protects them: nobody dies."""
    await game_master.deal_roles(table.cap)
    await night_resolver.submit_night_vote(uid_for("Alice"), target)
    await game_master.open_angel_phase(table.cap)
    await night_resolver.submit_protect(uid_for("Bob"), target)
    await game_master.reveal_night(table.cap)
    await game_master.start_discussion(table.cap, now=NOON)
    return await game_master.open_voting(table.cap)


def test_full_round_cycle(store, seat):
    async def scenario():
        table = await seat()
        state = await game_master.deal_roles(table.cap)
        assert state.status == GameStatus.IN_GAME
        assert state.phase == Phase.NIGHT_JUDAS

        roles = {p.first_name: p.role for p in await store.get_players()}
        assert roles == {
            "Hannah": None,
            "Alice": Role.JUDAS,
            "Bob": Role.ANGEL,
            "Carol": Role.DISCIPLE,
            "Dave": Role.DISCIPLE,
            "Eve": Role.DISCIPLE,
        }

        await night_resolver.submit_night_vote(uid_for("Alice"), "Carol")
        state = await game_master.open_angel_phase(table.cap)
        assert state.phase == Phase.NIGHT_ANGEL

        await night_resolver.submit_protect(uid_for("Bob"), "Dave")
        state = await game_master.reveal_night(table.cap)
        assert state.phase == Phase.REVEAL
        assert state.resolution == Resolution.NIGHT
        assert state.eliminated == "Carol"
        assert (await _alive(store))["Carol"] is False

        state = await game_master.start_discussion(table.cap, now=NOON)
        assert state.phase == Phase.DAY_DISCUSS
        assert state.day_ends_at == NOON + timedelta(seconds=120)
        assert game_master.discussion_remaining(state, NOON + timedelta(seconds=30)) == 90
        assert game_master.discussion_remaining(state, NOON + timedelta(minutes=5)) == 0

        state = await game_master.open_voting(table.cap)
        assert state.phase == Phase.DAY_VOTE
        for voter in ("Bob", "Dave", "Eve"):
            await day_vote_engine.submit_vote(uid_for(voter), "alice", role_guess="judas")
        # Carol is out and cannot vote
        assert await day_vote_engine.submit_vote(uid_for("Carol"), "eve") is None

        state = await game_master.resolve_day_vote(table.cap)
        assert state.phase == Phase.REVEAL
        assert state.resolution == Resolution.DAY
        assert state.eliminated == "Alice"
        assert state.eliminated_player_id == table.players["Alice"].id

        state = await game_master.next_round(table.cap)
        assert state.round == 2
        assert state.phase == Phase.NIGHT_JUDAS
        assert state.eliminated is None
        assert state.resolution is None
        assert await store.get_day_votes(1) == []
        assert await store.get_night_votes(1) == []
        assert await store.get_protects(1) == []

    asyncio.run(scenario())


def test_calls_by_non_host_change_nothing(store, seat):
    async def scenario():
        table = await seat()
        assert await game_master.host_capability(uid_for("Alice")) is None

        impostor = HostCapability(uid=uid_for("Alice"))
        before = await store.get_state()
        assert await game_master.deal_roles(impostor) is None
        assert await game_master.choose_game(impostor, GameKind.TRIVIA) is None
        assert await game_master.configure(impostor, hide_roles_alive=False) is None
        after = await store.get_state()
        assert after.revision == before.revision
        assert after.phase == Phase.RULES
        assert all(p.role is None for p in await store.get_players())

        # A capability from a previous host stops working once the host changes
        await admin_console.choose_host(table.admin, table.players["Eve"].id)
        assert await game_master.deal_roles(table.cap) is None

    asyncio.run(scenario())


def test_out_of_order_transitions_are_ignored(store, seat):
    async def scenario():
        table = await seat()
        assert await game_master.open_voting(table.cap) is None
        assert await game_master.reveal_night(table.cap) is None
        assert await game_master.next_round(table.cap) is None

        await game_master.deal_roles(table.cap)
        # No Judas vote yet, so the target is not locked
        assert await game_master.open_angel_phase(table.cap) is None
        assert (await store.get_state()).phase == Phase.NIGHT_JUDAS

    asyncio.run(scenario())


def test_day_reveal_does_not_lead_to_discussion(store, seat):
    async def scenario():
        table = await seat()
        await _quiet_night(table)
        await game_master.resolve_day_vote(table.cap)
        assert await game_master.start_discussion(table.cap) is None
        before = await store.get_state()
        assert await game_master._transition(before, Phase.DAY_DISCUSS) is None
        assert (await store.get_state()).revision == before.revision

    asyncio.run(scenario())


def test_role_counts_lock_once_game_starts(store, seat):
    async def scenario():
        table = await seat()
        state = await game_master.configure(table.cap, RoleCounts(judas=2, angel=0))
        assert state.role_counts == RoleCounts(judas=2, angel=0)

        await game_master.deal_roles(table.cap)
        state = await game_master.configure(
            table.cap, RoleCounts(judas=3, angel=2), reveal_dead_roles=True
        )
        assert state.role_counts == RoleCounts(judas=2, angel=0)
        assert state.reveal_dead_roles is True

    asyncio.run(scenario())


def test_next_round_clears_only_the_finished_round(store, seat):
    async def scenario():
        table = await seat()
        await _quiet_night(table)
        await day_vote_engine.submit_vote(uid_for("Eve"), "Carol")
        await store.upsert_day_vote(DayVote(round=2, voter_uid="early", target_first_name="Bob"))
        await store.upsert_night_vote(NightVote(round=2, voter_uid="early", target_first_name="Bob"))
        await store.upsert_protect(Protect(round=2, protector_uid="early", target_first_name="Bob"))
        await game_master.resolve_day_vote(table.cap)

        await game_master.next_round(table.cap)
        assert await store.get_day_votes(1) == []
        assert [v.voter_uid for v in await store.get_day_votes(2)] == ["early"]
        assert [v.voter_uid for v in await store.get_night_votes(2)] == ["early"]
        assert [p.protector_uid for p in await store.get_protects(2)] == ["early"]
        assert await store.get_night_votes(1) == []
        assert await store.get_protects(1) == []

    asyncio.run(scenario())


def test_stale_revision_is_rejected(store):
    async def scenario():
        state = await store.get_state()
        await store.update_state(state, {"hideRolesAlive": False})
        with pytest.raises(StaleRevisionError):
            await store.update_state(state, {"revealDeadRoles": True})
        assert (await store.get_state()).revision == 1

    asyncio.run(scenario())


def test_legacy_phase_vocabulary_is_rejected(store):
    async def scenario():
        await store.get_state()
        store.collections["meta"]["state"]["phase"] = "night"
        with pytest.raises(SchemaDriftError):
            await store.get_state()

    asyncio.run(scenario())


def _fail_first_reveal(store, monkeypatch):
    """The first write moving meta/state into reveal loses a revision race."""
    original = store.update_state
    failed = []

    async def update_state(state, updates):
        if updates.get("phase") == Phase.REVEAL.value and not failed:
            failed.append(updates)
            raise StaleRevisionError("meta/state moved underneath the host")
        return await original(state, updates)

    monkeypatch.setattr(store, "update_state", update_state)
    return failed


def test_night_reveal_retried_after_stale_write_still_eliminates(store, seat, monkeypatch):
    async def scenario():
        table = await seat()
        await game_master.deal_roles(table.cap)
        await night_resolver.submit_night_vote(uid_for("Alice"), "Carol")
        await game_master.open_angel_phase(table.cap)
        failed = _fail_first_reveal(store, monkeypatch)

        with pytest.raises(StaleRevisionError):
            await game_master.reveal_night(table.cap)
        assert failed
        assert (await _alive(store))["Carol"] is True
        assert (await store.get_state()).phase == Phase.NIGHT_ANGEL

        state = await game_master.reveal_night(table.cap)
        assert state.eliminated == "Carol"
        assert (await _alive(store))["Carol"] is False

    asyncio.run(scenario())


def test_day_resolution_retried_after_stale_write_still_eliminates(store, seat, monkeypatch):
    async def scenario():
        table = await seat()
        await _quiet_night(table)
        await day_vote_engine.submit_vote(uid_for("Dave"), "Eve")
        failed = _fail_first_reveal(store, monkeypatch)

        with pytest.raises(StaleRevisionError):
            await game_master.resolve_day_vote(table.cap)
        assert failed
        assert (await _alive(store))["Eve"] is True

        state = await game_master.resolve_day_vote(table.cap)
        assert state.eliminated == "Eve"
        assert (await _alive(store))["Eve"] is False

    asyncio.run(scenario())


def test_back_to_rules_ends_the_game_and_allows_a_redeal(store, seat):
    async def scenario():
        table = await seat()
        assert await game_master.back_to_rules(HostCapability(uid=uid_for("Alice"))) is None

        await _quiet_night(table)
        await day_vote_engine.submit_vote(uid_for("Dave"), "Eve")
        await game_master.resolve_day_vote(table.cap)
        await game_master.next_round(table.cap)
        await night_resolver.submit_night_vote(uid_for("Alice"), "Carol")

        state = await game_master.back_to_rules(table.cap)
        assert state.status == GameStatus.RULES
        assert state.phase == Phase.RULES
        assert state.round == 1
        assert state.eliminated is None
        assert state.resolution is None
        assert await store.get_night_votes(2) == []

        state = await game_master.deal_roles(table.cap)
        assert state.phase == Phase.NIGHT_JUDAS
        assert state.round == 1
        assert all((await _alive(store)).values())

    asyncio.run(scenario())


def test_back_to_rules_needs_a_chosen_game(store):
    async def scenario():
        hannah = await roster_manager.join(uid_for("Hannah"), "Hannah")
        admin = await admin_console.unlock(ADMIN_NAME)
        await admin_console.choose_host(admin, hannah.id)
        cap = await game_master.host_capability(uid_for("Hannah"))
        assert await game_master.back_to_rules(cap) is None
        assert (await store.get_state()).status == GameStatus.WAITING_START

    asyncio.run(scenario())


# ── End-to-end scenarios ──────────────────────────────────────────────────────

@pytest.mark.parametrize("protected,eve_alive", [("Dave", False), ("Eve", True)])
def test_judas_changes_mind_and_only_latest_target_counts(store, seat, protected, eve_alive):
    async def scenario():
        table = await seat()
        await game_master.deal_roles(table.cap)
        await night_resolver.submit_night_vote(uid_for("Alice"), "Carol")
        await night_resolver.submit_night_vote(uid_for("Alice"), "Eve")
        assert len(await store.get_night_votes(1)) == 1

        await game_master.open_angel_phase(table.cap)
        await night_resolver.submit_protect(uid_for("Bob"), protected)
        state = await game_master.reveal_night(table.cap)

        alive = await _alive(store)
        assert alive["Eve"] is eve_alive
        assert alive["Carol"] is True
        assert state.eliminated == (None if eve_alive else "Eve")

    asyncio.run(scenario())


def test_clear_day_leader_is_eliminated(store, seat):
    async def scenario():
        table = await seat()
        await _quiet_night(table)
        await day_vote_engine.submit_vote(uid_for("Alice"), "bob")
        await day_vote_engine.submit_vote(uid_for("Dave"), "bob")
        await day_vote_engine.submit_vote(uid_for("Eve"), "carol")

        tally = await day_vote_engine.tally()
        assert [(e.target_first_name, e.count) for e in tally] == [("bob", 2), ("carol", 1)]

        state = await game_master.resolve_day_vote(table.cap)
        assert state.phase == Phase.REVEAL
        assert state.eliminated == "Bob"
        assert (await _alive(store))["Bob"] is False

    asyncio.run(scenario())


def test_tied_day_vote_eliminates_no_one(store, seat):
    async def scenario():
        table = await seat()
        await _quiet_night(table)
        before = await _alive(store)
        await day_vote_engine.submit_vote(uid_for("Alice"), "bob")
        await day_vote_engine.submit_vote(uid_for("Dave"), "carol")

        state = await game_master.resolve_day_vote(table.cap)
        assert state.eliminated is None
        assert await _alive(store) == before

    asyncio.run(scenario())
