import asyncio

from models.game import NightVote, Protect, PlayerState, Phase, Role
from agents.night_resolver import (
    night_resolver, protected_keys, resolve_night, unanimous_target,
)
from agents.game_master import game_master
from conftest import uid_for


def _vote(voter, target, player_id=None, round=1):
    return NightVote(round=round, voter_uid=voter, target_first_name=target, target_player_id=player_id)


def _protect(protector, target, player_id=None, round=1):
    return Protect(round=round, protector_uid=protector, target_first_name=target, target_player_id=player_id)


ROSTER = [
    PlayerState(id="p-bob", first_name="Bob", uid="u-bob"),
    PlayerState(id="p-carol", first_name="Carol", uid="u-carol"),
    PlayerState(id="p-eve", first_name="Eve", uid="u-eve"),
]


def test_no_votes_means_no_target():
    assert unanimous_target([]) is None


def test_unanimity_ignores_case_and_whitespace():
    votes = [_vote("j1", "Eve"), _vote("j2", " eve"), _vote("j3", "EVE")]
    assert unanimous_target(votes) == "eve"


def test_split_vote_has_no_target():
    assert unanimous_target([_vote("j1", "Eve"), _vote("j2", "Bob")]) is None


def test_judas_votes_by_id_and_by_name_agree():
    votes = [_vote("j1", "Bob", "p-bob"), _vote("j2", "bob")]
    assert unanimous_target(votes, ROSTER) == "p-bob"
    assert unanimous_target([_vote("j1", "Bob", "p-bob"), _vote("j2", "carol")], ROSTER) is None


def test_protects_resolve_to_roster_players():
    protects = [_protect("a1", "Eve", "p-eve"), _protect("a2", "bob"), _protect("a3", "Judith")]
    assert protected_keys(protects, ROSTER) == {"p-eve", "p-bob", "judith"}


def test_name_only_protect_shields_a_vote_by_id():
    outcome = resolve_night([_vote("j1", "Eve", "p-eve")], [_protect("a1", "eve")], ROSTER)
    assert outcome.protected is True
    assert outcome.eliminated is None


def test_unprotected_target_is_eliminated():
    outcome = resolve_night([_vote("j1", "eve")], [_protect("a1", "Bob")], ROSTER)
    assert outcome.target == "p-eve"
    assert outcome.protected is False
    assert outcome.eliminated.id == "p-eve"


def test_protected_target_survives():
    outcome = resolve_night([_vote("j1", "eve")], [_protect("a1", "Eve", "p-eve")], ROSTER)
    assert outcome.protected is True
    assert outcome.eliminated is None


def test_target_outside_roster_eliminates_no_one():
    outcome = resolve_night([_vote("j1", "Zacchaeus")], [], ROSTER)
    assert outcome.target == "zacchaeus"
    assert outcome.eliminated is None


def test_resubmitted_night_vote_replaces_earlier_choice(store):
    async def scenario():
        await store.upsert_night_vote(_vote("j1", "Bob"))
        await store.upsert_night_vote(_vote("j1", "Eve"))
        await store.upsert_night_vote(_vote("j1", "Carol", round=2))
        votes = await store.get_night_votes(1)
        assert [v.target_first_name for v in votes] == ["Eve"]

    asyncio.run(scenario())


def test_only_judas_can_vote_at_night(store, seat):
    async def scenario():
        table = await seat()
        await game_master.deal_roles(table.cap)
        # Alice was dealt Judas, Bob Angel
        assert await night_resolver.submit_night_vote(uid_for("Bob"), "Eve") is None
        assert await night_resolver.submit_night_vote(uid_for("Hannah"), "Eve") is None
        vote = await night_resolver.submit_night_vote(uid_for("Alice"), "Eve")
        assert vote is not None and vote.doc_id == f"1_{uid_for('Alice')}"
        # Protects are refused until the angel phase opens
        assert await night_resolver.submit_protect(uid_for("Bob"), "Eve") is None

    asyncio.run(scenario())


def test_night_view_only_for_judas(store, seat):
    async def scenario():
        table = await seat()
        await game_master.deal_roles(table.cap)
        await night_resolver.submit_night_vote(uid_for("Alice"), "Carol")

        assert await night_resolver.night_view(uid_for("Carol")) is None
        view = await night_resolver.night_view(uid_for("Alice"))
        assert view["round"] == 1
        assert view["lockedTarget"] == "Carol"
        assert view["votes"] == [{"voterUid": uid_for("Alice"), "targetFirstName": "Carol"}]

        state = await store.get_state()
        assert state.phase == Phase.NIGHT_JUDAS
        roles = {p.first_name: p.role for p in await store.get_players()}
        assert roles["Alice"] == Role.JUDAS

    asyncio.run(scenario())
