"""
Night Resolution Engine — Judas kill target and Angel protection.

Night runs in two steps:
  1. night_judas: every Judas upserts a NightVote. The target is locked only
     when all current votes name the same player (unanimity). Until then the
     host cannot move on to night_angel.
  2. night_angel: every Angel upserts a Protect. On reveal the locked target
     is eliminated unless any Angel protected them.

Votes and protects are resolved against the living roster before they are
compared, so a client sending a player id and one sending only the first
name agree on the same target. Names that match no one are compared
lower-cased.
"""
import logging
from typing import Iterable, List, Optional, Sequence, Set

from models.game import (
    Phase, Role, PlayerState, NightVote, Protect, NightOutcome, GameState,
)
from services.document_store import get_document_store
from agents.roster_manager import alive_players, player_for_key, resolve_target_key

logger = logging.getLogger(__name__)


def unanimous_target(
    votes: Iterable[NightVote], players: Sequence[PlayerState] = ()
) -> Optional[str]:
    """The single target key every Judas vote names, or None (split vote or no votes)."""
    keys = {
        resolve_target_key(list(players), v.target_first_name, v.target_player_id)
        for v in votes
        if v.role == Role.JUDAS and v.target_key
    }
    if len(keys) == 1:
        return next(iter(keys))
    return None


def protected_keys(protects: Iterable[Protect], players: Sequence[PlayerState] = ()) -> Set[str]:
    return {
        resolve_target_key(list(players), p.target_first_name, p.target_player_id)
        for p in protects
        if p.target_key
    }


def resolve_night(
    votes: List[NightVote],
    protects: List[Protect],
    players: List[PlayerState],
) -> NightOutcome:
    """
    Pure resolution of one night against the living roster `players`.

    eliminated is the roster player behind the locked target, unless that
    target is protected or not unanimous (then no one).
    """
    target = unanimous_target(votes, players)
    if target is None:
        return NightOutcome()

    if target in protected_keys(protects, players):
        return NightOutcome(target=target, protected=True)
    return NightOutcome(target=target, eliminated=player_for_key(players, target))


class NightResolver:

    async def _actor(self, uid: str, state: GameState, role: Role) -> Optional[PlayerState]:
        """The caller's alive player document if it holds `role`."""
        players = alive_players(await get_document_store().get_players(), state)
        for p in players:
            if p.uid == uid and p.role == role:
                return p
        return None

    async def submit_night_vote(
        self, uid: str, target_first_name: str, target_player_id: Optional[str] = None
    ) -> Optional[NightVote]:
        """Judas picks (or changes) tonight's target. No-op outside night_judas or for non-Judas."""
        fs = get_document_store()
        state = await fs.get_state()
        if state.phase != Phase.NIGHT_JUDAS:
            logger.info("Night vote from %s ignored in phase %s", uid, state.phase.value)
            return None
        if await self._actor(uid, state, Role.JUDAS) is None:
            logger.info("Night vote from %s ignored: not an alive Judas", uid)
            return None

        vote = NightVote(
            round=state.round,
            voter_uid=uid,
            target_first_name=target_first_name.strip(),
            target_player_id=target_player_id,
        )
        await fs.upsert_night_vote(vote)
        logger.info(f"[round {state.round}] Judas vote recorded ({vote.doc_id})")
        return vote

    async def submit_protect(
        self, uid: str, target_first_name: str, target_player_id: Optional[str] = None
    ) -> Optional[Protect]:
        """Angel shields one player. No-op outside night_angel or for non-Angels."""
        fs = get_document_store()
        state = await fs.get_state()
        if state.phase != Phase.NIGHT_ANGEL:
            logger.info("Protect from %s ignored in phase %s", uid, state.phase.value)
            return None
        if await self._actor(uid, state, Role.ANGEL) is None:
            logger.info("Protect from %s ignored: not an alive Angel", uid)
            return None

        protect = Protect(
            round=state.round,
            protector_uid=uid,
            target_first_name=target_first_name.strip(),
            target_player_id=target_player_id,
        )
        await fs.upsert_protect(protect)
        logger.info(f"[round {state.round}] Angel protect recorded ({protect.doc_id})")
        return protect

    async def locked_target(self, round: int) -> Optional[str]:
        fs = get_document_store()
        state = await fs.get_state()
        players = alive_players(await fs.get_players(), state)
        return unanimous_target(await fs.get_night_votes(round), players)

    async def night_view(self, uid: str) -> Optional[dict]:
        """What a Judas phone shows: fellow votes and lock status. None for everyone else."""
        fs = get_document_store()
        state = await fs.get_state()
        if await self._actor(uid, state, Role.JUDAS) is None:
            return None
        votes = await fs.get_night_votes(state.round)
        players = alive_players(await fs.get_players(), state)
        target = unanimous_target(votes, players)
        locked = None
        if target:
            victim = player_for_key(players, target)
            locked = victim.first_name if victim else target
        return {
            "round": state.round,
            "votes": [
                {"voterUid": v.voter_uid, "targetFirstName": v.target_first_name}
                for v in votes
            ],
            "lockedTarget": locked,
        }

    async def evaluate(self, round: int) -> NightOutcome:
        fs = get_document_store()
        votes = await fs.get_night_votes(round)
        protects = await fs.get_protects(round)
        state = await fs.get_state()
        players = alive_players(await fs.get_players(), state)
        outcome = resolve_night(votes, protects, players)
        if outcome.target is None:
            logger.info(f"[round {round}] No unanimous Judas target, no one eliminated")
        elif outcome.protected:
            logger.info(f"[round {round}] Kill on {outcome.target} blocked by Angel")
        elif outcome.eliminated is None:
            logger.warning(f"[round {round}] Judas target '{outcome.target}' is not a living player")
        return outcome


# Module-level singleton
night_resolver = NightResolver()
