"""
Day Vote Engine — public accusation votes and their resolution.

Each alive player has at most one live vote per round (document id
`{round}_{voterUid}`), so a resubmission replaces the earlier choice and the
tally always reflects everyone's latest vote.
"""
import logging
from typing import Dict, List, Optional

from models.game import Phase, PlayerState, DayVote, TallyEntry, DayOutcome
from services.document_store import get_document_store
from agents.roster_manager import alive_players, player_for_key, resolve_target_key

logger = logging.getLogger(__name__)


def tally_votes(votes: List[DayVote], players: List[PlayerState]) -> List[TallyEntry]:
    """
    Group by target, count, sort by count descending.

    A vote naming a roster player counts for that player whether the client
    sent the id or only the first name; unknown names group lower-cased.

    Ties keep grouping order; no secondary key is applied. `display` uses the
    roster's casing when the target resolves to a known player.
    """
    latest: Dict[str, DayVote] = {}
    for v in votes:
        previous = latest.get(v.voter_uid)
        if previous is None or v.at >= previous.at:
            latest[v.voter_uid] = v

    grouped: Dict[str, TallyEntry] = {}
    for v in latest.values():
        if not v.target_key:
            continue
        key = resolve_target_key(players, v.target_first_name, v.target_player_id)
        entry = grouped.get(key)
        if entry is None:
            target = player_for_key(players, key)
            grouped[key] = TallyEntry(
                key=key,
                target_first_name=(target.name_key if target else v.target_first_name.strip().lower()),
                display=target.first_name if target else v.target_first_name.strip(),
                count=1,
                player_id=target.id if target else v.target_player_id,
            )
        else:
            entry.count += 1
    return sorted(grouped.values(), key=lambda e: e.count, reverse=True)


def resolve_day(tally: List[TallyEntry], players: List[PlayerState]) -> DayOutcome:
    """
    No one is eliminated when the tally is empty, when first place is tied,
    or when the leader is not a living roster member.
    """
    if not tally:
        return DayOutcome()
    if len(tally) > 1 and tally[0].count == tally[1].count:
        return DayOutcome(tally=tally, tied=True)

    leader = tally[0]
    victim = player_for_key(players, leader.player_id or leader.key)
    if victim is None or not victim.alive:
        return DayOutcome(tally=tally)
    return DayOutcome(tally=tally, eliminated=victim)


class DayVoteEngine:

    async def submit_vote(
        self,
        uid: str,
        target_first_name: str,
        role_guess: Optional[str] = None,
        target_player_id: Optional[str] = None,
    ) -> Optional[DayVote]:
        """Cast or overwrite the caller's vote. No-op outside day_vote or for out/unknown players."""
        fs = get_document_store()
        state = await fs.get_state()
        if state.phase != Phase.DAY_VOTE:
            logger.info("Day vote from %s ignored in phase %s", uid, state.phase.value)
            return None
        voters = alive_players(await fs.get_players(), state)
        if not any(p.uid == uid for p in voters):
            logger.info("Day vote from %s ignored: not an alive player", uid)
            return None

        vote = DayVote(
            round=state.round,
            voter_uid=uid,
            target_first_name=target_first_name.strip(),
            target_player_id=target_player_id,
            role_guess=(role_guess or None),
        )
        await fs.upsert_day_vote(vote)
        logger.info(f"[round {state.round}] Day vote recorded ({vote.doc_id})")
        return vote

    async def tally(self, round: Optional[int] = None) -> List[TallyEntry]:
        fs = get_document_store()
        if round is None:
            round = (await fs.get_state()).round
        return tally_votes(await fs.get_day_votes(round), await fs.get_players())

    async def evaluate(self, round: int) -> DayOutcome:
        fs = get_document_store()
        state = await fs.get_state()
        players = await fs.get_players()
        tally = tally_votes(await fs.get_day_votes(round), players)
        outcome = resolve_day(tally, alive_players(players, state))
        if not tally:
            logger.info(f"[round {round}] No day votes, no one eliminated")
        elif outcome.tied:
            leaders = [e.display for e in tally if e.count == tally[0].count]
            logger.info(f"[round {round}] Vote tie between {leaders}, no one eliminated")
        elif outcome.eliminated is None:
            logger.warning(f"[round {round}] Vote leader '{tally[0].display}' is not a living player")
        return outcome


# Module-level singleton
day_vote_engine = DayVoteEngine()
