"""
Game Master — the Judas phase/round state machine, driven entirely by host intents.

Responsibilities:
- Phase transitions (rules → night_judas → night_angel → reveal → day_discuss
  → day_vote → reveal → next round's night_judas)
- Gating each transition on host authority and on the current phase
- Applying night and day resolutions (alive flag + `eliminated`)
- Round advance: clearing the finished round's votes and protects
- Back to rules: the host ending a game so it can be re-dealt

There is no server-side game loop: every operation is one host intent,
executed against meta/state with a revision check so that two clients both
believing they are host cannot silently overwrite each other. Calls by anyone
but the host, or in a phase that does not allow them, return None and write
nothing.

Win conditions are not evaluated; the host decides when the game is over.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from config import settings
from models.game import (
    GameState, GameStatus, GameKind, Phase, Resolution, RoleCounts,
    HostCapability, PlayerState, PLAYABLE_GAMES, to_store_updates, _utcnow,
)
from services.document_store import get_document_store
from agents.roster_manager import play_roster
from agents.role_dealer import role_dealer
from agents.night_resolver import night_resolver
from agents.day_vote import day_vote_engine

logger = logging.getLogger(__name__)


class GameMaster:
    """
    Host-driven state machine over the meta/state document.
    All methods read/write through the document store.
    """

    # (phase, resolution shown by a reveal) → next phase
    TRANSITIONS: Dict[Tuple[Phase, Optional[Resolution]], Phase] = {
        (Phase.RULES, None): Phase.NIGHT_JUDAS,
        (Phase.NIGHT_JUDAS, None): Phase.NIGHT_ANGEL,
        (Phase.NIGHT_ANGEL, None): Phase.REVEAL,
        (Phase.REVEAL, Resolution.NIGHT): Phase.DAY_DISCUSS,
        (Phase.DAY_DISCUSS, None): Phase.DAY_VOTE,
        (Phase.DAY_VOTE, None): Phase.REVEAL,
        (Phase.REVEAL, Resolution.DAY): Phase.NIGHT_JUDAS,
    }

    @classmethod
    def next_phase(cls, state: GameState) -> Optional[Phase]:
        resolution = state.resolution if state.phase == Phase.REVEAL else None
        return cls.TRANSITIONS.get((state.phase, resolution))

    # ── Authority ─────────────────────────────────────────────────────────────

    async def load_state(self) -> GameState:
        return await get_document_store().get_state()

    async def host_capability(self, uid: Optional[str]) -> Optional[HostCapability]:
        """Issue a capability iff `uid` is the principal recorded as host."""
        if not uid:
            return None
        state = await self.load_state()
        if state.host_uid != uid:
            return None
        return HostCapability(uid=uid, player_id=state.host_player_id)

    async def _host_state(
        self,
        cap: Optional[HostCapability],
        op: str,
        phase: Optional[Phase] = None,
        resolution: Optional[Resolution] = None,
    ) -> Optional[GameState]:
        """Fresh state if the caller is host and the phase matches; None otherwise."""
        state = await self.load_state()
        if not state.accepts(cap):
            logger.info("%s ignored: caller is not the host", op)
            return None
        if phase is not None and state.phase != phase:
            logger.info("%s ignored in phase %s", op, state.phase.value)
            return None
        if resolution is not None and state.resolution != resolution:
            logger.info("%s ignored: reveal is showing the %s result", op,
                        state.resolution.value if state.resolution else "no")
            return None
        return state

    async def _transition(self, state: GameState, to: Phase, **changes) -> Optional[GameState]:
        expected = self.next_phase(state)
        if expected != to:
            logger.warning(f"[round {state.round}] Illegal transition {state.phase.value} → {to.value} ignored")
            return None
        updated = await get_document_store().update_state(
            state, to_store_updates(phase=to, **changes)
        )
        logger.info(f"[round {updated.round}] Phase: {state.phase.value} → {to.value}")
        return updated

    # ── Lobby ─────────────────────────────────────────────────────────────────

    async def choose_game(self, cap: Optional[HostCapability], game: GameKind) -> Optional[GameState]:
        """Host picks the ruleset; everyone is shown its rules."""
        state = await self._host_state(cap, "choose_game")
        if state is None:
            return None
        if state.status == GameStatus.IN_GAME:
            logger.info("choose_game ignored: a game is in progress")
            return None
        updated = await get_document_store().update_state(
            state, to_store_updates(game=game, status=GameStatus.RULES, phase=Phase.RULES)
        )
        logger.info(f"Game selected: {game.value}")
        return updated

    async def configure(
        self,
        cap: Optional[HostCapability],
        role_counts: Optional[RoleCounts] = None,
        hide_roles_alive: Optional[bool] = None,
        reveal_dead_roles: Optional[bool] = None,
    ) -> Optional[GameState]:
        """Role counts are editable while in rules; display flags at any time."""
        state = await self._host_state(cap, "configure")
        if state is None:
            return None
        changes = {}
        if role_counts is not None:
            if state.phase != Phase.RULES:
                logger.info("Role counts are locked once the game has started")
            else:
                changes["role_counts"] = role_counts
        if hide_roles_alive is not None:
            changes["hide_roles_alive"] = hide_roles_alive
        if reveal_dead_roles is not None:
            changes["reveal_dead_roles"] = reveal_dead_roles
        if not changes:
            return state
        return await get_document_store().update_state(state, to_store_updates(**changes))

    # ── Night ─────────────────────────────────────────────────────────────────

    async def deal_roles(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """
        rules → night_judas. Deals every non-host player a role in one batch,
        resets everyone to alive, then opens the first night of this round.
        """
        state = await self._host_state(cap, "deal_roles", Phase.RULES)
        if state is None:
            return None
        if state.game not in PLAYABLE_GAMES:
            logger.info("deal_roles ignored: game %s is not playable", state.game)
            return None

        fs = get_document_store()
        roster = play_roster(await fs.get_players(), state)
        if len(roster) < 5:
            logger.warning(f"Dealing to only {len(roster)} players, 5+ recommended")
        await role_dealer.deal_and_commit(roster, state.role_counts)

        return await self._transition(
            state,
            Phase.NIGHT_JUDAS,
            status=GameStatus.IN_GAME,
            round=state.round,
            eliminated=None,
            eliminated_player_id=None,
            day_ends_at=None,
            resolution=None,
        )

    async def open_angel_phase(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """night_judas → night_angel, only once the Judas vote is unanimous."""
        state = await self._host_state(cap, "open_angel_phase", Phase.NIGHT_JUDAS)
        if state is None:
            return None
        if await night_resolver.locked_target(state.round) is None:
            logger.info(f"[round {state.round}] Judas target not unanimous, staying in night_judas")
            return None
        return await self._transition(state, Phase.NIGHT_ANGEL)

    async def reveal_night(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """night_angel → reveal. Applies the night outcome."""
        state = await self._host_state(cap, "reveal_night", Phase.NIGHT_ANGEL)
        if state is None:
            return None

        outcome = await night_resolver.evaluate(state.round)
        victim = outcome.eliminated
        updated = await self._transition(
            state,
            Phase.REVEAL,
            resolution=Resolution.NIGHT,
            eliminated=victim.first_name if victim else None,
            eliminated_player_id=victim.id if victim else None,
        )
        if updated is not None and victim is not None:
            await self._eliminate(victim)
            logger.info(f"[round {state.round}] {victim.first_name} was taken in the night")
        return updated

    # ── Day ───────────────────────────────────────────────────────────────────

    async def start_discussion(
        self, cap: Optional[HostCapability], now: Optional[datetime] = None
    ) -> Optional[GameState]:
        """reveal(night) → day_discuss with an advisory countdown."""
        state = await self._host_state(cap, "start_discussion", Phase.REVEAL, Resolution.NIGHT)
        if state is None:
            return None
        ends_at = (now or _utcnow()) + timedelta(seconds=settings.discussion_seconds)
        return await self._transition(state, Phase.DAY_DISCUSS, day_ends_at=ends_at)

    async def open_voting(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """day_discuss → day_vote. Allowed before the countdown lapses."""
        state = await self._host_state(cap, "open_voting", Phase.DAY_DISCUSS)
        if state is None:
            return None
        return await self._transition(state, Phase.DAY_VOTE)

    async def resolve_day_vote(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """day_vote → reveal. Eliminates the clear vote leader, if any."""
        state = await self._host_state(cap, "resolve_day_vote", Phase.DAY_VOTE)
        if state is None:
            return None

        outcome = await day_vote_engine.evaluate(state.round)
        victim = outcome.eliminated
        updated = await self._transition(
            state,
            Phase.REVEAL,
            resolution=Resolution.DAY,
            eliminated=victim.first_name if victim else None,
            eliminated_player_id=victim.id if victim else None,
        )
        if updated is not None and victim is not None:
            await self._eliminate(victim)
            logger.info(
                f"[round {state.round}] Vote result: {victim.first_name} eliminated "
                f"with {outcome.tally[0].count} votes"
            )
        return updated

    # ── Round advance ─────────────────────────────────────────────────────────

    async def next_round(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """
        reveal(day) → night_judas of round + 1.

        The finished round's documents are cleared first, then the round is
        incremented. If the second write fails the round stays put and the
        host can simply call this again.
        """
        state = await self._host_state(cap, "next_round", Phase.REVEAL, Resolution.DAY)
        if state is None:
            return None

        cleared = await get_document_store().clear_round(state.round)
        logger.info(f"[round {state.round}] Cleared {cleared} round documents")
        return await self._transition(
            state,
            Phase.NIGHT_JUDAS,
            round=state.round + 1,
            eliminated=None,
            eliminated_player_id=None,
            day_ends_at=None,
            resolution=None,
        )

    async def clear_round(
        self, cap: Optional[HostCapability], round: Optional[int] = None
    ) -> Optional[int]:
        """Manual recovery: re-issue the clear of one round's votes and protects."""
        state = await self._host_state(cap, "clear_round")
        if state is None:
            return None
        target = round if round is not None else state.round
        cleared = await get_document_store().clear_round(target)
        logger.info(f"[round {target}] Host cleared {cleared} round documents")
        return cleared

    async def back_to_rules(self, cap: Optional[HostCapability]) -> Optional[GameState]:
        """
        Host ends the game in progress: everyone is shown the rules again and
        the next deal starts a fresh game at round 1. The current round's
        votes and protects are cleared first.
        """
        state = await self._host_state(cap, "back_to_rules")
        if state is None:
            return None
        if state.game is None:
            logger.info("back_to_rules ignored: no game chosen yet")
            return None

        cleared = await get_document_store().clear_round(state.round)
        updated = await get_document_store().update_state(state, to_store_updates(
            status=GameStatus.RULES,
            phase=Phase.RULES,
            round=1,
            eliminated=None,
            eliminated_player_id=None,
            day_ends_at=None,
            resolution=None,
        ))
        logger.info(f"[round {state.round}] Host returned to rules ({cleared} round documents cleared)")
        return updated

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _eliminate(self, victim: PlayerState) -> None:
        # Only after meta/state records the outcome; a failed transition leaves the victim alive
        await get_document_store().update_player(victim.id, to_store_updates(alive=False))

    @staticmethod
    def discussion_remaining(state: GameState, now: Optional[datetime] = None) -> Optional[int]:
        """Whole seconds left on the discussion countdown, or None outside day_discuss."""
        if state.phase != Phase.DAY_DISCUSS or state.day_ends_at is None:
            return None
        left = (state.day_ends_at - (now or _utcnow())).total_seconds()
        return max(0, int(left))


# Module-level singleton
game_master = GameMaster()
