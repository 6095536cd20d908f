"""
Roster Manager — the set of joined players, their alive/out status and role.

Duplicate first names are accepted on join. Name-based lookups resolve to the
first match in join order; callers that know the player document id should
pass it instead.
"""
import logging
from typing import List, Optional

from models.game import (
    GameState, PlayerState, HostCapability, AdminCapability, target_key, to_store_updates,
)
from services.document_store import get_document_store, PLAYERS

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 24


def play_roster(players: List[PlayerState], state: GameState) -> List[PlayerState]:
    """Drop the host: they run the game and never appear in play lists."""
    host_key = (state.host_first_name or "").strip().lower()
    return [
        p for p in players
        if not (
            (state.host_player_id and p.id == state.host_player_id)
            or (state.host_uid and p.uid == state.host_uid)
            or (not state.host_player_id and host_key and p.name_key == host_key)
        )
    ]


def alive_players(players: List[PlayerState], state: GameState) -> List[PlayerState]:
    return [p for p in play_roster(players, state) if p.alive]


def out_players(players: List[PlayerState], state: GameState) -> List[PlayerState]:
    return [p for p in play_roster(players, state) if not p.alive]


def find_player(
    players: List[PlayerState], first_name: Optional[str], player_id: Optional[str] = None
) -> Optional[PlayerState]:
    """First player matching the id (when given) or the case-insensitive first name."""
    for p in players:
        if p.matches(first_name, player_id):
            return p
    return None


def resolve_target_key(
    players: List[PlayerState], first_name: Optional[str], player_id: Optional[str] = None
) -> str:
    """
    One grouping key per target, however the client named it: the roster
    player's id when the id or the name resolves, the lower-cased name otherwise.
    """
    target = find_player(players, first_name, player_id) if player_id else None
    if target is None:
        target = find_player(players, first_name)
    if target is not None:
        return target.id
    return target_key(first_name)


def player_for_key(players: List[PlayerState], key: Optional[str]) -> Optional[PlayerState]:
    """Resolve a vote target key (player id or lower-cased first name)."""
    if not key:
        return None
    for p in players:
        if p.id == key or p.name_key == key:
            return p
    return None


class RosterManager:

    async def join(self, uid: str, first_name: str) -> PlayerState:
        """Create a player document. Same-name joins are allowed."""
        name = first_name.strip()
        if not name:
            raise ValueError("First name is required.")
        if len(name) > MAX_NAME_LENGTH:
            raise ValueError(f"Keep it under {MAX_NAME_LENGTH} characters.")

        player = await get_document_store().add_player(PlayerState(first_name=name, uid=uid))
        logger.info(f"Player {player.id} ({name}) joined")
        return player

    async def find_membership(self, uid: str, first_name: str) -> Optional[PlayerState]:
        """The player document this device already owns under this name, if any."""
        matches = await get_document_store().find_players(uid, first_name.strip())
        return matches[0] if matches else None

    async def list_players(self) -> List[PlayerState]:
        return await get_document_store().get_players()

    async def list_alive(self, state: Optional[GameState] = None) -> List[PlayerState]:
        fs = get_document_store()
        state = state or await fs.get_state()
        return alive_players(await fs.get_players(), state)

    async def list_out(self, state: Optional[GameState] = None) -> List[PlayerState]:
        fs = get_document_store()
        state = state or await fs.get_state()
        return out_players(await fs.get_players(), state)

    async def find_by_first_name(self, first_name: str) -> Optional[PlayerState]:
        return find_player(await get_document_store().get_players(), first_name)

    async def set_alive(
        self,
        cap: Optional[HostCapability],
        first_name: str,
        alive: bool,
        player_id: Optional[str] = None,
    ) -> Optional[PlayerState]:
        """
        Host correction: mark a player out (kill) or back in (revive).
        No-op for anyone but the host and for unknown names. Idempotent.
        """
        fs = get_document_store()
        state = await fs.get_state()
        if not state.accepts(cap):
            logger.info("set_alive(%s) ignored: caller is not the host", first_name)
            return None

        target = find_player(await fs.get_players(), first_name, player_id)
        if target is None:
            logger.info("set_alive: no player named '%s'", first_name)
            return None
        if target.alive != alive:
            await fs.update_player(target.id, to_store_updates(alive=alive))
            logger.info(f"[round {state.round}] {target.first_name} marked {'alive' if alive else 'out'} by host")
        return target.model_copy(update={"alive": alive})

    # ── Admin removal ─────────────────────────────────────────────────────────

    async def delete_player(self, cap: Optional[AdminCapability], player_id: str) -> bool:
        if cap is None:
            return False
        await get_document_store().delete_player(player_id)
        logger.info("[admin] %s removed player %s", cap.name_key, player_id)
        return True

    async def clear_players(self, cap: Optional[AdminCapability]) -> int:
        """Delete every player document in one batch."""
        if cap is None:
            return 0
        fs = get_document_store()
        batch = fs.batch()
        for p in await fs.get_players():
            batch.delete(PLAYERS, p.id)
        await batch.commit()
        logger.info("[admin] %s cleared %d players", cap.name_key, len(batch))
        return len(batch)


# Module-level singleton
roster_manager = RosterManager()
