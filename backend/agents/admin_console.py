"""
Admin console operations: unlock, admin list, host selection, roster cleanup.

Admins are identified by lower-cased first name (admins/{name}). The admins
collection is bootstrapped by the configured seed name on its first unlock.
"""
import logging
from typing import Optional

from config import settings
from models.game import (
    AdminCapability, AdminRecord, GameState, GameStatus, to_store_updates,
)
from services.document_store import get_document_store

logger = logging.getLogger(__name__)


def _name_key(first_name: str) -> str:
    return first_name.strip().lower()


class AdminConsole:

    async def unlock(self, first_name: str) -> Optional[AdminCapability]:
        key = _name_key(first_name)
        if not key:
            return None
        fs = get_document_store()
        if await fs.get_admin(key) is not None:
            return AdminCapability(name_key=key)
        seed = _name_key(settings.seed_admin_name)
        if seed and key == seed:
            await fs.add_admin(key, AdminRecord(created_by="system"))
            logger.info("[admin] Seeded admin '%s'", key)
            return AdminCapability(name_key=key)
        logger.info("[admin] Unlock refused for '%s'", key)
        return None

    async def add_admin(self, cap: Optional[AdminCapability], first_name: str) -> bool:
        key = _name_key(first_name)
        if cap is None or not key:
            return False
        await get_document_store().add_admin(key, AdminRecord(created_by=cap.name_key))
        logger.info("[admin] %s added admin '%s'", cap.name_key, key)
        return True

    async def choose_host(
        self, cap: Optional[AdminCapability], player_id: str
    ) -> Optional[GameState]:
        """Make a joined player the host. The host stops being play-eligible."""
        if cap is None:
            return None
        fs = get_document_store()
        player = await fs.get_player(player_id)
        if player is None:
            logger.info("[admin] choose_host: player %s not found", player_id)
            return None
        state = await fs.get_state()
        updated = await fs.update_state(state, to_store_updates(
            host_first_name=player.first_name,
            host_player_id=player.id,
            host_uid=player.uid,
            status=GameStatus.WAITING_START,
        ))
        logger.info("[admin] %s chose host %s (%s)", cap.name_key, player.first_name, player.id)
        return updated

    async def clear_host(self, cap: Optional[AdminCapability]) -> Optional[GameState]:
        if cap is None:
            return None
        fs = get_document_store()
        state = await fs.get_state()
        updated = await fs.update_state(state, to_store_updates(
            host_first_name=None,
            host_player_id=None,
            host_uid=None,
            status=GameStatus.WAITING_HOST,
        ))
        logger.info("[admin] %s cleared the host", cap.name_key)
        return updated

    async def reset_state(self, cap: Optional[AdminCapability]) -> Optional[GameState]:
        """Overwrite meta/state with a fresh initial document (recovers from schema drift)."""
        if cap is None:
            return None
        state = await get_document_store().reset_state()
        logger.warning("[admin] %s reset meta/state", cap.name_key)
        return state


# Module-level singleton
admin_console = AdminConsole()
