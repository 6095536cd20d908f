"""
WebSocket Hub — pushes live document-store snapshots to connected displays.

URL: /ws?uid={uid}   (uid optional; the projector connects without one)

The relay holds three live watches (meta/state, players, votes of the current
round). Whenever any of them fires it rebuilds one public snapshot and sends
it to every connection, plus a private "you" card (own player docs and role)
to connections that identified themselves.

Client → server message types handled here:
  ping — keep-alive heartbeat → responds with "pong"

Intents (joins, votes, host transitions) go through the HTTP router; this
socket is read-only.
"""
import asyncio
import itertools
import json
import logging
from typing import Dict, List, Optional, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from models.game import GameState, PlayerState, DayVote
from services.document_store import get_document_store, Unsubscribe
from agents.day_vote import tally_votes
from routers.game_router import state_view

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {connection_id: (uid or None, WebSocket)}
        self._conns: Dict[int, Tuple[Optional[str], WebSocket]] = {}
        self._ids = itertools.count(1)

    async def connect(self, ws: WebSocket, uid: Optional[str]) -> int:
        await ws.accept()
        conn_id = next(self._ids)
        self._conns[conn_id] = (uid, ws)
        logger.debug(f"Connection {conn_id} (uid={uid or '-'}) opened ({self.count()} total)")
        return conn_id

    def disconnect(self, conn_id: int) -> None:
        self._conns.pop(conn_id, None)

    def count(self) -> int:
        return len(self._conns)

    async def send_to(self, conn_id: int, message: Dict) -> None:
        entry = self._conns.get(conn_id)
        if entry:
            try:
                await entry[1].send_json(message)
            except Exception as exc:
                logger.warning(f"send_to {conn_id} failed: {exc}")
                self.disconnect(conn_id)

    async def broadcast(self, message: Dict) -> None:
        for conn_id in list(self._conns):
            await self.send_to(conn_id, message)

    def identified(self) -> List[Tuple[int, str]]:
        return [(cid, uid) for cid, (uid, _) in self._conns.items() if uid]


manager = ConnectionManager()


# ── Snapshot relay ─────────────────────────────────────────────────────────────

def _private_card(uid: str, players: List[PlayerState]) -> Dict:
    return {
        "type": "you",
        "players": [
            {
                "id": p.id,
                "firstName": p.first_name,
                "alive": p.alive,
                "role": p.role.value if p.role else None,
            }
            for p in players if p.uid == uid
        ],
    }


class SnapshotRelay:
    """Turns store watch callbacks (possibly on a Firestore thread) into broadcasts."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections
        self.state: Optional[GameState] = None
        self.players: List[PlayerState] = []
        self.votes: List[DayVote] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: List[Unsubscribe] = []
        self._votes_round: Optional[int] = None
        self._unsubscribe_votes: Optional[Unsubscribe] = None
        self._tasks: Set[asyncio.Task] = set()

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        fs = get_document_store()
        self._unsubscribe = [
            fs.watch_state(lambda s: self._schedule(self._on_state, s)),
            fs.watch_players(lambda ps: self._schedule(self._on_players, ps)),
        ]
        logger.info("Snapshot relay watching meta/state and players")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        if self._unsubscribe_votes:
            self._unsubscribe_votes()
        self._unsubscribe = []
        self._unsubscribe_votes = None
        for task in list(self._tasks):
            task.cancel()

    def _schedule(self, handler, payload) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(handler, payload)

    def _on_state(self, state: GameState) -> None:
        self.state = state
        if state.round != self._votes_round:
            self._watch_votes(state.round)
        self._publish()

    def _on_players(self, players: List[PlayerState]) -> None:
        self.players = players
        self._publish()

    def _on_votes(self, votes: List[DayVote]) -> None:
        self.votes = votes
        self._publish()

    def _watch_votes(self, round: int) -> None:
        if self._unsubscribe_votes:
            self._unsubscribe_votes()
        self._votes_round = round
        self.votes = []
        self._unsubscribe_votes = get_document_store().watch_day_votes(
            round, lambda vs: self._schedule(self._on_votes, vs)
        )

    def snapshot(self) -> Optional[Dict]:
        if self.state is None:
            return None
        return {
            "type": "snapshot",
            "state": state_view(self.state),
            "players": [p.to_public(self.state) for p in self.players],
            "tally": [e.model_dump() for e in tally_votes(self.votes, self.players)],
        }

    def _publish(self) -> None:
        if self._loop is None:
            return
        task = self._loop.create_task(self.send_all())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Snapshot broadcast failed", exc_info=task.exception())

    async def send_all(self) -> None:
        snap = self.snapshot()
        if snap is None:
            return
        await self.connections.broadcast(snap)
        for conn_id, uid in self.connections.identified():
            await self.connections.send_to(conn_id, _private_card(uid, self.players))

    async def send_initial(self, conn_id: int, uid: Optional[str]) -> None:
        snap = self.snapshot()
        if snap is None:
            return
        await self.connections.send_to(conn_id, snap)
        if uid:
            await self.connections.send_to(conn_id, _private_card(uid, self.players))


snapshot_relay = SnapshotRelay(manager)


@router.websocket("/ws")
async def websocket_endpoint(
    ws: WebSocket,
    uid: Optional[str] = Query(None, description="Anonymous identity of a phone; omit for displays"),
):
    conn_id = await manager.connect(ws, uid)
    await snapshot_relay.send_initial(conn_id, uid)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(conn_id, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue

            msg_type = data.get("type", "") if isinstance(data, dict) else ""
            if msg_type == "ping":
                await manager.send_to(conn_id, {"type": "pong"})
            else:
                await manager.send_to(conn_id, {
                    "type": "error",
                    "message": f"Unknown message type: '{msg_type}'",
                    "code": "UNKNOWN_TYPE",
                })
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(conn_id)
