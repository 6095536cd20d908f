"""
Document store access for the shared game documents.

Two interchangeable backends:
  FirestoreService — google-cloud-firestore, sync client driven through
                     run_in_executor so the event loop never blocks.
  InMemoryStore    — process-local dicts with the same semantics (used for
                     local development and tests).

Both expose the same primitives (point reads/writes, equality-filtered
ordered queries, atomic batches, live watches, revision-checked writes) and
the same typed helpers built on top of them in DocumentStore.

Collections (logical schema):
  meta/state                    singleton GameState
  players/{autoId}              PlayerState
  nightVotes/{round}_{voterUid} NightVote
  protects/{round}_{uid}        Protect
  votes/{round}_{voterUid}      DayVote
  admins/{lowercased name}      AdminRecord
"""
import asyncio
import copy
import logging
import os
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.api_core import exceptions as google_exceptions

from config import settings
from models.game import (
    GameState, PlayerState, NightVote, Protect, DayVote, AdminRecord, RoleCounts,
    SchemaDriftError, _utcnow,
)

logger = logging.getLogger(__name__)

STATE_COLLECTION = "meta"
STATE_DOC_ID = "state"
PLAYERS = "players"
NIGHT_VOTES = "nightVotes"
PROTECTS = "protects"
VOTES = "votes"
ADMINS = "admins"

ROUND_SCOPED_COLLECTIONS = (NIGHT_VOTES, PROTECTS, VOTES)

# (field, "==", value); equality is the only operator the game needs
Filter = Tuple[str, str, Any]
Document = Tuple[str, Dict[str, Any]]
WatchCallback = Callable[[List[Document]], None]
Unsubscribe = Callable[[], None]


def initial_state() -> GameState:
    """Fresh meta/state: no host yet, default role counts from settings."""
    return GameState(role_counts=RoleCounts(
        judas=settings.default_judas_count,
        angel=settings.default_angel_count,
    ))


class StoreWriteError(RuntimeError):
    """The store rejected a read or write. Never retried automatically."""


class StaleRevisionError(StoreWriteError):
    """meta/state changed underneath a revision-checked write."""


class WriteBatch:
    """Collects set/update/delete operations and applies them atomically on commit()."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self.ops: List[Tuple[str, str, str, Optional[Dict[str, Any]]]] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self.ops.append(("set", collection, doc_id, data))
        return self

    def update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> "WriteBatch":
        self.ops.append(("update", collection, doc_id, updates))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self.ops.append(("delete", collection, doc_id, None))
        return self

    def __len__(self) -> int:
        return len(self.ops)

    async def commit(self) -> None:
        if self.ops:
            await self._store._commit(self.ops)


class DocumentStore:
    """
    Typed access to the game collections.
    Subclasses implement the underscore primitives.
    """

    # ── Primitives (backend specific) ─────────────────────────────────────────

    async def _get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        """Write only if absent. Returns False when the document already exists."""
        raise NotImplementedError

    async def _set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def _add(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def _query(
        self, collection: str, filters: List[Filter], order_by: Optional[str] = None
    ) -> List[Document]:
        raise NotImplementedError

    async def _commit(self, ops: List[Tuple[str, str, str, Optional[Dict[str, Any]]]]) -> None:
        raise NotImplementedError

    async def _update_if_revision(
        self, collection: str, doc_id: str, expected: int, updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply updates and bump `revision` iff the stored revision equals expected.
        Returns the full document after the write."""
        raise NotImplementedError

    def watch(
        self,
        collection: str,
        callback: WatchCallback,
        doc_id: Optional[str] = None,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> Unsubscribe:
        raise NotImplementedError

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    # ── Game state ────────────────────────────────────────────────────────────

    async def get_state(self) -> GameState:
        """Read meta/state, creating the initial document on first access."""
        data = await self._get(STATE_COLLECTION, STATE_DOC_ID)
        if data is not None:
            return GameState.from_document(data)
        state = initial_state()
        if await self._create(STATE_COLLECTION, STATE_DOC_ID, state.to_document()):
            logger.info("Created initial meta/state (status=%s)", state.status.value)
            return state
        # Another client created it first
        data = await self._get(STATE_COLLECTION, STATE_DOC_ID)
        return GameState.from_document(data or {})

    async def update_state(self, state: GameState, updates: Dict[str, Any]) -> GameState:
        """Revision-checked write of meta/state against the revision `state` was read at."""
        updates = {**updates, "updatedAt": _utcnow().isoformat()}
        data = await self._update_if_revision(
            STATE_COLLECTION, STATE_DOC_ID, state.revision, updates
        )
        return GameState.from_document(data)

    async def reset_state(self) -> GameState:
        state = initial_state()
        await self._set(STATE_COLLECTION, STATE_DOC_ID, state.to_document())
        return state

    # ── Players ───────────────────────────────────────────────────────────────

    async def add_player(self, player: PlayerState) -> PlayerState:
        doc_id = await self._add(PLAYERS, player.to_document())
        return player.model_copy(update={"id": doc_id})

    async def get_player(self, player_id: str) -> Optional[PlayerState]:
        data = await self._get(PLAYERS, player_id)
        if data is None:
            return None
        return PlayerState.from_document(player_id, data)

    async def get_players(self) -> List[PlayerState]:
        """All players in join order."""
        docs = await self._query(PLAYERS, [], order_by="joinedAt")
        return [PlayerState.from_document(doc_id, data) for doc_id, data in docs]

    async def find_players(self, uid: str, first_name: Optional[str] = None) -> List[PlayerState]:
        filters: List[Filter] = [("uid", "==", uid)]
        if first_name is not None:
            filters.append(("firstName", "==", first_name))
        docs = await self._query(PLAYERS, filters, order_by="joinedAt")
        return [PlayerState.from_document(doc_id, data) for doc_id, data in docs]

    async def update_player(self, player_id: str, updates: Dict[str, Any]) -> None:
        await self._update(PLAYERS, player_id, updates)

    async def delete_player(self, player_id: str) -> None:
        await self._delete(PLAYERS, player_id)

    # ── Round-scoped actions ──────────────────────────────────────────────────

    async def upsert_night_vote(self, vote: NightVote) -> None:
        await self._set(NIGHT_VOTES, vote.doc_id, vote.to_document())

    async def get_night_votes(self, round: int) -> List[NightVote]:
        docs = await self._query(NIGHT_VOTES, [("round", "==", round)], order_by="at")
        return [NightVote.model_validate(data) for _, data in docs]

    async def upsert_protect(self, protect: Protect) -> None:
        await self._set(PROTECTS, protect.doc_id, protect.to_document())

    async def get_protects(self, round: int) -> List[Protect]:
        docs = await self._query(PROTECTS, [("round", "==", round)], order_by="at")
        return [Protect.model_validate(data) for _, data in docs]

    async def upsert_day_vote(self, vote: DayVote) -> None:
        await self._set(VOTES, vote.doc_id, vote.to_document())

    async def get_day_votes(self, round: int) -> List[DayVote]:
        docs = await self._query(VOTES, [("round", "==", round)], order_by="at")
        return [DayVote.model_validate(data) for _, data in docs]

    async def clear_round(self, round: int) -> int:
        """Atomically delete every nightVote/protect/vote document of `round`.
        Returns the number of documents deleted."""
        batch = self.batch()
        for collection in ROUND_SCOPED_COLLECTIONS:
            for doc_id, _ in await self._query(collection, [("round", "==", round)]):
                batch.delete(collection, doc_id)
        await batch.commit()
        return len(batch)

    # ── Admins ────────────────────────────────────────────────────────────────

    async def get_admin(self, name_key: str) -> Optional[AdminRecord]:
        data = await self._get(ADMINS, name_key)
        if data is None:
            return None
        return AdminRecord.model_validate(data)

    async def add_admin(self, name_key: str, record: AdminRecord) -> None:
        await self._set(ADMINS, name_key, record.to_document())

    # ── Live watches ──────────────────────────────────────────────────────────

    def watch_state(self, callback: Callable[[GameState], None]) -> Unsubscribe:
        def _on_docs(docs: List[Document]) -> None:
            if not docs:
                return
            try:
                callback(GameState.from_document(docs[0][1]))
            except SchemaDriftError as exc:
                logger.warning("Ignoring meta/state snapshot: %s", exc)

        return self.watch(STATE_COLLECTION, _on_docs, doc_id=STATE_DOC_ID)

    def watch_players(self, callback: Callable[[List[PlayerState]], None]) -> Unsubscribe:
        return self.watch(
            PLAYERS,
            lambda docs: callback([PlayerState.from_document(i, d) for i, d in docs]),
            order_by="joinedAt",
        )

    def watch_day_votes(
        self, round: int, callback: Callable[[List[DayVote]], None]
    ) -> Unsubscribe:
        return self.watch(
            VOTES,
            lambda docs: callback([DayVote.model_validate(d) for _, d in docs]),
            filters=[("round", "==", round)],
            order_by="at",
        )


class FirestoreService(DocumentStore):
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop.
    """

    def __init__(self, client: Optional[Any] = None):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = client or firestore.Client(project=settings.google_cloud_project or None)

    async def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except google_exceptions.GoogleAPICallError as exc:
            logger.warning("Firestore call failed: %s", exc)
            raise StoreWriteError(str(exc)) from exc

    def _ref(self, collection: str, doc_id: str):
        return self.db.collection(collection).document(doc_id)

    def _filtered(self, collection: str, filters: List[Filter], order_by: Optional[str]):
        ref = self.db.collection(collection)
        for field, op, value in filters:
            ref = ref.where(field, op, value)
        if order_by:
            ref = ref.order_by(order_by)
        return ref

    async def _get(self, collection, doc_id):
        doc = await self._run(lambda: self._ref(collection, doc_id).get())
        return doc.to_dict() if doc.exists else None

    async def _create(self, collection, doc_id, data):
        try:
            await self._run(lambda: self._ref(collection, doc_id).create(data))
        except StoreWriteError as exc:
            if isinstance(exc.__cause__, google_exceptions.AlreadyExists):
                return False
            raise
        return True

    async def _set(self, collection, doc_id, data):
        await self._run(lambda: self._ref(collection, doc_id).set(data))

    async def _update(self, collection, doc_id, updates):
        await self._run(lambda: self._ref(collection, doc_id).update(updates))

    async def _delete(self, collection, doc_id):
        await self._run(lambda: self._ref(collection, doc_id).delete())

    async def _add(self, collection, data):
        _, ref = await self._run(lambda: self.db.collection(collection).add(data))
        return ref.id

    async def _query(self, collection, filters, order_by=None):
        query = self._filtered(collection, filters, order_by)
        docs = await self._run(lambda: list(query.stream()))
        return [(d.id, d.to_dict()) for d in docs]

    async def _commit(self, ops):
        def _apply():
            batch = self.db.batch()
            for kind, collection, doc_id, data in ops:
                ref = self._ref(collection, doc_id)
                if kind == "set":
                    batch.set(ref, data)
                elif kind == "update":
                    batch.update(ref, data)
                else:
                    batch.delete(ref)
            batch.commit()

        await self._run(_apply)

    async def _update_if_revision(self, collection, doc_id, expected, updates):
        firestore = self._firestore
        ref = self._ref(collection, doc_id)

        @firestore.transactional
        def _apply(transaction):
            snap = ref.get(transaction=transaction)
            if not snap.exists:
                raise StoreWriteError(f"{collection}/{doc_id} does not exist")
            current = snap.to_dict()
            found = current.get("revision", 0)
            if found != expected:
                raise StaleRevisionError(
                    f"{collection}/{doc_id} is at revision {found}, write expected {expected}"
                )
            merged = {**updates, "revision": expected + 1}
            transaction.update(ref, merged)
            return {**current, **merged}

        return await self._run(lambda: _apply(self.db.transaction()))

    def watch(self, collection, callback, doc_id=None, filters=None, order_by=None):
        # Snapshot callbacks arrive on a Firestore background thread
        def _on_snapshot(docs, changes, read_time):
            try:
                callback([(d.id, d.to_dict()) for d in docs if d.exists])
            except Exception:
                logger.exception("Watch callback on %s failed", collection)

        if doc_id is not None:
            watch = self._ref(collection, doc_id).on_snapshot(_on_snapshot)
        else:
            watch = self._filtered(collection, filters or [], order_by).on_snapshot(_on_snapshot)
        return watch.unsubscribe


class InMemoryStore(DocumentStore):
    """Single-process store with Firestore-like semantics. Watches fire synchronously."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._watchers: Dict[int, Tuple[str, Optional[str], List[Filter], Optional[str], WatchCallback]] = {}
        self._next_watch = 0

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    def _select(self, collection: str, filters: List[Filter], order_by: Optional[str]) -> List[Document]:
        rows = [
            (doc_id, copy.deepcopy(data))
            for doc_id, data in self._docs(collection).items()
            if all(data.get(field) == value for field, _, value in filters)
        ]
        if order_by:
            rows.sort(key=lambda row: (row[1].get(order_by) is None, row[1].get(order_by) or ""))
        return rows

    def _notify(self, collection: str) -> None:
        for watched, doc_id, filters, order_by, callback in list(self._watchers.values()):
            if watched != collection:
                continue
            if doc_id is not None:
                data = self._docs(collection).get(doc_id)
                docs = [(doc_id, copy.deepcopy(data))] if data is not None else []
            else:
                docs = self._select(collection, filters, order_by)
            try:
                callback(docs)
            except Exception:
                logger.exception("Watch callback on %s failed", collection)

    async def _get(self, collection, doc_id):
        data = self._docs(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def _create(self, collection, doc_id, data):
        if doc_id in self._docs(collection):
            return False
        self._docs(collection)[doc_id] = copy.deepcopy(data)
        self._notify(collection)
        return True

    async def _set(self, collection, doc_id, data):
        self._docs(collection)[doc_id] = copy.deepcopy(data)
        self._notify(collection)

    async def _update(self, collection, doc_id, updates):
        docs = self._docs(collection)
        if doc_id not in docs:
            raise StoreWriteError(f"{collection}/{doc_id} does not exist")
        docs[doc_id].update(copy.deepcopy(updates))
        self._notify(collection)

    async def _delete(self, collection, doc_id):
        self._docs(collection).pop(doc_id, None)
        self._notify(collection)

    async def _add(self, collection, data):
        doc_id = uuid.uuid4().hex[:20]
        await self._set(collection, doc_id, data)
        return doc_id

    async def _query(self, collection, filters, order_by=None):
        return self._select(collection, filters, order_by)

    async def _commit(self, ops):
        # Validate first so a failing update leaves nothing half-applied
        for kind, collection, doc_id, _ in ops:
            if kind == "update" and doc_id not in self._docs(collection):
                raise StoreWriteError(f"{collection}/{doc_id} does not exist")
        touched = set()
        for kind, collection, doc_id, data in ops:
            docs = self._docs(collection)
            if kind == "set":
                docs[doc_id] = copy.deepcopy(data)
            elif kind == "update":
                docs[doc_id].update(copy.deepcopy(data))
            else:
                docs.pop(doc_id, None)
            touched.add(collection)
        for collection in touched:
            self._notify(collection)

    async def _update_if_revision(self, collection, doc_id, expected, updates):
        current = self._docs(collection).get(doc_id)
        if current is None:
            raise StoreWriteError(f"{collection}/{doc_id} does not exist")
        found = current.get("revision", 0)
        if found != expected:
            raise StaleRevisionError(
                f"{collection}/{doc_id} is at revision {found}, write expected {expected}"
            )
        current.update(copy.deepcopy(updates))
        current["revision"] = expected + 1
        self._notify(collection)
        return copy.deepcopy(current)

    def watch(self, collection, callback, doc_id=None, filters=None, order_by=None):
        watch_id = self._next_watch
        self._next_watch += 1
        self._watchers[watch_id] = (collection, doc_id, list(filters or []), order_by, callback)
        # Firestore delivers the current snapshot immediately on subscribe
        if doc_id is not None:
            data = self._docs(collection).get(doc_id)
            initial = [(doc_id, copy.deepcopy(data))] if data is not None else []
        else:
            initial = self._select(collection, filters or [], order_by)
        callback(initial)
        return lambda: self._watchers.pop(watch_id, None)


_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _document_store
    if _document_store is None:
        if settings.use_inmemory_store:
            logger.info("Using in-memory document store")
            _document_store = InMemoryStore()
        else:
            _document_store = FirestoreService()
    return _document_store


def use_document_store(store: Optional[DocumentStore]) -> None:
    """Swap the process-wide store (tests, local tooling). None resets to lazy init."""
    global _document_store
    _document_store = store
