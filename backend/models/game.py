from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    JUDAS = "judas"
    ANGEL = "angel"
    DISCIPLE = "disciple"


class Phase(str, Enum):
    RULES = "rules"
    NIGHT_JUDAS = "night_judas"
    NIGHT_ANGEL = "night_angel"
    DAY_DISCUSS = "day_discuss"
    DAY_VOTE = "day_vote"
    REVEAL = "reveal"


class GameStatus(str, Enum):
    WAITING_HOST = "waitingHost"    # admin has not picked a host yet
    WAITING_START = "waitingStart"  # host picked, no game chosen
    RULES = "rules"                 # rules on the projector, roster open
    IN_GAME = "inGame"


class GameKind(str, Enum):
    JUDAS = "judas"
    TRIVIA = "trivia"    # listed on the phones, not playable
    EMPIRE = "empire"    # listed on the phones, not playable


class Resolution(str, Enum):
    """Which resolution the current reveal phase is showing."""
    NIGHT = "night"
    DAY = "day"


SCHEMA_VERSION = 2

# Coarse phase vocabulary written by the first client revision. Never accepted.
LEGACY_PHASES = {"night", "day", "vote"}

PLAYABLE_GAMES = {GameKind.JUDAS}


class SchemaDriftError(ValueError):
    """A stored document does not match the current schema version."""


def target_key(first_name: Optional[str], player_id: Optional[str] = None) -> str:
    """Grouping key for a vote/protect target: stable id first, lower-cased name otherwise."""
    if player_id:
        return player_id
    return (first_name or "").strip().lower()


def round_key(round: int, principal_uid: str) -> str:
    """Document id for round-scoped upserts: one live document per principal per round."""
    return f"{round}_{principal_uid}"


class StoreModel(BaseModel):
    """Base for everything persisted: snake_case in Python, camelCase in the store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"id"})


def to_store_updates(**changes: Any) -> Dict[str, Any]:
    """Partial-update dict for the store: camelCase keys, JSON-safe values."""
    updates: Dict[str, Any] = {}
    for name, value in changes.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, StoreModel):
            value = value.to_document()
        updates[to_camel(name)] = value
    return updates


class RoleCounts(StoreModel):
    judas: int = Field(default=1, ge=0)
    angel: int = Field(default=1, ge=0)


class GameState(StoreModel):
    status: GameStatus = GameStatus.WAITING_HOST
    host_first_name: Optional[str] = None  # display only
    host_player_id: Optional[str] = None
    host_uid: Optional[str] = None
    game: Optional[GameKind] = None
    phase: Phase = Phase.RULES
    round: int = Field(default=1, ge=1)
    role_counts: RoleCounts = Field(default_factory=RoleCounts)
    hide_roles_alive: bool = True
    reveal_dead_roles: bool = False
    day_ends_at: Optional[datetime] = None
    eliminated: Optional[str] = None
    eliminated_player_id: Optional[str] = None
    resolution: Optional[Resolution] = None
    revision: int = 0
    schema_version: int = SCHEMA_VERSION
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "GameState":
        phase = data.get("phase")
        if phase in LEGACY_PHASES:
            raise SchemaDriftError(
                f"meta/state uses legacy phase '{phase}'; reset the state document"
            )
        version = data.get("schemaVersion", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise SchemaDriftError(
                f"meta/state schemaVersion {version} (expected {SCHEMA_VERSION})"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SchemaDriftError(f"meta/state is not a valid game state: {exc}") from exc

    def accepts(self, cap: Optional["HostCapability"]) -> bool:
        """True when `cap` was issued to the principal currently recorded as host."""
        return bool(cap and self.host_uid and cap.uid == self.host_uid)


class HostCapability(BaseModel):
    """Proof that the caller is the host. Revalidated against meta/state on every use."""

    model_config = ConfigDict(frozen=True)

    uid: str
    player_id: Optional[str] = None


class AdminCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    name_key: str


class PlayerState(StoreModel):
    id: str = ""  # document id, the stable identity
    first_name: str
    uid: str
    joined_at: datetime = Field(default_factory=_utcnow)
    alive: bool = True
    role: Optional[Role] = None
    status: str = "idle"

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "PlayerState":
        return cls.model_validate({**data, "id": doc_id})

    @property
    def name_key(self) -> str:
        return self.first_name.strip().lower()

    def matches(self, first_name: Optional[str], player_id: Optional[str] = None) -> bool:
        if player_id:
            return self.id == player_id
        return self.name_key == (first_name or "").strip().lower()

    def to_public(self, state: GameState) -> Dict[str, Any]:
        """Projector-safe representation. Role shown only when the state flags allow it."""
        show_role = (self.alive and not state.hide_roles_alive) or (
            not self.alive and state.reveal_dead_roles
        )
        return {
            "id": self.id,
            "firstName": self.first_name,
            "alive": self.alive,
            "role": self.role.value if (show_role and self.role) else None,
        }


class NightVote(StoreModel):
    round: int
    voter_uid: str
    target_first_name: str
    target_player_id: Optional[str] = None
    role: Role = Role.JUDAS
    at: datetime = Field(default_factory=_utcnow)

    @property
    def doc_id(self) -> str:
        return round_key(self.round, self.voter_uid)

    @property
    def target_key(self) -> str:
        return target_key(self.target_first_name, self.target_player_id)


class Protect(StoreModel):
    round: int
    protector_uid: str
    target_first_name: str
    target_player_id: Optional[str] = None
    role: Role = Role.ANGEL
    at: datetime = Field(default_factory=_utcnow)

    @property
    def doc_id(self) -> str:
        return round_key(self.round, self.protector_uid)

    @property
    def target_key(self) -> str:
        return target_key(self.target_first_name, self.target_player_id)


class DayVote(StoreModel):
    round: int
    voter_uid: str
    target_first_name: str
    target_player_id: Optional[str] = None
    role_guess: Optional[str] = None  # cosmetic, shown in the vote feed
    at: datetime = Field(default_factory=_utcnow)

    @property
    def doc_id(self) -> str:
        return round_key(self.round, self.voter_uid)

    @property
    def target_key(self) -> str:
        return target_key(self.target_first_name, self.target_player_id)


class AdminRecord(StoreModel):
    created_at: datetime = Field(default_factory=_utcnow)
    created_by: str = "system"


# ── Resolution results ────────────────────────────────────────────────────────

class TallyEntry(BaseModel):
    key: str
    target_first_name: str   # lower-cased, as grouped
    display: str             # roster casing when the target is known
    count: int
    player_id: Optional[str] = None


class NightOutcome(BaseModel):
    target: Optional[str] = None        # locked judas target key, None when not unanimous
    protected: bool = False
    eliminated: Optional[PlayerState] = None


class DayOutcome(BaseModel):
    tally: List[TallyEntry] = []
    tied: bool = False
    eliminated: Optional[PlayerState] = None


# ── HTTP request/response models ──────────────────────────────────────────────

class JoinRequest(BaseModel):
    first_name: str


class JoinResponse(BaseModel):
    player_id: str
    first_name: str
    rejoined: bool = False


class ChooseGameRequest(BaseModel):
    game: GameKind


class ConfigureRequest(BaseModel):
    role_counts: Optional[RoleCounts] = None
    hide_roles_alive: Optional[bool] = None
    reveal_dead_roles: Optional[bool] = None


class TargetRequest(BaseModel):
    target_first_name: str
    target_player_id: Optional[str] = None


class DayVoteRequest(TargetRequest):
    role_guess: Optional[str] = None


class SetAliveRequest(BaseModel):
    alive: bool
    player_id: Optional[str] = None


class AdminRequest(BaseModel):
    admin_name: str


class ChooseHostRequest(AdminRequest):
    player_id: str


class AddAdminRequest(AdminRequest):
    first_name: str
