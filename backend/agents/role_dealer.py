"""
Role Dealer — deterministic role shuffling for the Judas ruleset.

Responsibilities:
- Normalize the host's requested role counts against the roster size
- Fisher–Yates shuffle of roster indices
- First `judas` shuffled indices → Judas, next `angel` → Angel, rest → Disciple
- Persist every role and reset alive=True in one atomic batch

Every deal is a full re-deal; roles from earlier games are not consulted.
There is no hard minimum roster size. Very small rosters can end up with zero
Judas, which the host UI guards against by recommending five or more players.
"""
import logging
import random
from typing import Dict, List, Optional

from models.game import PlayerState, Role, RoleCounts, to_store_updates
from services.document_store import get_document_store, PLAYERS

logger = logging.getLogger(__name__)

MAX_JUDAS = 3
MAX_ANGEL = 2


def _clamp(value: int, low: int, high: int) -> int:
    # Upper bound wins when the bounds cross on tiny rosters
    return min(high, max(low, value))


def normalize_role_counts(total: int, requested: RoleCounts) -> RoleCounts:
    """
    Fit requested counts to a roster of `total` players (host excluded).

      judas ∈ [min(3, max(1, total // 6)), min(3, total // 3)]
      angel ∈ [min(2, total // 8),         min(2, total // 4)]
      judas + angel ≤ total - 1   (angels are dropped first)
    """
    total = max(0, total)
    min_judas = min(MAX_JUDAS, max(1, total // 6))
    max_judas = min(MAX_JUDAS, total // 3)
    judas = _clamp(requested.judas, min_judas, max_judas)

    min_angel = min(MAX_ANGEL, total // 8)
    max_angel = min(MAX_ANGEL, total // 4)
    angel = _clamp(requested.angel, min_angel, max_angel)

    if judas + angel > total - 1:
        angel = max(0, total - 1 - judas)
    return RoleCounts(judas=judas, angel=angel)


def shuffled_indices(n: int, rng: Optional[random.Random] = None) -> List[int]:
    """Unbiased in-place Fisher–Yates permutation of range(n)."""
    rng = rng or random.Random()
    order = list(range(n))
    for i in range(n - 1, 0, -1):
        j = rng.randint(0, i)
        order[i], order[j] = order[j], order[i]
    return order


def deal(
    players: List[PlayerState],
    requested: RoleCounts,
    rng: Optional[random.Random] = None,
) -> Dict[str, Role]:
    """Return {player_id: role} covering every player exactly once."""
    counts = normalize_role_counts(len(players), requested)
    order = shuffled_indices(len(players), rng)

    assignment: Dict[str, Role] = {}
    for position, index in enumerate(order):
        if position < counts.judas:
            role = Role.JUDAS
        elif position < counts.judas + counts.angel:
            role = Role.ANGEL
        else:
            role = Role.DISCIPLE
        assignment[players[index].id] = role
    return assignment


class RoleDealer:
    """
    Deals roles to the roster (host already excluded by the caller).
    Called once per game start by the Game Master.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def deal_and_commit(
        self, players: List[PlayerState], requested: RoleCounts
    ) -> Dict[str, Role]:
        """
        Deal and persist in a single batch: role + alive=True for every player.
        Nothing is written if the batch fails.
        """
        assignment = deal(players, requested, self.rng)

        fs = get_document_store()
        batch = fs.batch()
        for player_id, role in assignment.items():
            batch.update(PLAYERS, player_id, to_store_updates(role=role, alive=True))
        await batch.commit()

        counts: Dict[str, int] = {}
        for role in assignment.values():
            counts[role.value] = counts.get(role.value, 0) + 1
        logger.info("Roles dealt to %d players: %s", len(assignment), counts)
        return assignment


# Module-level singleton
role_dealer = RoleDealer()
