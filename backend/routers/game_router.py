"""
Game HTTP endpoints — how the projector, phones and admin console submit intents.

Every request names its caller in the X-User-Id header (the anonymous id
issued by the identity provider). Host and player actions answer
{"applied": false} when the caller may not perform them right now; that is
not an error.

Routes:
  GET  /api/state                          — Public state + roster (roles per display flags)
  GET  /api/me                             — Caller's own player docs, role, host flag
  GET  /api/tally                          — Live day-vote tally for the current round
  GET  /api/night                          — Judas-only view of tonight's votes
  POST /api/players/join                   — Join the roster (rejoin detected)
  POST /api/actions/night-vote             — Judas target (upsert)
  POST /api/actions/protect                — Angel protect (upsert)
  POST /api/actions/day-vote               — Accusation vote (upsert)
  POST /api/host/...                       — Host-driven phase transitions
  POST /api/host/rules                     — Host ends the game, back to the rules screen
  POST /api/admin/...                      — Admin console
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from models.game import (
    GameState, SchemaDriftError,
    JoinRequest, JoinResponse, ChooseGameRequest, ConfigureRequest,
    TargetRequest, DayVoteRequest, SetAliveRequest,
    AdminRequest, ChooseHostRequest, AddAdminRequest,
)
from services.document_store import (
    get_document_store, StoreWriteError, StaleRevisionError,
)
from agents.roster_manager import roster_manager, alive_players, out_players
from agents.game_master import game_master
from agents.night_resolver import night_resolver
from agents.day_vote import day_vote_engine
from agents.admin_console import admin_console

logger = logging.getLogger(__name__)

router = APIRouter(tags=["judas"])


def get_principal(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id


async def _guarded(coro):
    """Convert store failures into short messages the client can show and retry."""
    try:
        return await coro
    except StaleRevisionError:
        raise HTTPException(
            status_code=409,
            detail="The game changed at the same moment. Refresh and try again.",
        )
    except SchemaDriftError as exc:
        logger.error("Game state unreadable: %s", exc)
        raise HTTPException(
            status_code=409,
            detail="The game state is from an older version. Ask an admin to reset it.",
        )
    except StoreWriteError as exc:
        logger.warning("Store write failed: %s", exc)
        raise HTTPException(status_code=503, detail="Could not reach the game server. Try again.")


def state_view(state: GameState) -> Dict[str, Any]:
    data = state.model_dump(by_alias=True, mode="json", exclude={"host_uid"})
    data["discussionRemaining"] = game_master.discussion_remaining(state)
    return data


def _result(state: Optional[GameState], **extra) -> Dict[str, Any]:
    return {
        "applied": state is not None,
        "state": state_view(state) if state is not None else None,
        **extra,
    }


# ── Shared reads ──────────────────────────────────────────────────────────────

@router.get("/state")
async def get_state():
    """Projector snapshot. Roles are only included where the display flags allow."""
    async def _read():
        fs = get_document_store()
        state = await fs.get_state()
        players = await fs.get_players()
        return {
            "state": state_view(state),
            "players": [p.to_public(state) for p in players],
            "alive": len(alive_players(players, state)),
            "out": len(out_players(players, state)),
        }
    return await _guarded(_read())


@router.get("/me")
async def get_me(uid: str = Depends(get_principal)):
    async def _read():
        fs = get_document_store()
        state = await fs.get_state()
        mine = [p for p in await fs.get_players() if p.uid == uid]
        return {
            "isHost": state.host_uid == uid,
            "players": [
                {
                    "id": p.id,
                    "firstName": p.first_name,
                    "alive": p.alive,
                    "role": p.role.value if p.role else None,
                }
                for p in mine
            ],
        }
    return await _guarded(_read())


@router.get("/tally")
async def get_tally():
    entries = await _guarded(day_vote_engine.tally())
    return {"tally": [e.model_dump() for e in entries]}


@router.get("/night")
async def get_night_view(uid: str = Depends(get_principal)):
    view = await _guarded(night_resolver.night_view(uid))
    if view is None:
        raise HTTPException(status_code=403, detail="Only Judas can see the night votes")
    return view


# ── Players ───────────────────────────────────────────────────────────────────

@router.post("/players/join", response_model=JoinResponse)
async def join(body: JoinRequest, uid: str = Depends(get_principal)):
    existing = await _guarded(roster_manager.find_membership(uid, body.first_name))
    if existing is not None:
        return JoinResponse(player_id=existing.id, first_name=existing.first_name, rejoined=True)
    try:
        player = await _guarded(roster_manager.join(uid, body.first_name))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JoinResponse(player_id=player.id, first_name=player.first_name)


@router.post("/actions/night-vote")
async def night_vote(body: TargetRequest, uid: str = Depends(get_principal)):
    vote = await _guarded(
        night_resolver.submit_night_vote(uid, body.target_first_name, body.target_player_id)
    )
    return {"applied": vote is not None}


@router.post("/actions/protect")
async def protect(body: TargetRequest, uid: str = Depends(get_principal)):
    result = await _guarded(
        night_resolver.submit_protect(uid, body.target_first_name, body.target_player_id)
    )
    return {"applied": result is not None}


@router.post("/actions/day-vote")
async def day_vote(body: DayVoteRequest, uid: str = Depends(get_principal)):
    vote = await _guarded(day_vote_engine.submit_vote(
        uid, body.target_first_name, body.role_guess, body.target_player_id
    ))
    return {"applied": vote is not None}


# ── Host ──────────────────────────────────────────────────────────────────────

@router.post("/host/game")
async def host_choose_game(body: ChooseGameRequest, uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.choose_game(cap, body.game)))


@router.post("/host/config")
async def host_configure(body: ConfigureRequest, uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.configure(
        cap, body.role_counts, body.hide_roles_alive, body.reveal_dead_roles
    )))


@router.post("/host/deal")
async def host_deal(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.deal_roles(cap)))


@router.post("/host/night/angel")
async def host_open_angel(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.open_angel_phase(cap)))


@router.post("/host/night/reveal")
async def host_reveal_night(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.reveal_night(cap)))


@router.post("/host/day/discuss")
async def host_start_discussion(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.start_discussion(cap)))


@router.post("/host/day/vote")
async def host_open_voting(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.open_voting(cap)))


@router.post("/host/day/resolve")
async def host_resolve_day(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.resolve_day_vote(cap)))


@router.post("/host/next-round")
async def host_next_round(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.next_round(cap)))


@router.post("/host/rules")
async def host_back_to_rules(uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    return _result(await _guarded(game_master.back_to_rules(cap)))


@router.post("/host/rounds/{round}/clear")
async def host_clear_round(round: int, uid: str = Depends(get_principal)):
    cap = await _guarded(game_master.host_capability(uid))
    cleared = await _guarded(game_master.clear_round(cap, round))
    return {"applied": cleared is not None, "cleared": cleared or 0}


@router.post("/host/players/{first_name}/alive")
async def host_set_alive(
    first_name: str, body: SetAliveRequest, uid: str = Depends(get_principal)
):
    cap = await _guarded(game_master.host_capability(uid))
    player = await _guarded(roster_manager.set_alive(cap, first_name, body.alive, body.player_id))
    return {"applied": player is not None}


# ── Admin ─────────────────────────────────────────────────────────────────────

async def _admin(admin_name: str):
    cap = await _guarded(admin_console.unlock(admin_name))
    if cap is None:
        raise HTTPException(status_code=403, detail="Not an admin. Ask an admin to add you.")
    return cap


@router.post("/admin/unlock")
async def admin_unlock(body: AdminRequest):
    await _admin(body.admin_name)
    return {"ok": True}


@router.post("/admin/admins")
async def admin_add(body: AddAdminRequest):
    cap = await _admin(body.admin_name)
    return {"ok": await _guarded(admin_console.add_admin(cap, body.first_name))}


@router.post("/admin/host")
async def admin_choose_host(body: ChooseHostRequest):
    cap = await _admin(body.admin_name)
    state = await _guarded(admin_console.choose_host(cap, body.player_id))
    if state is None:
        raise HTTPException(status_code=404, detail="Player not found")
    return _result(state)


@router.post("/admin/host/clear")
async def admin_clear_host(body: AdminRequest):
    cap = await _admin(body.admin_name)
    return _result(await _guarded(admin_console.clear_host(cap)))


@router.post("/admin/players/{player_id}/delete")
async def admin_delete_player(player_id: str, body: AdminRequest):
    cap = await _admin(body.admin_name)
    return {"ok": await _guarded(roster_manager.delete_player(cap, player_id))}


@router.post("/admin/players/clear")
async def admin_clear_players(body: AdminRequest):
    cap = await _admin(body.admin_name)
    return {"ok": True, "deleted": await _guarded(roster_manager.clear_players(cap))}


@router.post("/admin/state/reset")
async def admin_reset_state(body: AdminRequest):
    cap = await _admin(body.admin_name)
    return _result(await _guarded(admin_console.reset_state(cap)))
