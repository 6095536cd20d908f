import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🕊️ Judas party backend starting up...")
    from routers.ws_router import snapshot_relay
    try:
        snapshot_relay.start(asyncio.get_running_loop())
    except Exception:
        # Store unreachable at boot (e.g. no credentials yet): HTTP still serves
        logger.warning("Live snapshot relay disabled", exc_info=True)
    yield
    snapshot_relay.stop()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Judas",
    version="0.1.0",
    description="Live biblical social-deduction party game — shared game state engine",
    lifespan=lifespan,
)

_origins = list(settings.allowed_origins)
if settings.extra_origin:
    _origins.append(settings.extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "judas", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
