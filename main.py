import logging
from typing import List

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from pydantic import BaseModel, Field

from ledger import InteractionLedger
from ledger_errors import InvalidIdentity, InvalidUser, StoreUnavailable
from media_key import require_media_key
from play_tracker import PlayState
from schemas import NFT, NFTSnapshot, TopPlayedEntry
from settings import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings)
logger = logging.getLogger(__name__)

ledger = InteractionLedger.from_settings(settings)

app = FastAPI(title="Media Interaction Ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_ledger() -> InteractionLedger:
    return ledger


@app.exception_handler(InvalidUser)
@app.exception_handler(InvalidIdentity)
def invalid_request(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailable)
def store_unavailable(request: Request, exc: StoreUnavailable):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


@app.get("/")
def read_root():
    return {"message": "Media Interaction Ledger API"}


@app.get("/test")
def test_database(current: InteractionLedger = Depends(get_ledger)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "collections": [],
    }
    info = current.store.describe()
    if "error" in info:
        response["database"] = f"⚠️ Connected but Error: {info['error']}"
    else:
        response["database"] = f"✅ {info['backend']}"
        response["collections"] = info.get("collections", [])
    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    return response


class LikeOut(BaseModel):
    liked: bool
    media_key: str


class LikeStatusOut(BaseModel):
    liked: bool
    like_count: int
    media_key: str


class ProgressIn(BaseModel):
    media_key: str
    current_time: float = Field(..., ge=0)
    duration: float


class PlaySessionOut(BaseModel):
    media_key: str
    state: str
    counted: bool = False


class RefreshOut(BaseModel):
    ranked: List[str]
    removed: List[str]


class MigrationOut(BaseModel):
    fid: int
    migrated: int
    unkeyed: int
    failed: int


@app.post("/api/likes/{fid}/toggle", response_model=LikeOut)
def toggle_like(fid: int, nft: NFT, current: InteractionLedger = Depends(get_ledger)):
    media_key = require_media_key(nft)
    liked = current.toggle_like(fid, nft)
    return LikeOut(liked=liked, media_key=media_key)


@app.post("/api/likes/{fid}/status", response_model=LikeStatusOut)
def like_status(fid: int, nft: NFT, current: InteractionLedger = Depends(get_ledger)):
    liked = current.is_liked(fid, nft)
    media_key = require_media_key(nft)
    return LikeStatusOut(liked=liked, like_count=current.get_like_count(media_key), media_key=media_key)


@app.get("/api/likes/{fid}", response_model=List[NFTSnapshot])
def liked_media(fid: int, current: InteractionLedger = Depends(get_ledger)):
    return current.get_liked_media(fid)


@app.post("/api/plays/reset/{media_key:path}")
def reset_play_tracking(media_key: str, current: InteractionLedger = Depends(get_ledger)):
    return {"media_key": media_key, "sessions_reset": current.reset_play_tracking(media_key)}


@app.post("/api/plays/{fid}/start", response_model=PlaySessionOut)
def start_playback(fid: int, nft: NFT, current: InteractionLedger = Depends(get_ledger)):
    session = current.start_playback(fid, nft)
    return PlaySessionOut(media_key=session.media_key, state=session.state.value)


@app.post("/api/plays/{fid}/progress", response_model=PlaySessionOut)
def play_progress(fid: int, progress: ProgressIn, current: InteractionLedger = Depends(get_ledger)):
    before = current.plays.session(progress.media_key, fid)
    session = current.track_play_progress(progress.media_key, fid, progress.current_time, progress.duration)
    if session is None:
        return PlaySessionOut(media_key=progress.media_key, state="untracked")
    counted = session.state is PlayState.COUNTED and before is not None and before.state is not PlayState.COUNTED
    return PlaySessionOut(media_key=session.media_key, state=session.state.value, counted=counted)


@app.get("/api/plays/{fid}/recent", response_model=List[NFTSnapshot])
def recently_played(fid: int, limit: int = Query(10, ge=1, le=100), current: InteractionLedger = Depends(get_ledger)):
    return current.get_recently_played(fid, limit)


@app.get("/api/top-played", response_model=List[TopPlayedEntry])
def top_played(current: InteractionLedger = Depends(get_ledger)):
    return current.get_top_played()


@app.post("/api/admin/sync-top-played", response_model=RefreshOut)
def sync_top_played(current: InteractionLedger = Depends(get_ledger)):
    result = current.refresh_top_played()
    return RefreshOut(ranked=result.ranked, removed=result.removed)


@app.post("/api/admin/repair/{media_key:path}")
def repair_media(media_key: str, current: InteractionLedger = Depends(get_ledger)):
    return {"media_key": media_key, "outcome": current.repair(media_key).value}


@app.post("/api/admin/cleanup-likes/{fid}", response_model=MigrationOut)
def cleanup_likes(fid: int, current: InteractionLedger = Depends(get_ledger)):
    report = current.cleanup_likes(fid)
    return MigrationOut(fid=report.fid, migrated=report.migrated, unkeyed=report.unkeyed, failed=report.failed)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
