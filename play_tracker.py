"""
Threshold-gated play counting.

Each (media, user) play session is a small state machine:

    IDLE --start/progress--> ARMED --progress >= threshold--> COUNTED
    ARMED/COUNTED --reset--> IDLE

Only the ARMED -> COUNTED transition writes to the store, so one arming
yields at most one counted play. A looping video stays COUNTED until the
session is reset (after an ad, or when the user switches media).
Sessions live in process memory only.
"""

import enum
import logging
import math
import random
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from database import IncrementOp, SetOp, Store
from ledger_errors import StoreUnavailable
from media_key import require_media_key, snapshot_from_nft
from schemas import GLOBAL_PLAYS, PLAY_EVENTS, USERS, NFT, GlobalPlay, NFTSnapshot, PlayEvent, to_document, utcnow
from top_played import TopPlayed
from validation import require_user

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.25


class PlayState(str, enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    COUNTED = "counted"


@dataclass(frozen=True)
class PlaySession:
    media_key: str
    fid: int
    snapshot: NFTSnapshot
    state: PlayState = PlayState.IDLE


def arm(session: PlaySession) -> PlaySession:
    return replace(session, state=PlayState.ARMED)


def reset(session: PlaySession) -> PlaySession:
    return replace(session, state=PlayState.IDLE)


def advance(
    session: PlaySession,
    current_time: float,
    duration: float,
    threshold: float = DEFAULT_THRESHOLD,
) -> Tuple[PlaySession, bool]:
    """Apply one progress update. Returns the next session and whether a play fired."""
    if not (math.isfinite(current_time) and math.isfinite(duration)) or duration <= 0:
        return session, False
    if session.state is PlayState.COUNTED:
        return session, False
    if session.state is PlayState.IDLE:
        # progress after a reset means playback resumed
        session = arm(session)
    if current_time / duration >= threshold:
        return replace(session, state=PlayState.COUNTED), True
    return session, False


class PlayTracker:
    def __init__(
        self,
        store: Store,
        top_played: TopPlayed,
        threshold: float = DEFAULT_THRESHOLD,
        refresh_probability: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.top_played = top_played
        self.threshold = threshold
        self.refresh_probability = refresh_probability
        self.rng = rng or random.Random()
        self._sessions: Dict[Tuple[str, int], PlaySession] = {}
        self._lock = threading.Lock()

    def session(self, media_key: str, fid: int) -> Optional[PlaySession]:
        with self._lock:
            return self._sessions.get((media_key, fid))

    def start_playback(self, fid: int, nft: NFT) -> PlaySession:
        fid = require_user(fid)
        media_key = require_media_key(nft)
        session = arm(PlaySession(media_key, fid, snapshot_from_nft(nft, media_key)))
        with self._lock:
            self._sessions[(media_key, fid)] = session
        logger.debug("Armed play session %s for user %s", media_key, fid)
        return session

    def track_progress(self, media_key: str, fid: int, current_time: float, duration: float) -> Optional[PlaySession]:
        fid = require_user(fid)
        key = (media_key, fid)
        with self._lock:
            previous = self._sessions.get(key)
            if previous is None:
                logger.debug("Progress for %s by user %s without a started session", media_key, fid)
                return None
            session, fired = advance(previous, current_time, duration, self.threshold)
            self._sessions[key] = session
        if not fired:
            return session

        try:
            self._record_play(session)
        except StoreUnavailable:
            with self._lock:
                if self._sessions.get(key) is session:
                    self._sessions[key] = arm(session)
            raise
        return session

    def reset_for_media(self, media_key: str) -> int:
        with self._lock:
            keys = [key for key in self._sessions if key[0] == media_key]
            for key in keys:
                self._sessions[key] = reset(self._sessions[key])
        return len(keys)

    def _record_play(self, session: PlaySession) -> None:
        media_key, fid = session.media_key, session.fid
        now = utcnow()
        is_new = self.store.get(GLOBAL_PLAYS, media_key) is None
        aggregate = GlobalPlay(media_key=media_key, snapshot=session.snapshot, first_played=now, last_played=now)
        event = PlayEvent(fid=fid, media_key=media_key, snapshot=session.snapshot, timestamp=now)
        self.store.commit([
            IncrementOp(
                GLOBAL_PLAYS,
                media_key,
                "play_count",
                1,
                on_insert=to_document(aggregate),
                extra={"last_played": now},
            ),
            SetOp(PLAY_EVENTS, uuid.uuid4().hex, to_document(event)),
            SetOp(USERS, str(fid), {"fid": fid, "last_active": now, "has_play_history": True}, merge=True),
        ])
        logger.info("Counted play of %s by user %s", media_key, fid)

        if is_new and self.rng.random() < self.refresh_probability:
            try:
                self.top_played.refresh()
            except StoreUnavailable:
                logger.exception("Top played refresh after first play of %s failed", media_key)

    def get_recently_played(self, fid: int, limit: int = 10) -> List[NFTSnapshot]:
        """Distinct media the user played, most recent first."""
        fid = require_user(fid)
        if limit < 1:
            return []
        batch = limit * 5
        while True:
            docs = self.store.query(PLAY_EVENTS, {"fid": fid}, order_by="timestamp", descending=True, limit=batch)
            seen = set()
            recent = []
            for doc in docs:
                if doc["media_key"] in seen:
                    continue
                seen.add(doc["media_key"])
                recent.append(NFTSnapshot.model_validate(doc["snapshot"]))
                if len(recent) >= limit:
                    return recent
            if len(docs) < batch:
                return recent
            batch *= 4

    def get_play_count(self, media_key: str) -> int:
        aggregate = self.store.get(GLOBAL_PLAYS, media_key)
        return int(aggregate.get("play_count", 0)) if aggregate else 0

    def subscribe_play_count(self, media_key: str, on_change: Callable[[int], None]) -> Callable[[], None]:
        return self.store.subscribe(
            GLOBAL_PLAYS,
            {"media_key": media_key},
            lambda docs: on_change(int(docs[0].get("play_count", 0)) if docs else 0),
        )
