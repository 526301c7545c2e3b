"""
Per-user likes and the global like aggregate.

toggle_like() reads the user's current like record and commits the opposite
state in one batch together with an atomic change to the global counter. The
counter is never recounted on this path: drift from concurrent toggles is
left to the ConsistencyRepairer, which is scheduled after every commit.
"""

import logging
from typing import Callable, List

from consistency_repair import ConsistencyRepairer
from database import DeleteOp, IncrementOp, SetOp, Store
from ledger_errors import StoreUnavailable
from legacy_migrator import LegacyMigrator
from like_events import LikeEvents
from media_key import require_media_key, snapshot_from_nft
from schemas import GLOBAL_LIKES, LIKES, NFT, GlobalLike, LikeRecord, NFTSnapshot, like_id, to_document, utcnow
from validation import require_user

logger = logging.getLogger(__name__)


def like_ops(fid: int, media_key: str, snapshot: NFTSnapshot, now) -> list:
    record = LikeRecord(fid=fid, media_key=media_key, snapshot=snapshot, timestamp=now)
    aggregate = GlobalLike(media_key=media_key, snapshot=snapshot, first_liked=now, last_liked=now)
    return [
        SetOp(LIKES, like_id(fid, media_key), to_document(record)),
        IncrementOp(
            GLOBAL_LIKES,
            media_key,
            "like_count",
            1,
            on_insert=to_document(aggregate),
            extra={"last_liked": now},
        ),
    ]


def unlike_ops(fid: int, media_key: str, now) -> list:
    return [
        DeleteOp(LIKES, like_id(fid, media_key)),
        IncrementOp(GLOBAL_LIKES, media_key, "like_count", -1, floor=0, extra={"last_unliked": now}),
        DeleteOp(GLOBAL_LIKES, media_key, when_exhausted="like_count"),
    ]


class LikeLedger:
    def __init__(
        self,
        store: Store,
        events: LikeEvents,
        migrator: LegacyMigrator,
        repairer: ConsistencyRepairer,
    ):
        self.store = store
        self.events = events
        self.migrator = migrator
        self.repairer = repairer

    def toggle_like(self, fid: int, nft: NFT) -> bool:
        """Flip the like state of ``nft`` for ``fid`` and return the new state."""
        fid = require_user(fid)
        media_key = require_media_key(nft)

        was_liked = self.store.get(LIKES, like_id(fid, media_key)) is not None
        now = utcnow()
        if was_liked:
            ops = unlike_ops(fid, media_key, now)
        else:
            ops = like_ops(fid, media_key, snapshot_from_nft(nft, media_key), now)
        self.store.commit(ops)

        liked = not was_liked
        logger.info("User %s %s %s", fid, "liked" if liked else "unliked", media_key)
        self.events.publish(media_key, liked)
        self.repairer.schedule(media_key)
        return liked

    def is_liked(self, fid: int, nft: NFT) -> bool:
        fid = require_user(fid)
        media_key = require_media_key(nft)
        return self.store.get(LIKES, like_id(fid, media_key)) is not None

    def get_like_count(self, media_key: str) -> int:
        aggregate = self.store.get(GLOBAL_LIKES, media_key)
        return int(aggregate.get("like_count", 0)) if aggregate else 0

    def get_liked_media(self, fid: int) -> List[NFTSnapshot]:
        """Liked content for ``fid``, newest first."""
        fid = require_user(fid)
        self._migrate(fid)
        docs = self.store.query(LIKES, {"fid": fid}, order_by="timestamp", descending=True)
        return _snapshots(docs)

    def subscribe_liked_media(self, fid: int, on_change: Callable[[List[NFTSnapshot]], None]) -> Callable[[], None]:
        fid = require_user(fid)
        self._migrate(fid)
        return self.store.subscribe(
            LIKES,
            {"fid": fid},
            lambda docs: on_change(_snapshots(docs)),
            order_by="timestamp",
            descending=True,
        )

    def _migrate(self, fid: int) -> None:
        try:
            self.migrator.cleanup_likes(fid)
        except StoreUnavailable:
            logger.exception("Legacy like migration failed for user %s", fid)


def _snapshots(docs) -> List[NFTSnapshot]:
    return [NFTSnapshot.model_validate(doc["snapshot"]) for doc in docs]
