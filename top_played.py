"""
Materialized top-N ranking of global play counts.

Readers get the small ``top_played`` collection directly. refresh() rebuilds
it from ``global_plays`` in one batch: entries that belong get a fresh rank,
entries that fell out are deleted.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from database import DeleteOp, SetOp, Store
from schemas import GLOBAL_PLAYS, TOP_PLAYED, NFTSnapshot, TopPlayedEntry, to_document, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    ranked: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class TopPlayed:
    def __init__(self, store: Store, size: int = 3):
        self.store = store
        self.size = size

    def get_top_played(self) -> List[TopPlayedEntry]:
        docs = self.store.query(TOP_PLAYED, order_by="rank")
        return [TopPlayedEntry.model_validate(doc) for doc in docs]

    def is_top_played(self, media_key: str) -> bool:
        return self.store.get(TOP_PLAYED, media_key) is not None

    def refresh(self) -> RefreshResult:
        leaders = self.store.query(GLOBAL_PLAYS, order_by="play_count", descending=True, limit=self.size)
        current = self.store.query(TOP_PLAYED)

        result = RefreshResult()
        ops = []
        now = utcnow()
        for rank, doc in enumerate(leaders, start=1):
            media_key = doc["_id"]
            entry = TopPlayedEntry(
                media_key=media_key,
                rank=rank,
                play_count=doc.get("play_count", 0),
                snapshot=NFTSnapshot.model_validate(doc["snapshot"]),
                updated_at=now,
            )
            ops.append(SetOp(TOP_PLAYED, media_key, to_document(entry)))
            result.ranked.append(media_key)

        for doc in current:
            if doc["_id"] not in result.ranked:
                ops.append(DeleteOp(TOP_PLAYED, doc["_id"]))
                result.removed.append(doc["_id"])

        self.store.commit(ops)
        logger.info("Top played refreshed: kept %d, removed %d", len(result.ranked), len(result.removed))
        return result
