"""
Self-healing pass for global like aggregates.

Concurrent toggles can leave global_likes out of step with the per-user
likes collection. repair() recounts the likers of one MediaKey and rewrites
the aggregate to match. Every write it makes is derived from a fresh count,
so any number of concurrent passes converge on the same state.
"""

import enum
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Optional

from database import DeleteOp, SetOp, Store
from ledger_errors import StoreUnavailable
from schemas import GLOBAL_LIKES, LIKES, GlobalLike, NFTSnapshot, to_document, utcnow

logger = logging.getLogger(__name__)


class RepairOutcome(str, enum.Enum):
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    RECREATED = "recreated"
    RECOUNTED = "recounted"
    FAILED = "failed"


class ConsistencyRepairer:
    max_passes = 3

    def __init__(self, store: Store, executor: Optional[Executor] = None, workers: int = 2):
        self.store = store
        self._executor = executor or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="like-repair")

    def schedule(self, media_key: str) -> Future:
        """Queue a repair pass without waiting for it."""
        return self._executor.submit(self._run, media_key)

    def _run(self, media_key: str) -> RepairOutcome:
        try:
            return self.repair(media_key)
        except Exception:
            logger.exception("Repair pass crashed for %s", media_key)
            return RepairOutcome.FAILED

    def repair(self, media_key: str) -> RepairOutcome:
        """Recount until the aggregate matches its likers.

        A pass planned from reads that a concurrent toggle has since
        invalidated is corrected by the next pass.
        """
        outcome = RepairOutcome.UNCHANGED
        try:
            for _ in range(self.max_passes):
                step = self._repair_once(media_key)
                if step is RepairOutcome.UNCHANGED:
                    break
                outcome = step
            else:
                logger.warning("Aggregate %s still changing after %d repair passes", media_key, self.max_passes)
        except StoreUnavailable:
            logger.exception("Repair of %s failed, will retry on next invocation", media_key)
            return RepairOutcome.FAILED
        return outcome

    def _repair_once(self, media_key: str) -> RepairOutcome:
        likers = self.store.query(LIKES, {"media_key": media_key}, order_by="timestamp", descending=True)
        aggregate = self.store.get(GLOBAL_LIKES, media_key)
        outcome, ops = plan_repair(media_key, aggregate, likers)
        if ops:
            self.store.commit(ops)
            logger.info("Repaired global like aggregate %s: %s (%d likers)", media_key, outcome.value, len(likers))
        return outcome

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def plan_repair(media_key, aggregate, likers):
    count = len(likers)
    if aggregate is not None and count == 0:
        return RepairOutcome.DELETED, [DeleteOp(GLOBAL_LIKES, media_key)]
    if aggregate is None and count:
        snapshot = NFTSnapshot.model_validate(likers[0]["snapshot"])
        now = utcnow()
        doc = GlobalLike(
            media_key=media_key,
            like_count=count,
            snapshot=snapshot,
            first_liked=likers[-1].get("timestamp") or now,
            last_liked=likers[0].get("timestamp") or now,
        )
        return RepairOutcome.RECREATED, [SetOp(GLOBAL_LIKES, media_key, to_document(doc))]
    if aggregate is not None and aggregate.get("like_count") != count:
        recount = SetOp(GLOBAL_LIKES, media_key, {"like_count": count}, merge=True, upsert=False)
        return RepairOutcome.RECOUNTED, [recount]
    return RepairOutcome.UNCHANGED, []
