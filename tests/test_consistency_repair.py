import threading
from concurrent.futures import ThreadPoolExecutor

from conftest import QueuedExecutor, make_nft
from consistency_repair import ConsistencyRepairer, RepairOutcome, plan_repair
from database import MemoryStore
from ledger import InteractionLedger
from media_key import derive_media_key
from schemas import GLOBAL_LIKES, LIKES, LikeRecord, NFTSnapshot, like_id, to_document


class RacingStore(MemoryStore):
    """Makes two concurrent toggles both read the like record before either commits."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def get(self, collection, doc_id):
        doc = super().get(collection, doc_id)
        if collection == LIKES:
            self.barrier.wait()
        return doc


def add_like(store, fid, key):
    record = LikeRecord(fid=fid, media_key=key, snapshot=NFTSnapshot(media_key=key, name="Song"))
    store.set(LIKES, like_id(fid, key), to_document(record))


def test_concurrent_toggles_from_two_tabs_converge():
    store = RacingStore()
    repairs = QueuedExecutor()
    ledger = InteractionLedger(store, repair_executor=repairs)
    nft = make_nft(1)
    key = derive_media_key(nft)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: ledger.toggle_like(1, nft), range(2)))

    assert results == [True, True]
    assert len(store.query(LIKES, {"media_key": key})) == 1
    assert store.get(GLOBAL_LIKES, key)["like_count"] == 2

    repairs.drain()
    assert store.get(GLOBAL_LIKES, key)["like_count"] == 1


def test_orphaned_aggregate_is_deleted():
    store = MemoryStore()
    store.set(GLOBAL_LIKES, "k", {"media_key": "k", "like_count": 3, "snapshot": {"media_key": "k"}})
    assert ConsistencyRepairer(store, executor=QueuedExecutor()).repair("k") is RepairOutcome.DELETED
    assert store.get(GLOBAL_LIKES, "k") is None


def test_missing_aggregate_is_recreated_with_exact_count():
    store = MemoryStore()
    for fid in (1, 2, 3):
        add_like(store, fid, "k")
    repairer = ConsistencyRepairer(store, executor=QueuedExecutor())
    assert repairer.repair("k") is RepairOutcome.RECREATED
    aggregate = store.get(GLOBAL_LIKES, "k")
    assert aggregate["like_count"] == 3
    assert aggregate["snapshot"]["name"] == "Song"


def test_consistent_state_is_left_alone():
    store = MemoryStore()
    add_like(store, 1, "k")
    store.set(GLOBAL_LIKES, "k", {"media_key": "k", "like_count": 1})
    commits = store.commit_count
    repairer = ConsistencyRepairer(store, executor=QueuedExecutor())
    assert repairer.repair("k") is RepairOutcome.UNCHANGED
    assert repairer.repair("nothing-here") is RepairOutcome.UNCHANGED
    assert store.commit_count == commits


def test_rerunning_repair_reaches_a_fixed_point():
    store = MemoryStore()
    add_like(store, 1, "k")
    add_like(store, 2, "k")
    store.set(GLOBAL_LIKES, "k", {"media_key": "k", "like_count": 7})
    repairer = ConsistencyRepairer(store, executor=QueuedExecutor())
    assert repairer.repair("k") is RepairOutcome.RECOUNTED
    assert repairer.repair("k") is RepairOutcome.UNCHANGED
    assert store.get(GLOBAL_LIKES, "k")["like_count"] == 2


def test_repair_failures_are_swallowed(store):
    add_like(store, 1, "k")
    store.fail_commits = 1
    repairer = ConsistencyRepairer(store, executor=QueuedExecutor())
    assert repairer.repair("k") is RepairOutcome.FAILED
    assert repairer.repair("k") is RepairOutcome.RECREATED


def test_scheduled_repair_reports_through_future(store):
    queue = QueuedExecutor()
    repairer = ConsistencyRepairer(store, executor=queue)
    add_like(store, 1, "k")
    future = repairer.schedule("k")
    assert not future.done()
    queue.drain()
    assert future.result() is RepairOutcome.RECREATED


def test_plan_repair_is_pure():
    outcome, ops = plan_repair("k", {"like_count": 0}, [])
    assert outcome is RepairOutcome.DELETED and len(ops) == 1
    assert plan_repair("k", None, []) == (RepairOutcome.UNCHANGED, [])


class InterleavingStore(MemoryStore):
    """Runs a one-shot action right after a read of the given collection."""

    def __init__(self):
        super().__init__()
        self.after_read = {}

    def get(self, collection, doc_id):
        doc = super().get(collection, doc_id)
        self._fire(collection)
        return doc

    def query(self, collection, *args, **kwargs):
        docs = super().query(collection, *args, **kwargs)
        self._fire(collection)
        return docs

    def _fire(self, collection):
        action = self.after_read.pop(collection, None)
        if action is not None:
            action()


def liked_once(store):
    repairs = QueuedExecutor()
    ledger = InteractionLedger(store, repair_executor=repairs)
    nft = make_nft(1)
    ledger.toggle_like(1, nft)
    repairs.drain()
    return ledger, repairs, nft, derive_media_key(nft)


def test_stale_recount_does_not_resurrect_deleted_aggregate():
    store = InterleavingStore()
    ledger, repairs, nft, key = liked_once(store)
    store.set(GLOBAL_LIKES, key, {"like_count": 2}, merge=True)

    def last_liker_leaves():
        assert ledger.toggle_like(1, nft) is False
        repairs.drain()
        assert store.get(GLOBAL_LIKES, key) is None

    store.after_read[GLOBAL_LIKES] = last_liker_leaves
    assert ledger.repair(key) is RepairOutcome.RECOUNTED

    assert store.get(GLOBAL_LIKES, key) is None
    assert store.query(LIKES, {"media_key": key}) == []


def test_stale_recreate_is_undone_by_the_next_pass():
    store = InterleavingStore()
    ledger, repairs, nft, key = liked_once(store)
    store.delete(GLOBAL_LIKES, key)

    def last_liker_leaves():
        ledger.toggle_like(1, nft)
        repairs.drain()

    store.after_read[LIKES] = last_liker_leaves
    assert ledger.repair(key) is RepairOutcome.DELETED

    assert store.get(GLOBAL_LIKES, key) is None
    assert ledger.get_like_count(key) == 0


def test_recount_never_inserts():
    _, ops = plan_repair("k", {"like_count": 4}, [{"snapshot": {"media_key": "k"}}])
    store = MemoryStore()
    store.commit(ops)
    assert store.get(GLOBAL_LIKES, "k") is None
