import random
from concurrent.futures import Executor, Future

import pytest

from database import MemoryStore
from ledger import InteractionLedger
from ledger_errors import StoreUnavailable
from schemas import NFT
from settings import Settings


class QueuedExecutor(Executor):
    """Holds submitted work until drain() so tests decide when repairs run."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def drain(self):
        ran = 0
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)
            ran += 1
        return ran


class FlakyStore(MemoryStore):
    """Memory store whose next ``fail_commits`` commits raise StoreUnavailable."""

    def __init__(self):
        super().__init__()
        self.fail_commits = 0

    def commit(self, ops):
        if self.fail_commits > 0:
            self.fail_commits -= 1
            raise StoreUnavailable("simulated outage")
        super().commit(ops)


def make_nft(n, **overrides):
    data = {
        "contract": f"0x{n:040x}",
        "tokenId": str(n),
        "name": f"Track {n}",
        "audio": f"ipfs://QmAudio{n}",
        "image": f"https://img.example.com/{n}.png",
    }
    data.update(overrides)
    return NFT.model_validate(data)


@pytest.fixture
def nft_factory():
    return make_nft


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def repair_queue():
    return QueuedExecutor()


@pytest.fixture
def settings():
    return Settings(top_played_refresh_probability=0.0)


@pytest.fixture
def ledger(store, repair_queue, settings):
    return InteractionLedger(store, settings, repair_executor=repair_queue, rng=random.Random(7))
