"""
InteractionLedger wires the store, like ledger, play tracker, top-played
view, migrator and repairer together and exposes the API the player uses.
"""

import random
from concurrent.futures import Executor
from typing import Callable, List, Optional

from consistency_repair import ConsistencyRepairer, RepairOutcome
from database import Store, open_store
from legacy_migrator import LegacyMigrator, MigrationReport
from like_events import LikeEvents
from like_ledger import LikeLedger
from play_tracker import PlaySession, PlayTracker
from schemas import NFT, NFTSnapshot, TopPlayedEntry
from settings import Settings
from top_played import RefreshResult, TopPlayed


class InteractionLedger:
    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        repair_executor: Optional[Executor] = None,
        rng: Optional[random.Random] = None,
    ):
        settings = settings or Settings()
        self.settings = settings
        self.store = store
        self.events = LikeEvents()
        self.repairer = ConsistencyRepairer(store, executor=repair_executor, workers=settings.repair_workers)
        self.migrator = LegacyMigrator(store, repairer=self.repairer)
        self.likes = LikeLedger(store, self.events, self.migrator, self.repairer)
        self.top_played = TopPlayed(store, size=settings.top_played_size)
        self.plays = PlayTracker(
            store,
            self.top_played,
            threshold=settings.play_threshold,
            refresh_probability=settings.top_played_refresh_probability,
            rng=rng,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "InteractionLedger":
        return cls(open_store(settings), settings)

    # likes

    def toggle_like(self, fid: int, nft: NFT) -> bool:
        return self.likes.toggle_like(fid, nft)

    def get_liked_media(self, fid: int) -> List[NFTSnapshot]:
        return self.likes.get_liked_media(fid)

    def subscribe_liked_media(self, fid: int, on_change: Callable[[List[NFTSnapshot]], None]) -> Callable[[], None]:
        return self.likes.subscribe_liked_media(fid, on_change)

    def is_liked(self, fid: int, nft: NFT) -> bool:
        return self.likes.is_liked(fid, nft)

    def get_like_count(self, media_key: str) -> int:
        return self.likes.get_like_count(media_key)

    def observe(self, media_key: str, on_liked_change: Callable[[str, bool], None]) -> Callable[[], None]:
        return self.events.observe(media_key, on_liked_change)

    # plays

    def start_playback(self, fid: int, nft: NFT) -> PlaySession:
        return self.plays.start_playback(fid, nft)

    def track_play_progress(self, media_key: str, fid: int, current_time: float, duration: float) -> Optional[PlaySession]:
        return self.plays.track_progress(media_key, fid, current_time, duration)

    def reset_play_tracking(self, media_key: str) -> int:
        return self.plays.reset_for_media(media_key)

    def get_recently_played(self, fid: int, limit: int = 10) -> List[NFTSnapshot]:
        return self.plays.get_recently_played(fid, limit)

    def get_play_count(self, media_key: str) -> int:
        return self.plays.get_play_count(media_key)

    # top played

    def get_top_played(self) -> List[TopPlayedEntry]:
        return self.top_played.get_top_played()

    def refresh_top_played(self) -> RefreshResult:
        return self.top_played.refresh()

    # maintenance

    def cleanup_likes(self, fid: int) -> MigrationReport:
        return self.migrator.cleanup_likes(fid)

    def repair(self, media_key: str) -> RepairOutcome:
        return self.repairer.repair(media_key)

    def close(self) -> None:
        self.repairer.shutdown()
