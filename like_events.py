"""In-process broadcast of like state changes, keyed by MediaKey."""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

LikeListener = Callable[[str, bool], None]


class LikeEvents:
    def __init__(self):
        self._listeners: Dict[str, List[LikeListener]] = defaultdict(list)
        self._lock = threading.Lock()

    def observe(self, media_key: str, on_liked_change: LikeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners[media_key].append(on_liked_change)

        def unsubscribe():
            with self._lock:
                listeners = self._listeners.get(media_key, [])
                if on_liked_change in listeners:
                    listeners.remove(on_liked_change)
                if not listeners:
                    self._listeners.pop(media_key, None)

        return unsubscribe

    def publish(self, media_key: str, liked: bool) -> None:
        with self._lock:
            listeners = list(self._listeners.get(media_key, []))
        for listener in listeners:
            try:
                listener(media_key, liked)
            except Exception:
                logger.exception("Like listener failed for %s", media_key)

    def listener_count(self, media_key: str) -> int:
        with self._lock:
            return len(self._listeners.get(media_key, []))
