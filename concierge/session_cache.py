import copy
import dataclasses
import logging
import threading
import time
from typing import Dict, Optional, Protocol

from concierge import settings
from concierge.background_service import DEFAULT_IMAGE
from concierge.entities import BackgroundKind, SceneBackground, SceneState, SessionSnapshot

logger = logging.getLogger("concierge")


class SnapshotTarget(Protocol):
    """Anything whose live state can be captured into / replaced from a SessionSnapshot."""

    def to_snapshot(self) -> SessionSnapshot:
        ...

    def apply_snapshot(self, snapshot: SessionSnapshot) -> None:
        ...


def repair_background(scene: SceneState) -> SceneState:
    """A background saved mid-generation comes back as the fixed fallback image."""
    if not scene.background.is_incomplete:
        return scene
    return dataclasses.replace(scene, background=SceneBackground(BackgroundKind.IMAGE, DEFAULT_IMAGE))


class SessionSnapshotCache:
    """
    One SessionSnapshot per identity, so switching identities is a restore
    instead of a new upstream conversation.

    - save overwrites, never appends
    - snapshots are deep-copied in and out; the live conversation never shares
      lists with the cache
    - optional sliding TTL (off by default, see CONCIERGE_SESSION_TTL_SECONDS)
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        # identity_id -> {"snapshot": SessionSnapshot, "expires_at": float | None}
        self._items: Dict[str, Dict[str, object]] = {}

    def _expires_at(self) -> Optional[float]:
        return time.time() + self.ttl_seconds if self.ttl_seconds else None

    def _live_item_unlocked(self, identity_id: str) -> Optional[Dict[str, object]]:
        item = self._items.get(identity_id)
        if item is None:
            return None
        expires_at = item["expires_at"]
        if expires_at is not None and float(expires_at) <= time.time():
            del self._items[identity_id]
            return None
        return item

    def has(self, identity_id: str) -> bool:
        with self._lock:
            return self._live_item_unlocked(str(identity_id)) is not None

    def get(self, identity_id: str) -> Optional[SessionSnapshot]:
        with self._lock:
            item = self._live_item_unlocked(str(identity_id))
            if item is None:
                return None
            item["expires_at"] = self._expires_at()
            return copy.deepcopy(item["snapshot"])  # type: ignore[return-value]

    def put(self, identity_id: str, snapshot: SessionSnapshot) -> None:
        with self._lock:
            self._items[str(identity_id)] = {
                "snapshot": copy.deepcopy(snapshot),
                "expires_at": self._expires_at(),
            }

    def save(self, identity_id: str, conversation: SnapshotTarget) -> SessionSnapshot:
        snapshot = conversation.to_snapshot()
        self.put(identity_id, snapshot)
        logger.info(f"[session] Saved session for {identity_id} ({len(snapshot.messages)} messages)")
        return snapshot

    def restore(self, identity_id: str, conversation: SnapshotTarget) -> bool:
        """
        Replace the conversation's live state with the cached snapshot.
        Returns False on a miss; the caller then runs a cold start.
        """
        snapshot = self.get(identity_id)
        if snapshot is None:
            return False

        repaired = repair_background(snapshot.scene_snapshot)
        if repaired is not snapshot.scene_snapshot:
            logger.info(f"[session] Cached scene for {identity_id} had an incomplete background, using fallback")
            snapshot.scene_snapshot = repaired

        logger.info(f"[session] Restoring cached session for {identity_id} ({len(snapshot.messages)} messages)")
        conversation.apply_snapshot(snapshot)
        return True

    def clear(self, identity_id: str) -> None:
        with self._lock:
            if self._items.pop(str(identity_id), None) is not None:
                logger.info(f"[session] Cleared cached session for {identity_id}")

    def sweep_expired(self) -> int:
        """
        Delete expired snapshots. Returns how many entries were removed.
        """
        if not self.ttl_seconds:
            return 0
        now = time.time()
        with self._lock:
            expired = [
                k for k, v in self._items.items()
                if v["expires_at"] is not None and float(v["expires_at"]) <= now  # type: ignore[arg-type]
            ]
            for k in expired:
                del self._items[k]
        return len(expired)


def build_session_cache() -> SessionSnapshotCache:
    return SessionSnapshotCache(ttl_seconds=settings.session_ttl_seconds())
