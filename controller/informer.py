"""
Local RoleRequest cache kept current by watch events.

The cache is primed by a full list (which flips ``has_synced``) and then fed
by the kopf ``on.event`` handler in ``main.py``. Observers register a
``ResourceEventHandler`` and receive typed add/update/delete callbacks.
Readers must treat returned objects as read-only and copy before mutating.
"""

import logging
import threading

from controller.models import RoleRequest

logger = logging.getLogger(__name__)


class ResourceEventHandler:
    """Observer interface; override the callbacks you care about."""

    def on_add(self, obj: RoleRequest) -> None:
        pass

    def on_update(self, old: RoleRequest, new: RoleRequest) -> None:
        pass

    def on_delete(self, obj: RoleRequest) -> None:
        pass


class RoleRequestInformer:
    def __init__(self, store):
        self._store = store
        self._cache: dict[str, RoleRequest] = {}
        self._lock = threading.Lock()
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def start(self) -> None:
        """Prime the cache from a full list and mark it synced."""
        items = self._store.list_role_requests()
        for item in items:
            self._upsert(item)
        self._synced.set()
        logger.info(f"📚 RoleRequest cache synced ({len(items)} objects)")

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_cache_sync(self, stop_event: threading.Event, poll: float = 0.1) -> bool:
        while not self._synced.is_set():
            if stop_event.is_set():
                return False
            self._synced.wait(poll)
        return True

    def get(self, namespace: str, name: str) -> RoleRequest | None:
        with self._lock:
            return self._cache.get(f"{namespace}/{name}")

    def handle_event(self, event_type: str | None, body) -> None:
        """Apply one watch event. ``None`` is kopf's initial-listing marker."""
        obj = RoleRequest.from_dict(body)
        if event_type == "DELETED":
            self._remove(obj)
        else:
            self._upsert(obj)

    def _upsert(self, obj: RoleRequest) -> None:
        with self._lock:
            old = self._cache.get(obj.key)
            self._cache[obj.key] = obj
        for handler in self._handlers:
            if old is None:
                handler.on_add(obj)
            else:
                handler.on_update(old, obj)

    def _remove(self, obj: RoleRequest) -> None:
        with self._lock:
            old = self._cache.pop(obj.key, None)
        for handler in self._handlers:
            handler.on_delete(old or obj)
