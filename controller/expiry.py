"""
Expiry reaper for RoleRequests.

A single loop per controller holds one mutable "next deadline" and blocks on
an event queue with a timeout equal to the time left until that deadline.
Three sources feed it:

- expiries seen on the RoleRequest watch stream (re-arm if earlier),
- the timeout itself (list everything, delete what is due, re-arm to the
  nearest remaining expiry or one year out),
- terminate.

A watch stream that fails or ends is resubscribed; the armed deadline is
kept across resubscriptions and still fires while no watch is connected.
"""

import logging
import queue
import threading
from datetime import datetime, timedelta

from kubernetes.client.rest import ApiException

from controller import events
from controller.events import audit
from controller.models import format_time, now_utc

logger = logging.getLogger(__name__)

IDLE_HORIZON = timedelta(days=365)
RETRY_AFTER = timedelta(seconds=30)

_EXPIRY = "expiry"
_BROKEN = "broken"
_TERMINATE = "terminate"


class ExpiryScheduler:
    def __init__(self, store, audit_db=None, recorder=None, clock=now_utc, watch_timeout: int = 600,
                 resubscribe_delay: float = 5.0):
        self._store = store
        self._audit_db = audit_db
        self._recorder = recorder
        self._clock = clock
        self._watch_timeout = watch_timeout
        self._resubscribe_delay = resubscribe_delay
        self._events: queue.Queue = queue.Queue()
        self._terminated = threading.Event()
        self._deadline: datetime | None = None
        self._generation = 0
        self._watch = None
        self._watch_lock = threading.Lock()

    @property
    def next_deadline(self) -> datetime | None:
        return self._deadline

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        logger.info("⏰ expiry scheduler starting")
        # The first pass arms the deadline from a full list, so objects that
        # existed before the watch was established are covered.
        self.handle_timer()
        while not self._terminated.is_set():
            if not self._subscribe():
                self._pause_before_resubscribe()
                continue
            if self._loop():
                break
            self._pause_before_resubscribe()
        self._stop_watch()
        logger.info("⏰ expiry scheduler stopped")

    def terminate(self) -> None:
        self._terminated.set()
        self._events.put((self._generation, _TERMINATE, None))
        self._stop_watch()

    def _pause_before_resubscribe(self) -> None:
        """Wait out the resubscribe delay, firing the timer if it falls due first."""
        remaining = (self._deadline - self._clock()).total_seconds()
        if remaining > self._resubscribe_delay:
            self._terminated.wait(self._resubscribe_delay)
            return
        if self._terminated.wait(max(0.0, remaining)):
            return
        self.handle_timer()

    def _loop(self) -> bool:
        """Serve events until terminated (True) or the watch breaks (False)."""
        while True:
            timeout = max(0.0, (self._deadline - self._clock()).total_seconds())
            try:
                generation, kind, payload = self._events.get(timeout=timeout)
            except queue.Empty:
                self.handle_timer()
                continue
            if kind == _TERMINATE:
                return True
            if kind == _EXPIRY:
                self.observe_expiry(payload)
            elif kind == _BROKEN and generation == self._generation:
                logger.warning(f"⚠️  expiry watch ended ({payload or 'closed by server'}), resubscribing")
                self._stop_watch()
                return False

    def _subscribe(self) -> bool:
        self._generation += 1
        generation = self._generation
        try:
            stream = self._store.watch_role_requests(timeout_seconds=self._watch_timeout)
        except Exception as e:
            logger.error(f"💥 expiry watch subscription failed: {e}")
            return False
        with self._watch_lock:
            self._watch = stream
        threading.Thread(
            target=self._read_watch, args=(stream, generation),
            name=f"rolerequest-expiry-watch-{generation}", daemon=True,
        ).start()
        return True

    def _read_watch(self, stream, generation: int) -> None:
        reason = None
        try:
            for event_type, request in stream:
                if event_type in ("ADDED", "MODIFIED") and request.status.expiry is not None:
                    self._events.put((generation, _EXPIRY, request.status.expiry))
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
        if not self._terminated.is_set():
            self._events.put((generation, _BROKEN, reason))

    def _stop_watch(self) -> None:
        with self._watch_lock:
            stream, self._watch = self._watch, None
        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.debug(f"stopping expiry watch: {e}")

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------

    def observe_expiry(self, expiry: datetime) -> None:
        if self._deadline is None or expiry < self._deadline:
            self._deadline = expiry
            logger.info(f"⏳ closest expiry is now {format_time(expiry)}")

    def handle_timer(self) -> None:
        """Delete every request past its expiry and re-arm to the nearest one left."""
        now = self._clock()
        try:
            requests = self._store.list_role_requests()
        except Exception as e:
            logger.error(f"💥 listing role requests for expiry failed: {e}")
            self._deadline = now + RETRY_AFTER
            return

        closest = None
        for request in requests:
            expiry = request.status.expiry
            if expiry is None:
                continue
            if expiry <= now:
                if not self._delete(request):
                    expiry = now + RETRY_AFTER
                else:
                    continue
            if closest is None or expiry < closest:
                closest = expiry

        self._deadline = closest if closest is not None else now + IDLE_HORIZON
        logger.info(f"⏳ closest expiry is now {format_time(self._deadline)}")

    def _delete(self, request) -> bool:
        try:
            self._store.delete_role_request(request.namespace, request.name)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"💥 [{request.key}] failed to delete expired request: {e.status} {e.reason}")
                return False
        logger.info(f"💀 [{request.key}] expired at {format_time(request.status.expiry)} — deleted")
        if self._recorder is not None:
            self._recorder.normal(request, events.REASON_EXPIRED, "Role request expired and was deleted")
        audit("request.expired", request.key, requester=request.spec.email, namespace=request.namespace)
        if self._audit_db is not None:
            self._audit_db.log_audit(request.key, "request.expired", actor="controller",
                                     detail=f"expiry={format_time(request.status.expiry)}")
            self._audit_db.upsert_request(request.key, namespace=request.namespace,
                                          email=request.spec.email, deleted_at=self._clock())
        return True
