# Sync_Client.py
# Description: Replication between the local DocumentStore and a remote CouchDB-compatible database.
#
"""
Sync_Client.py
--------------

Moves document revisions between two endpoints that share the replication surface
(`info`, `changes`, `revs_diff`, `get_open_revs`, `bulk_docs`, `get_local`, `put_local`):
the local `DocumentStore` and the remote `CouchDBClient`.

- `Replicator` performs one terminating, one-directional pass and records a checkpoint
  in `_local/` documents on both sides so the next pass resumes where it stopped.
- `ReplicationController` keeps the two sides in sync on a background thread (push then
  pull per cycle), retries transport failures with capped exponential backoff and
  reports what happened through events.
"""
# Imports
import hashlib
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
#
# Third-Party Imports
#
# Local Imports
from .Document_Store import DocumentStore, DocumentStoreError
from ..remote_api.exceptions import RemoteAPIError
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

SYNC_BATCH_SIZE = 100
CHECKPOINT_VERSION = 1
DENIED_ERRORS = ("forbidden", "unauthorized")
EVENT_KINDS = ("change", "error", "denied", "paused", "active")

# Errors that mean "the other side is unreachable or refused the request"; these are retried.
TRANSIENT_ERRORS = (RemoteAPIError, DocumentStoreError)


@dataclass
class ReplicationEvent:
    kind: str
    direction: Optional[str] = None
    docs: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[BaseException] = None


@dataclass
class ReplicationResult:
    direction: str
    docs_read: int = 0
    docs_written: int = 0
    doc_write_failures: int = 0
    last_seq: Any = 0
    written_docs: List[Dict[str, Any]] = field(default_factory=list)
    denied: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.doc_write_failures == 0 and not self.denied


class Replicator:
    """
    One-shot replication from `source` to `target`.

    Transport errors propagate to the caller; nothing is retried here.
    """

    def __init__(self, source, target, direction: str = "push", batch_size: int = SYNC_BATCH_SIZE,
                 cancel_event: Optional[threading.Event] = None):
        self.source = source
        self.target = target
        self.direction = direction
        self.batch_size = batch_size
        self.cancel_event = cancel_event
        self.replication_id = hashlib.md5(
            f"{source.identity}|{target.identity}|{CHECKPOINT_VERSION}".encode("utf-8")).hexdigest()
        self.checkpoint_id = f"_local/{self.replication_id}"

    def _read_checkpoint(self) -> Any:
        """Returns the last sequence both sides agree on, or 0."""
        source_cp = self.source.get_local(self.checkpoint_id)
        target_cp = self.target.get_local(self.checkpoint_id)
        if source_cp and target_cp and source_cp.get("last_seq") == target_cp.get("last_seq"):
            return source_cp.get("last_seq", 0)
        if source_cp or target_cp:
            logger.info(f"[{self.direction}] Checkpoints disagree for {self.replication_id}; starting from 0.")
        return 0

    def _write_checkpoint(self, last_seq: Any):
        body = {"last_seq": last_seq, "replicator": "atlas_board", "updated_at": time.time()}
        self.target.put_local(self.checkpoint_id, body)
        self.source.put_local(self.checkpoint_id, body)

    def run(self) -> ReplicationResult:
        result = ReplicationResult(direction=self.direction)
        since = self._read_checkpoint()
        result.last_seq = since
        logger.debug(f"[{self.direction}] Replicating since {since}")

        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                break
            feed = self.source.changes(since=since, limit=self.batch_size, style="all_docs")
            results = feed.get("results", [])
            if not results:
                break

            revs = {row["id"]: [change["rev"] for change in row["changes"]] for row in results}
            missing = self.target.revs_diff(revs)
            docs: List[Dict[str, Any]] = []
            for doc_id, entry in missing.items():
                docs.extend(self.source.get_open_revs(doc_id, entry.get("missing", [])))
            result.docs_read += len(docs)

            if docs:
                self._write_batch(docs, result)

            since = feed.get("last_seq", results[-1]["seq"])
            result.last_seq = since
            self._write_checkpoint(since)
            if len(results) < self.batch_size:
                break

        if result.docs_written or result.denied or result.doc_write_failures:
            logger.info(f"[{self.direction}] Wrote {result.docs_written} revision(s), "
                        f"{len(result.denied)} denied, {result.doc_write_failures} failed. last_seq={result.last_seq}")
        return result

    def _write_batch(self, docs: List[Dict[str, Any]], result: ReplicationResult):
        write_results = self.target.bulk_docs(docs, new_edits=False) or []
        errors = {}
        for entry in write_results:
            if "error" in entry:
                errors[(entry.get("id"), entry.get("rev"))] = entry
        for doc in docs:
            error = errors.get((doc.get("_id"), doc.get("_rev"))) or errors.get((doc.get("_id"), None))
            if error is None:
                result.docs_written += 1
                result.written_docs.append(doc)
            elif error.get("error") in DENIED_ERRORS:
                logger.warning(f"[{self.direction}] Write of {doc.get('_id')} denied: {error.get('reason')}")
                result.denied.append({"id": doc.get("_id"), "rev": doc.get("_rev"),
                                      "error": error.get("error"), "reason": error.get("reason")})
            else:
                logger.error(f"[{self.direction}] Write of {doc.get('_id')} failed: {error}")
                result.doc_write_failures += 1


class ReplicationSubscription:
    """Queue of replication events. Iterate it, or poll with `get()`; `cancel()` ends iteration."""
    _CLOSED = object()

    def __init__(self, controller: 'ReplicationController', kinds: Optional[Tuple[str, ...]] = None):
        self._controller = controller
        self.kinds = tuple(kinds) if kinds else EVENT_KINDS
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self.cancelled = False

    def _deliver(self, event: ReplicationEvent):
        if not self.cancelled and event.kind in self.kinds:
            self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ReplicationEvent]:
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is self._CLOSED else item

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                return
            yield item

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self._controller._remove_subscription(self)
        self._queue.put(self._CLOSED)


class ReplicationController:
    """
    Continuous, bidirectional replication between a local store and a remote database.
    """

    def __init__(self, local: DocumentStore, remote, live: bool = True, retry: bool = True,
                 poll_interval: float = 5.0, backoff_initial: float = 1.0, backoff_max: float = 60.0,
                 batch_size: int = SYNC_BATCH_SIZE):
        self.local = local
        self.remote = remote
        self.live = live
        self.retry = retry
        self.poll_interval = poll_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.batch_size = batch_size

        self._callbacks: Dict[str, List[Callable[[ReplicationEvent], None]]] = {k: [] for k in EVENT_KINDS}
        self._subscriptions: List[ReplicationSubscription] = []
        self._events_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe_local: Optional[Callable[[], None]] = None
        self._paused = True
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> str:
        if self._thread is not None and self._thread.is_alive() and not self._stop.is_set():
            return "running"
        return "stopped"

    # --- Events ---
    def on(self, kind: str, callback: Callable[[ReplicationEvent], None]) -> Callable[[], None]:
        """Registers `callback` for events of `kind`. Returns a disposer."""
        if kind not in self._callbacks:
            raise ValueError(f"Unknown replication event kind: {kind}")
        with self._events_lock:
            self._callbacks[kind].append(callback)

        def _dispose():
            with self._events_lock:
                if callback in self._callbacks[kind]:
                    self._callbacks[kind].remove(callback)
        return _dispose

    def subscribe(self, kinds: Optional[Tuple[str, ...]] = None) -> ReplicationSubscription:
        subscription = ReplicationSubscription(self, kinds)
        with self._events_lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: ReplicationSubscription):
        with self._events_lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _emit(self, event: ReplicationEvent):
        with self._events_lock:
            callbacks = list(self._callbacks[event.kind])
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._deliver(event)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Replication '{event.kind}' callback {callback!r} failed: {e}", exc_info=True)

    # --- One-shot replication ---
    def _replicate(self, source, target, direction: str) -> ReplicationResult:
        result = Replicator(source, target, direction=direction, batch_size=self.batch_size,
                            cancel_event=self._stop if self.state == "running" else None).run()
        if result.written_docs:
            self._emit(ReplicationEvent("change", direction=direction, docs=result.written_docs))
        if result.denied:
            self._emit(ReplicationEvent("denied", direction=direction, docs=result.denied))
        return result

    def push_once(self) -> ReplicationResult:
        with self._cycle_lock:
            return self._replicate(self.local, self.remote, "push")

    def pull_once(self) -> ReplicationResult:
        with self._cycle_lock:
            return self._replicate(self.remote, self.local, "pull")

    def sync_once(self) -> Tuple[ReplicationResult, ReplicationResult]:
        """Runs one push followed by one pull. Transport errors propagate."""
        with self._cycle_lock:
            push = self._replicate(self.local, self.remote, "push")
            pull = self._replicate(self.remote, self.local, "pull")
        return push, pull

    # --- Continuous replication ---
    def start(self):
        if self.state == "running":
            logger.debug("Replication already running.")
            return
        self._stop.clear()
        self._wake.clear()
        self._unsubscribe_local = self.local.on_change(lambda change: self._wake.set())
        self._thread = threading.Thread(target=self._run, name="atlas-replication", daemon=True)
        self._thread.start()
        logger.info(f"Replication started with {self.remote!r} (live={self.live}, retry={self.retry})")

    def cancel(self, timeout: float = 10.0):
        """Stops replication. Safe to call more than once and from an event callback."""
        self._stop.set()
        self._wake.set()
        if self._unsubscribe_local:
            self._unsubscribe_local()
            self._unsubscribe_local = None
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Replication thread did not stop within the timeout.")
        self._thread = None if thread is not threading.current_thread() else thread
        logger.info("Replication cancelled.")

    def wait_until_stopped(self, timeout: Optional[float] = None) -> bool:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _set_active(self):
        if self._paused:
            self._paused = False
            self._emit(ReplicationEvent("active"))

    def _set_paused(self, error: Optional[BaseException] = None):
        if not self._paused or error is not None:
            self._paused = True
            self._emit(ReplicationEvent("paused", error=error))

    def _run(self):
        backoff = self.backoff_initial
        while not self._stop.is_set():
            self._wake.clear()
            self._set_active()
            try:
                self.sync_once()
            except TRANSIENT_ERRORS as e:
                self.last_error = e
                logger.warning(f"Replication cycle failed: {e}")
                self._emit(ReplicationEvent("error", error=e))
                self._set_paused(error=e)
                if not self.retry:
                    break
                logger.debug(f"Retrying replication in {backoff:.1f}s")
                self._stop.wait(backoff)
                backoff = min(backoff * 2, self.backoff_max)
                continue

            backoff = self.backoff_initial
            self.last_error = None
            self._set_paused()
            if not self.live:
                break
            self._wake.wait(self.poll_interval)

        self._stop.set()
        if self._unsubscribe_local:
            self._unsubscribe_local()
            self._unsubscribe_local = None
        logger.debug("Replication thread exiting.")

#
# End of Sync_Client.py
#######################################################################################################################
