# store.py: authoritative in-memory collections with snapshot persistence
import copy
import enum
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backends import SnapshotBackend
from defaults import ARTICLES, CONFIG, PUSH_SUBSCRIPTIONS, UNDERSTANDING, USERS, empty_db
from errors import ConflictError, FlushError, HydrationError, PersistenceError, StoreError

logger = logging.getLogger(__name__)


# -------------------------
# Collection policies
# -------------------------
@dataclass(frozen=True)
class CollectionPolicy:
    shape: str                   # "list" | "keyed" | "singleton"
    key: str = "id"
    generated_ids: bool = False
    on_update: str = "merge"     # "merge" | "replace"
    deletable: bool = True


POLICIES: Dict[str, CollectionPolicy] = {
    USERS: CollectionPolicy("list", generated_ids=True),
    ARTICLES: CollectionPolicy("list", generated_ids=True),
    CONFIG: CollectionPolicy("singleton", key="", deletable=False),
    UNDERSTANDING: CollectionPolicy("keyed", key="", on_update="replace", deletable=False),
    PUSH_SUBSCRIPTIONS: CollectionPolicy("list", key="endpoint", on_update="replace"),
}


class HydrateOutcome(enum.Enum):
    LOADED = "loaded"
    NO_SNAPSHOT = "no_snapshot"
    FAILED = "failed"


def _same_id(a: Any, b: Any) -> bool:
    # Ids arrive as strings from URLs but are stored as ints
    return a is not None and str(a) == str(b)


# -------------------------
# Store
# -------------------------
class DurableStore:
    """
    Holds every collection in memory behind one lock and mirrors it to a
    SnapshotBackend as a single JSON document.

    Reads hand out deep copies, so callers can never observe or cause a
    half-applied mutation. With write_through on, every mutation is followed
    by a flush in the calling thread; the autosave thread re-flushes anything
    still dirty (e.g. after a failed write).
    """

    def __init__(self, backend: SnapshotBackend, write_through: bool = True):
        self.backend = backend
        self.write_through = write_through
        self.last_snapshot_at: Optional[datetime] = None

        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._data: Dict[str, Any] = empty_db()
        self._version = 0
        self._flushed_version = 0
        self._last_id = 0

        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

    # ---- reads ----
    def get(self, name: str) -> Any:
        self._policy(name)
        with self._lock:
            return copy.deepcopy(self._data[name])

    def get_by_id(self, name: str, record_id: Any) -> Optional[Dict[str, Any]]:
        policy = self._policy(name)
        if policy.shape == "singleton":
            raise StoreError(f"'{name}' has no ids, use get()")
        with self._lock:
            if policy.shape == "keyed":
                record = self._data[name].get(str(record_id))
            else:
                idx = self._index_of(name, record_id)
                record = self._data[name][idx] if idx >= 0 else None
            return copy.deepcopy(record)

    def find(self, name: str, **criteria) -> Optional[Dict[str, Any]]:
        """First record of a list collection whose fields equal every criterion."""
        if self._policy(name).shape != "list":
            raise StoreError(f"'{name}' is not a list collection")
        with self._lock:
            for item in self._data[name]:
                if all(item.get(k) == v for k, v in criteria.items()):
                    return copy.deepcopy(item)
        return None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                name: len(self._data[name])
                for name, policy in POLICIES.items()
                if policy.shape != "singleton"
            }

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._version != self._flushed_version

    # ---- mutations ----
    def insert(self, name: str, record: Dict[str, Any], unique_on: Optional[str] = None) -> Any:
        """
        Appends a record and returns its id. Generated-id collections get a fresh
        id; keyed-by-field collections (pushSubscriptions) use the record's own key.
        Raises ConflictError if the key, or the `unique_on` field, is already taken.
        """
        policy = self._policy(name)
        if policy.shape != "list":
            raise StoreError(f"'{name}' does not support insert, use put() or update()")

        record = copy.deepcopy(dict(record))
        with self._lock:
            items: List[Dict[str, Any]] = self._data[name]
            if unique_on is not None:
                value = record.get(unique_on)
                if any(item.get(unique_on) == value for item in items):
                    raise ConflictError(f"{name} with this {unique_on} already exists")

            if policy.generated_ids:
                record[policy.key] = self._next_id()
            else:
                key = record.get(policy.key)
                if key in (None, ""):
                    raise StoreError(f"'{name}' records need a '{policy.key}'")
                if self._index_of(name, key) >= 0:
                    raise ConflictError(f"{name} with this {policy.key} already exists")

            items.append(record)
            self._version += 1
            assigned = record[policy.key]

        self._after_mutation()
        return assigned

    def update(self, name: str, record_id: Any, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Merges or replaces (per collection policy) and returns the new record,
        or None when the id is unknown. `record_id` is ignored for config.
        """
        policy = self._policy(name)
        payload = copy.deepcopy(dict(payload))

        with self._lock:
            if policy.shape == "singleton":
                self._data[name].update(payload)
                result = self._data[name]
            elif policy.shape == "keyed":
                mapping = self._data[name]
                key = str(record_id)
                if key not in mapping:
                    return None
                if policy.on_update == "replace":
                    mapping[key] = payload
                else:
                    mapping[key].update(payload)
                result = mapping[key]
            else:
                idx = self._index_of(name, record_id)
                if idx < 0:
                    return None
                current = self._data[name][idx]
                payload.pop(policy.key, None)
                if policy.on_update == "replace":
                    payload[policy.key] = current[policy.key]
                    result = payload
                else:
                    result = dict(current, **payload)
                self._data[name][idx] = result

            self._version += 1
            result = copy.deepcopy(result)

        self._after_mutation()
        return result

    def replace(self, name: str, record_id: Any, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Swaps a whole list record for `record`, keeping its id. None when the id is unknown."""
        policy = self._policy(name)
        if policy.shape != "list":
            raise StoreError(f"'{name}' does not support replace()")
        record = copy.deepcopy(dict(record))
        with self._lock:
            idx = self._index_of(name, record_id)
            if idx < 0:
                return None
            record[policy.key] = self._data[name][idx][policy.key]
            self._data[name][idx] = record
            self._version += 1
            result = copy.deepcopy(record)
        self._after_mutation()
        return result

    def put(self, name: str, record_id: Any, record: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert for keyed collections: the record under `record_id` is replaced whole."""
        if self._policy(name).shape != "keyed":
            raise StoreError(f"'{name}' does not support put()")
        record = copy.deepcopy(dict(record))
        with self._lock:
            self._data[name][str(record_id)] = record
            self._version += 1
            result = copy.deepcopy(record)
        self._after_mutation()
        return result

    def delete(self, name: str, record_id: Any) -> bool:
        """Removes the record; False (not an error) when there was nothing to remove."""
        policy = self._policy(name)
        if not policy.deletable:
            raise StoreError(f"'{name}' records cannot be deleted")
        with self._lock:
            idx = self._index_of(name, record_id)
            if idx < 0:
                return False
            del self._data[name][idx]
            self._version += 1
        self._after_mutation()
        return True

    # ---- persistence ----
    def flush(self) -> None:
        """
        Writes a point-in-time copy of every collection to the backend.
        Raises FlushError; on failure the store stays dirty so the next
        scheduled flush retries.
        """
        with self._flush_lock:
            with self._lock:
                document = copy.deepcopy(self._data)
                version = self._version

            now = datetime.now(timezone.utc)
            document["lastUpdated"] = now.isoformat()
            try:
                blob = json.dumps(document, indent=2)
            except (TypeError, ValueError) as e:
                raise FlushError(f"Snapshot is not serialisable: {e}") from e

            try:
                self.backend.put_blob(blob)
            except PersistenceError:
                raise
            except Exception as e:
                raise FlushError(f"{self.backend.describe()} rejected the snapshot: {e}") from e

            with self._lock:
                self._flushed_version = max(self._flushed_version, version)
                self.last_snapshot_at = now

        logger.debug("✅ Data saved to %s at %s", self.backend.describe(), now.strftime("%H:%M:%S"))

    def try_flush(self) -> bool:
        try:
            self.flush()
            return True
        except PersistenceError as e:
            logger.error("❌ Error saving data: %s", e)
            return False

    def hydrate(self) -> HydrateOutcome:
        """
        Replaces every collection with the latest snapshot. Missing, unreachable
        or malformed snapshots leave the defaults in place; this never raises.
        """
        logger.info("Loading data from %s...", self.backend.describe())
        try:
            blob = self.backend.get_latest_blob()
        except PersistenceError as e:
            logger.warning("ℹ️ Snapshot storage unavailable (%s), starting fresh", e)
            return HydrateOutcome.FAILED
        except Exception:
            logger.exception("ℹ️ %s failed while reading the snapshot, starting fresh", self.backend.describe())
            return HydrateOutcome.FAILED

        if blob is None:
            logger.info("ℹ️ No existing data found, starting fresh")
            return HydrateOutcome.NO_SNAPSHOT

        try:
            data = parse_snapshot(blob)
        except HydrationError as e:
            logger.warning("ℹ️ Ignoring unreadable snapshot (%s), starting fresh", e)
            return HydrateOutcome.FAILED

        with self._lock:
            self._data = data
            self._last_id = max(self._last_id, _max_numeric_id(data[USERS]), _max_numeric_id(data[ARTICLES]))
            self._flushed_version = self._version

        logger.info("✅ Data loaded: %d articles, %d users", len(data[ARTICLES]), len(data[USERS]))
        return HydrateOutcome.LOADED

    # ---- lifecycle ----
    def start(self, interval: float) -> None:
        """Starts the autosave thread; a no-op if it is already running."""
        if self._timer is not None and self._timer.is_alive():
            return
        self._stop.clear()
        self._timer = threading.Thread(
            target=self._autosave_loop, args=(interval,), name="snapshot-autosave", daemon=True
        )
        self._timer.start()
        logger.info("💾 Auto-save every %s seconds", interval)

    def close(self, timeout: float = 5.0) -> bool:
        """
        Stops the autosave thread and makes one last flush attempt if anything
        is unsaved, giving up after `timeout` seconds. Returns True when
        nothing is left unsaved.
        """
        deadline = time.monotonic() + timeout
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout)
            self._timer = None

        if not self.dirty:
            return True

        logger.info("Shutting down, saving data...")
        result: Dict[str, bool] = {}
        worker = threading.Thread(
            target=lambda: result.update(ok=self.try_flush()), name="snapshot-final-flush", daemon=True
        )
        worker.start()
        worker.join(max(0.0, deadline - time.monotonic()))
        if worker.is_alive():
            logger.error("❌ Final save did not finish within %.1fs, unsaved changes are lost", timeout)
            return False
        return result.get("ok", False)

    # ---- internals ----
    def _autosave_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            if self.dirty:
                self.try_flush()

    def _after_mutation(self) -> None:
        if self.write_through:
            self.try_flush()

    def _policy(self, name: str) -> CollectionPolicy:
        try:
            return POLICIES[name]
        except KeyError:
            raise StoreError(f"Unknown collection '{name}'")

    def _index_of(self, name: str, record_id: Any) -> int:
        key = POLICIES[name].key
        for i, item in enumerate(self._data[name]):
            if _same_id(item.get(key), record_id):
                return i
        return -1

    def _next_id(self) -> int:
        # Millisecond timestamps, bumped when two inserts land in the same millisecond
        now = int(time.time() * 1000)
        self._last_id = max(now, self._last_id + 1)
        return self._last_id


# -------------------------
# Snapshot parsing
# -------------------------
def parse_snapshot(blob: str) -> Dict[str, Any]:
    """
    Turns a snapshot document into a complete set of collections.
    Missing collections fall back to their defaults; a collection of the
    wrong shape rejects the whole document.
    """
    try:
        raw = json.loads(blob)
    except ValueError as e:
        raise HydrationError(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise HydrationError("Snapshot must be a JSON object")

    data = empty_db()
    for name, policy in POLICIES.items():
        value = raw.get(name)
        if value is None:
            continue
        if policy.shape == "list":
            if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
                raise HydrationError(f"'{name}' must be a list of objects")
        elif not isinstance(value, dict):
            raise HydrationError(f"'{name}' must be an object")
        if policy.shape == "singleton":
            # Keys added to the defaults after the snapshot was taken still apply
            data[name].update(value)
        else:
            data[name] = value
    return data


def _max_numeric_id(items: List[Dict[str, Any]]) -> int:
    ids = [item.get("id") for item in items]
    return max((i for i in ids if isinstance(i, int) and not isinstance(i, bool)), default=0)
