"""Ledger/state persistence: hot in-process cache, optional Supabase table, JSON files on disk."""
import copy
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from holder_ledger.state import CacheState

logger = logging.getLogger(__name__)

# ─── CACHE SETTINGS ─────────────────────────────────────────────
HOT_CACHE_SIZE = 256
MAX_SAFE_INT = 2 ** 53 - 1
# ────────────────────────────────────────────────────────────────


def to_jsonable(value):
    """Make `value` JSON-safe without losing integer precision."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INT else value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return [to_jsonable(v) for v in sorted(value)]
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class _TTLCache(OrderedDict):
    """Small LRU with per-entry expiry (0 = never)."""

    def __init__(self, maxlen, clock=time.time):
        super().__init__()
        self.maxlen = maxlen
        self.clock = clock

    def get_live(self, key):
        try:
            value, expires = super().__getitem__(key)
        except KeyError:
            return None
        if expires and self.clock() >= expires:
            del self[key]
            return None
        self.move_to_end(key)
        return value

    def put(self, key, value, ttl=0):
        if key in self:
            del self[key]
        elif len(self) >= self.maxlen:
            self.popitem(last=False)
        super().__setitem__(key, (value, self.clock() + ttl if ttl else 0))


class CacheStore:
    def __init__(self, cache_dir="cache", remote=None, table="holder_cache", clock=time.time):
        self.cache_dir = cache_dir
        self.remote = remote
        self.table = table
        self.clock = clock
        self._hot = _TTLCache(HOT_CACHE_SIZE, clock)
        self._lock = threading.Lock()
        os.makedirs(cache_dir, exist_ok=True)

    def _path(self, key):
        return os.path.join(self.cache_dir, f"{key}.json")

    # ─── READ ───────────────────────────────────────────────────────
    def get(self, key):
        with self._lock:
            value = self._hot.get_live(key)
        if value is not None:
            return copy.deepcopy(value)

        value = self._remote_get(key)
        if value is None:
            value = self._disk_get(key)
        if value is not None:
            with self._lock:
                self._hot.put(key, copy.deepcopy(value))
        return value

    def _remote_get(self, key):
        if self.remote is None:
            return None
        try:
            rows = self.remote.table(self.table).select("value,expires_at").eq("key", key).execute().data
        except Exception as e:
            logger.warning(f"Remote cache read failed for {key}, falling back to disk: {e}")
            return None
        if not rows:
            return None
        expires_at = rows[0].get("expires_at")
        if expires_at:
            try:
                expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            except ValueError as e:
                logger.warning(f"Unreadable remote expiry for {key}, falling back to disk: {e}")
                return None
            if expiry <= datetime.now(timezone.utc):
                return None
        return rows[0].get("value")

    def _disk_get(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path) as f:
                entry = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None
        if not isinstance(entry, dict) or "value" not in entry:
            return None
        expires_at = entry.get("expiresAt")
        if expires_at and self.clock() >= expires_at:
            return None
        return entry["value"]

    # ─── WRITE ──────────────────────────────────────────────────────
    def set(self, key, value, ttl=0) -> bool:
        """Write through every tier; False when a durable tier failed."""
        value = to_jsonable(value)
        with self._lock:
            self._hot.put(key, value, ttl)
        remote_ok = self._remote_set(key, value, ttl)
        disk_ok = self._disk_set(key, value, ttl)
        return remote_ok and disk_ok

    def _remote_set(self, key, value, ttl):
        if self.remote is None:
            return True
        expires_at = None
        if ttl:
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=ttl)).isoformat()
        try:
            self.remote.table(self.table).upsert({"key": key, "value": value, "expires_at": expires_at}).execute()
            return True
        except Exception as e:
            logger.warning(f"Remote cache write failed for {key}, continuing with local cache only: {e}")
            return False

    def _disk_set(self, key, value, ttl=0):
        path = self._path(key)
        tmp = f"{path}.tmp"
        entry = {"value": value, "expiresAt": self.clock() + ttl if ttl else None}
        try:
            with open(tmp, "w") as f:
                json.dump(entry, f)
            os.replace(tmp, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write cache file {path}: {e}")
            return False

    def delete(self, key):
        with self._lock:
            self._hot.pop(key, None)
        if self.remote is not None:
            try:
                self.remote.table(self.table).delete().eq("key", key).execute()
            except Exception as e:
                logger.warning(f"Remote cache delete failed for {key}: {e}")
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete cache file for {key}: {e}")

    # ─── STATE ──────────────────────────────────────────────────────
    def load_state(self, contract) -> CacheState:
        state = CacheState.from_dict(self.get(f"{contract}_state"))
        if state is None:
            state = CacheState()
            self.save_state(contract, state)
            logger.warning(f"No valid cache state found for {contract}, initialized default")
        return state

    def save_state(self, contract, state: CacheState) -> bool:
        return self.set(f"{contract}_state", state.to_dict())
