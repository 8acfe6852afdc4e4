# logsieve/services/cache.py
"""
Content-addressed cache of trained Models

Training a baseline is the expensive step, so trained Models are memoized
by baseline fingerprint.

## Single Flight

    caller A ─┐
    caller B ─┼─ get_or_build(fp) ─→ one build on its own thread
    caller C ─┘                         │
                                        ▼
                     every caller gets the same Model (or the same BuildFailed)

Each build runs on its own daemon thread, so a slow build (a remote
baseline fetch, a large training run) never delays the build of another
fingerprint.

The slot table has two parts, guarded by one lock that is only held for
dictionary operations (never while a builder runs):

    ready:    OrderedDict fp → entry    (LRU order, bounded)
    inflight: dict fp → flight          (at most one per fingerprint)

Failures are never cached: the inflight slot is dropped before the
waiters see the BuildFailed, so the next call starts a fresh build.

Evicting an entry only drops the cache's reference; a caller that already
holds the Model keeps using it.
"""

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Callable, Dict, Optional

from ..core.config import get_settings
from .model import Model

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[0-9A-Za-z_.-]{1,128}")


class BuildFailed(Exception):
    """
    The builder for a fingerprint raised

    Every caller waiting on that build receives the same instance.

    Attributes:
        fingerprint: The baseline fingerprint being built
        cause: The original exception
    """

    def __init__(self, fingerprint: str, cause: BaseException):
        self.fingerprint = fingerprint
        self.cause = cause
        super().__init__(f"Model build failed for {fingerprint[:12]}: {cause}")


class _Entry:
    __slots__ = ("model", "created_at")

    def __init__(self, model: Model):
        self.model = model
        self.created_at = time.monotonic()


class _Flight:
    __slots__ = ("future", "thread", "waiters")

    def __init__(self):
        self.future = Future()
        self.thread = None
        self.waiters = 0


class ModelCache:
    """
    Bounded LRU of trained Models with single-flight builds

    Usage:
        cache = ModelCache()
        model = cache.get_or_build(fp, lambda: train(baseline_lines))
    """

    def __init__(
        self,
        max_entries: int = None,
        max_age_seconds: Optional[float] = None,
        persist: bool = None,
        cache_dir: Path = None
    ):
        """
        Initialize the cache

        Args:
            max_entries: LRU bound (defaults to settings)
            max_age_seconds: Entry lifetime, None = no expiry (defaults to settings)
            persist: Also keep serialized models on disk (defaults to settings)
            cache_dir: Where serialized models live (defaults to settings)
        """
        cfg = get_settings()
        self.max_entries = max_entries or cfg.cache_max_entries
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else cfg.cache_max_age_seconds
        self.persist = persist if persist is not None else cfg.cache_persist
        self.cache_dir = Path(cache_dir or cfg.cache_dir)

        self._lock = threading.Lock()
        self._ready: "OrderedDict[str, _Entry]" = OrderedDict()
        self._inflight: Dict[str, _Flight] = {}
        self._closed = False

        self._stats = {
            "hits": 0,
            "misses": 0,
            "builds": 0,
            "failures": 0,
            "evictions": 0,
            "disk_hits": 0,
        }

        logger.info(
            f"Model cache ready (max_entries={self.max_entries}, "
            f"max_age={self.max_age_seconds}, persist={self.persist})"
        )

    # ===== LOOKUP / BUILD =====

    def get_or_build(
        self,
        fingerprint: str,
        builder: Callable[[], Model],
        timeout: Optional[float] = None
    ) -> Model:
        """
        Return the cached Model for a fingerprint, building it at most once

        Args:
            fingerprint: Baseline fingerprint (cache key)
            builder: Zero-argument callable producing the Model. It runs on
                a dedicated build thread, outside any lock, so it may do
                slow I/O (fetching the baseline) as well as training.
            timeout: Seconds to wait for an in-flight build. Giving up
                raises TimeoutError and leaves the build running.

        Returns:
            The shared Model instance

        Raises:
            BuildFailed: The builder raised (same instance for every waiter)
            TimeoutError: The wait exceeded timeout
        """
        with self._lock:
            entry = self._lookup(fingerprint)
            if entry is not None:
                self._stats["hits"] += 1
                return entry.model

            flight = self._inflight.get(fingerprint)
            if flight is None:
                if self._closed:
                    raise RuntimeError("Model cache is closed")
                self._stats["misses"] += 1
                logger.debug(f"Cache miss for {fingerprint[:12]}, starting build")
                flight = _Flight()
                flight.thread = threading.Thread(
                    target=self._run_build,
                    args=(fingerprint, builder, flight.future),
                    name=f"model-build-{fingerprint[:12]}",
                    daemon=True
                )
                self._inflight[fingerprint] = flight
                flight.thread.start()
            else:
                logger.debug(f"Attaching to in-flight build for {fingerprint[:12]}")
            flight.waiters += 1

        try:
            return flight.future.result(timeout=timeout)
        except FutureTimeoutError as e:
            logger.warning(f"Gave up waiting for build of {fingerprint[:12]} after {timeout}s")
            raise TimeoutError(f"Timed out waiting for model {fingerprint[:12]}") from e
        finally:
            with self._lock:
                flight.waiters -= 1

    def _run_build(self, fingerprint: str, builder: Callable[[], Model], future: Future):
        """Runs on the flight's build thread; commits or drops the slot before waiters wake"""
        start = time.time()
        try:
            model = self._load_or_build(fingerprint, builder)
        except Exception as e:
            with self._lock:
                self._inflight.pop(fingerprint, None)
                self._stats["failures"] += 1
            logger.error(f"Build failed for {fingerprint[:12]}: {e}", exc_info=True)
            failure = BuildFailed(fingerprint, e)
            failure.__cause__ = e
            future.set_exception(failure)
            return

        with self._lock:
            self._inflight.pop(fingerprint, None)
            self._ready[fingerprint] = _Entry(model)
            self._ready.move_to_end(fingerprint)
            self._enforce_bounds()

        logger.info(f"✅ Cached model {fingerprint[:12]} (built in {time.time() - start:.2f}s)")
        future.set_result(model)

    def _load_or_build(self, fingerprint: str, builder: Callable[[], Model]) -> Model:
        path = self._model_path(fingerprint)

        if self.persist and path.exists():
            try:
                model = Model.load(path)
                with self._lock:
                    self._stats["disk_hits"] += 1
                return model
            except (ValueError, OSError) as e:
                logger.warning(f"Unreadable cached model {path}: {e}, rebuilding")

        with self._lock:
            self._stats["builds"] += 1
        model = builder()

        if self.persist:
            try:
                model.save(path)
            except OSError as e:
                logger.warning(f"Could not persist model {fingerprint[:12]}: {e}")

        return model

    def _model_path(self, fingerprint: str) -> Path:
        name = fingerprint
        if not _SAFE_NAME_RE.fullmatch(name):
            name = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{name}.model"

    # ===== SLOT TABLE (call with the lock held) =====

    def _is_expired(self, entry: _Entry) -> bool:
        if self.max_age_seconds is None:
            return False
        return time.monotonic() - entry.created_at > self.max_age_seconds

    def _lookup(self, fingerprint: str) -> Optional[_Entry]:
        entry = self._ready.get(fingerprint)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._ready[fingerprint]
            self._stats["evictions"] += 1
            logger.debug(f"Expired model {fingerprint[:12]}")
            return None
        self._ready.move_to_end(fingerprint)
        return entry

    def _enforce_bounds(self):
        expired = [fp for fp, entry in self._ready.items() if self._is_expired(entry)]
        for fp in expired:
            del self._ready[fp]
            self._stats["evictions"] += 1

        while len(self._ready) > self.max_entries:
            fp, _ = self._ready.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Evicted least recently used model {fp[:12]}")

    # ===== MANAGEMENT =====

    def get(self, fingerprint: str) -> Optional[Model]:
        """Return a cached Model without building (None on a miss)"""
        with self._lock:
            entry = self._lookup(fingerprint)
            return entry.model if entry is not None else None

    def evict(self, fingerprint: str) -> bool:
        """Drop a ready entry; returns True if one was removed"""
        with self._lock:
            if self._ready.pop(fingerprint, None) is None:
                return False
            self._stats["evictions"] += 1
            return True

    def clear(self):
        """Drop every ready entry (in-flight builds still complete and commit)"""
        with self._lock:
            count = len(self._ready)
            self._ready.clear()
            self._stats["evictions"] += count
        logger.info(f"Cleared {count} cached models")

    def waiters(self, fingerprint: str) -> int:
        """Number of callers currently waiting on the build for a fingerprint"""
        with self._lock:
            flight = self._inflight.get(fingerprint)
            return flight.waiters if flight is not None else 0

    def is_building(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._inflight

    def get_stats(self) -> dict:
        with self._lock:
            return {
                **self._stats,
                "entries": len(self._ready),
                "inflight": len(self._inflight),
                "max_entries": self.max_entries,
            }

    def close(self, wait: bool = True, timeout: Optional[float] = None):
        """Stop accepting builds; optionally wait for in-flight builds to finish"""
        with self._lock:
            self._closed = True
            threads = [flight.thread for flight in self._inflight.values()]
        if wait:
            for thread in threads:
                thread.join(timeout=timeout)

    def __contains__(self, fingerprint: str) -> bool:
        return self.get(fingerprint) is not None

    def __len__(self):
        with self._lock:
            return len(self._ready)

    def __repr__(self):
        return f"<ModelCache(entries={len(self)}, max_entries={self.max_entries})>"


# ===== PROCESS-WIDE CACHE =====
# Created empty on first use, torn down with reset_model_cache()
_model_cache = None
_model_cache_lock = threading.Lock()


def get_model_cache() -> ModelCache:
    """
    Get the global model cache instance
    Lazy-loads on first call
    """
    global _model_cache
    with _model_cache_lock:
        if _model_cache is None:
            _model_cache = ModelCache()
        return _model_cache


def reset_model_cache():
    """Close and drop the global cache (next get_model_cache() starts empty)"""
    global _model_cache
    with _model_cache_lock:
        cache, _model_cache = _model_cache, None
    if cache is not None:
        cache.close()
