"""
Compiled-module cache.

Artifacts are keyed by the module's path, its content hash and the sorted
content hashes of all of its transitive dependencies, so editing any helper a
spec module imports yields a new key and forces recompilation. The store is
thread-safe and guarantees that at most one compile per key is in flight.
"""
import importlib.util
import marshal
import sqlite3
import threading
from concurrent.futures import Future
from types import CodeType
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Tuple

from specmon import SPECMON_VERSION
from specmon.common import ContentHash, get_logger, sha256_text

logger = get_logger(__name__)

CACHE_FORMAT = f"specmon-{SPECMON_VERSION}-{importlib.util.MAGIC_NUMBER.hex()}"


class CacheKey(NamedTuple):
    path: str
    content_hash: ContentHash
    dependency_hashes: Tuple[ContentHash, ...]
    version: str = CACHE_FORMAT

    @classmethod
    def create(cls, path, content_hash, dependency_hashes: Iterable[ContentHash]):
        return cls(path, content_hash, tuple(sorted(h for h in dependency_hashes if h)))

    @property
    def digest(self) -> str:
        return sha256_text(
            "\0".join((self.version, self.path, self.content_hash) + self.dependency_hashes)
        )


class CompiledArtifact(NamedTuple):
    success: bool
    code: Optional[CodeType] = None
    diagnostic: Optional[str] = None

    @classmethod
    def compiled(cls, code: CodeType):
        return cls(True, code, None)

    @classmethod
    def failed(cls, diagnostic: str):
        return cls(False, None, diagnostic)

    def dumps(self) -> Optional[bytes]:
        return marshal.dumps(self.code) if self.success else None

    @property
    def size(self) -> int:
        if self.success:
            return len(marshal.dumps(self.code))
        return len((self.diagnostic or "").encode("utf-8"))


class CacheStats(NamedTuple):
    entries: int
    size: int


def format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class CacheStore:
    def __init__(self, database=None):
        self.db = database
        self._entries: Dict[CacheKey, CompiledArtifact] = {}
        self._in_flight: Dict[CacheKey, Future] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.compiles = 0

    def get(self, key: CacheKey) -> Optional[CompiledArtifact]:
        with self._lock:
            artifact = self._entries.get(key)
            if artifact is not None:
                self.hits += 1
                return artifact
        artifact = self._load(key)
        with self._lock:
            if artifact is None:
                self.misses += 1
            else:
                self.hits += 1
                self._entries[key] = artifact
        return artifact

    def _load(self, key: CacheKey) -> Optional[CompiledArtifact]:
        if self.db is None:
            return None
        try:
            row = self.db.fetch_artifact(key.digest)
            if row is None:
                return None
            if not row.success:
                return CompiledArtifact.failed(row.diagnostic)
            code = marshal.loads(row.payload)
            if not isinstance(code, CodeType):
                raise ValueError(f"expected a code object, got {type(code).__name__}")
            return CompiledArtifact.compiled(code)
        except (EOFError, ValueError, TypeError, sqlite3.Error) as exc:
            logger.warning("Discarding corrupt cache entry for %s: %s", key.path, exc)
            self._discard(key)
            return None

    def _discard(self, key: CacheKey):
        try:
            self.db.delete_artifact(key.digest)
        except sqlite3.Error as exc:
            logger.warning("Could not delete cache entry for %s: %s", key.path, exc)

    def put(self, key: CacheKey, artifact: CompiledArtifact):
        with self._lock:
            for stale in [k for k in self._entries if k.path == key.path and k != key]:
                del self._entries[stale]
            self._entries[key] = artifact
        if self.db is not None:
            try:
                self.db.insert_artifact(
                    key.digest,
                    key.path,
                    artifact.success,
                    artifact.dumps(),
                    artifact.diagnostic,
                    artifact.size,
                )
            except sqlite3.Error as exc:
                logger.warning("Could not persist cache entry for %s: %s", key.path, exc)

    def get_or_compile(
        self, key: CacheKey, compile_fn: Callable[[], CompiledArtifact]
    ) -> CompiledArtifact:
        """
        Return the cached artifact for ``key``, compiling it with ``compile_fn``
        on a miss. Concurrent callers asking for the same key wait for the
        first caller's compile instead of starting their own.
        """
        artifact = self.get(key)
        if artifact is not None:
            logger.debug("cache hit: %s", key.path)
            return artifact

        with self._lock:
            artifact = self._entries.get(key)
            if artifact is not None:
                return artifact
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            logger.debug("waiting for in-flight compile: %s", key.path)
            return future.result()

        logger.debug("cache miss, compiling: %s", key.path)
        try:
            artifact = compile_fn()
            with self._lock:
                self.compiles += 1
            self.put(key, artifact)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(artifact)
            return artifact
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def stats(self) -> CacheStats:
        with self._lock:
            memory_entries = len(self._entries)
            memory_size = sum(artifact.size for artifact in self._entries.values())
            memory_digests = {key.digest for key in self._entries}
        if self.db is None:
            return CacheStats(memory_entries, memory_size)
        count, size = self.db.artifact_stats()
        # write-through keeps the file a superset, except after a failed write
        unpersisted = memory_digests - self.db.artifact_keys()
        if not unpersisted:
            return CacheStats(count, size)
        with self._lock:
            extra = sum(
                artifact.size
                for key, artifact in self._entries.items()
                if key.digest in unpersisted
            )
        return CacheStats(count + len(unpersisted), size + extra)

    def clear(self) -> int:
        """Remove every entry in memory and on disk; return how many distinct entries went."""
        with self._lock:
            removed = {key.digest for key in self._entries}
            self._entries.clear()
            if self.db is not None:
                removed |= self.db.artifact_keys()
                self.db.clear_artifacts()
        logger.debug("cleared %d cache entries", len(removed))
        return len(removed)
