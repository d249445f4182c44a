"""
sqlite backing store for compiled spec modules (the ``.specmondata`` file).
"""
import os
import sqlite3
import threading
from typing import NamedTuple, Optional

from specmon.common import get_logger

logger = get_logger(__name__)

DATA_VERSION = 2


class ArtifactRow(NamedTuple):
    success: bool
    payload: Optional[bytes]
    diagnostic: Optional[str]
    size: int


class DB:
    def __init__(self, datafile, readonly=False):
        self._lock = threading.RLock()
        self.datafile = datafile
        self.file_created = not os.path.exists(datafile)
        self.con = sqlite3.connect(datafile, timeout=60, check_same_thread=False)
        self.con.execute("PRAGMA synchronous = OFF")
        if self._fetch_version() != DATA_VERSION:
            self._init_tables()
        if readonly:
            self.con.execute("PRAGMA query_only = ON")

    def __enter__(self):
        self._lock.acquire()
        self.con.__enter__()
        return self

    def __exit__(self, *exc_info):
        try:
            return self.con.__exit__(*exc_info)
        finally:
            self._lock.release()

    def _fetch_version(self):
        try:
            row = self.con.execute(
                "SELECT data FROM metadata WHERE dataid = 'data_version'"
            ).fetchone()
        except sqlite3.OperationalError:
            return None
        return int(row[0]) if row else None

    def _init_tables(self):
        if not self.file_created:
            logger.info("Recreating %s: stored data version is out of date", self.datafile)
        with self.con:
            self.con.executescript(
                """
                DROP TABLE IF EXISTS metadata;
                DROP TABLE IF EXISTS artifact;

                CREATE TABLE metadata (dataid TEXT PRIMARY KEY, data TEXT);

                CREATE TABLE artifact (
                    key TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    payload BLOB,
                    diagnostic TEXT,
                    size INTEGER NOT NULL
                );
                CREATE INDEX artifact_path ON artifact (path);
                """
            )
            self.con.execute(
                "INSERT INTO metadata VALUES ('data_version', ?)", (str(DATA_VERSION),)
            )

    def fetch_artifact(self, key: str) -> Optional[ArtifactRow]:
        with self._lock:
            row = self.con.execute(
                "SELECT success, payload, diagnostic, size FROM artifact WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return ArtifactRow(bool(row[0]), row[1], row[2], row[3])

    def insert_artifact(self, key, path, success, payload, diagnostic, size):
        """Store an artifact, replacing stale entries compiled for the same path."""
        with self:
            self.con.execute("DELETE FROM artifact WHERE path = ? AND key != ?", (path, key))
            self.con.execute(
                "INSERT OR REPLACE INTO artifact VALUES (?, ?, ?, ?, ?, ?)",
                (key, path, int(success), payload, diagnostic, size),
            )

    def delete_artifact(self, key):
        with self:
            self.con.execute("DELETE FROM artifact WHERE key = ?", (key,))

    def artifact_keys(self):
        with self._lock:
            return {row[0] for row in self.con.execute("SELECT key FROM artifact")}

    def artifact_stats(self):
        with self._lock:
            count, size = self.con.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM artifact"
            ).fetchone()
        return count, size

    def clear_artifacts(self) -> int:
        with self:
            return self.con.execute("DELETE FROM artifact").rowcount

    def close(self):
        with self._lock:
            self.con.close()
