import hashlib
import logging
import os
import re
from typing import Dict, List, Optional, TypedDict


class SpecRecord(TypedDict):
    id: str
    display_name: str
    file: str
    line: Optional[int]
    tags: List[str]
    focused: bool
    skipped: bool
    pending: bool
    dynamic: bool
    compilation_error: Optional[str]  # diagnostic when found by the static fallback


ContentHash = str
RelativePath = str

ModuleHashes = Dict[RelativePath, ContentHash]

LOG_LEVEL_ENV = "SPECMON_LOG_LEVEL"


def get_logger(name):
    specmon_logger = logging.getLogger(name)
    if not specmon_logger.handlers:
        formatter = logging.Formatter("%(levelname)s: %(message)s")
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        specmon_logger.addHandler(handler)
    specmon_logger.setLevel(
        logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
    )
    return specmon_logger


logger = get_logger(__name__)


def sha256_bytes(content: bytes) -> ContentHash:
    return hashlib.sha256(content).hexdigest()


def sha256_text(content: str) -> ContentHash:
    return sha256_bytes(content.encode("utf-8"))


def read_source(path):
    """
    Read a module as text and return ``(source, content_hash)``.

    The hash is taken over the raw bytes so that an encoding problem still
    produces a stable key. Returns ``(None, None)`` when the file is gone.
    """
    try:
        with open(path, "rb") as source_file:
            content = source_file.read()
    except FileNotFoundError:
        return None, None
    return content.decode("utf-8", errors="replace"), sha256_bytes(content)


def file_hash(path) -> Optional[ContentHash]:
    try:
        with open(path, "rb") as source_file:
            return sha256_bytes(source_file.read())
    except OSError:
        return None


def normalize_path(path) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


def relative_posix_path(path, rootdir) -> str:
    return os.path.relpath(os.fspath(path), os.fspath(rootdir)).replace(os.sep, "/")


_COMMENT_LINE = re.compile(r"^\s*#")


def strip_comment_lines(text: str) -> str:
    """Drop whole-line comments and blank lines; inline comments are kept."""
    return "\n".join(
        line
        for line in text.splitlines()
        if line.strip() and not _COMMENT_LINE.match(line)
    )


def source_digest(lines: List[str]) -> ContentHash:
    """Digest of a declaration's source text, insensitive to indentation and comments."""
    stripped = strip_comment_lines("\n".join(line.strip() for line in lines))
    return hashlib.sha1(stripped.encode("utf-8")).hexdigest()


class SpecmonException(Exception):
    pass


def set_log_level(level):
    """Apply ``level`` to every specmon logger created so far."""
    level = logging.getLevelName(str(level).upper())
    for name, specmon_logger in list(logging.root.manager.loggerDict.items()):
        if name.split(".")[0] == "specmon" and isinstance(specmon_logger, logging.Logger):
            specmon_logger.setLevel(level)
