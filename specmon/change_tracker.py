import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from specmon.common import get_logger, normalize_path
from specmon.tree import DiscoverySnapshot, TestCaseIdentity

logger = get_logger(__name__)


class SpecChangeType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class SpecChange(NamedTuple):
    identity: TestCaseIdentity
    change_type: SpecChangeType


@dataclass
class SpecChangeSet:
    path: str
    added: List[TestCaseIdentity] = field(default_factory=list)
    modified: List[TestCaseIdentity] = field(default_factory=list)
    removed: List[TestCaseIdentity] = field(default_factory=list)
    dynamic_specs_detected: bool = False
    dependency_changed: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(
            self.added or self.modified or self.removed or self.dynamic_specs_detected or self.dependency_changed
        )

    @property
    def requires_full_run(self) -> bool:
        return self.dynamic_specs_detected

    @property
    def specs_to_run(self) -> List[TestCaseIdentity]:
        return self.added + self.modified

    @property
    def changes(self) -> List[SpecChange]:
        return (
            [SpecChange(identity, SpecChangeType.ADDED) for identity in self.added]
            + [SpecChange(identity, SpecChangeType.MODIFIED) for identity in self.modified]
            + [SpecChange(identity, SpecChangeType.REMOVED) for identity in self.removed]
        )


class RecordedState(NamedTuple):
    snapshot: DiscoverySnapshot
    dependency_changed: bool
    recorded_at: float


def _ordered(identities):
    return sorted(identities, key=lambda identity: (identity.context_path, identity.description))


def diff_snapshots(path, old: Optional[DiscoverySnapshot], new: DiscoverySnapshot, dependency_changed=False) -> SpecChangeSet:
    """
    Classify the cases of ``new`` against ``old``. Either side containing a
    dynamic placeholder makes identities untrustworthy: only the flag is set.
    """
    if (old is not None and old.has_dynamic) or new.has_dynamic:
        return SpecChangeSet(path, dynamic_specs_detected=True, dependency_changed=dependency_changed)
    if old is None:
        return SpecChangeSet(path, added=_ordered(new.identities), dependency_changed=dependency_changed)

    old_ids, new_ids = old.identities, new.identities
    return SpecChangeSet(
        path,
        added=_ordered(new_ids - old_ids),
        removed=_ordered(old_ids - new_ids),
        modified=_ordered(i for i in old_ids & new_ids if old.get(i) != new.get(i)),
        dependency_changed=dependency_changed,
    )


class SpecChangeTracker:
    """Last recorded discovery snapshot per module, plus dependency timestamps."""

    def __init__(self):
        self._states: Dict[str, RecordedState] = {}
        self._dependency_times: Dict[str, float] = {}
        self._lock = threading.Lock()

    def record_state(self, path, snapshot: DiscoverySnapshot, dependency_changed=False):
        with self._lock:
            self._states[normalize_path(path)] = RecordedState(snapshot, dependency_changed, time.time())

    def recorded(self, path) -> Optional[RecordedState]:
        with self._lock:
            return self._states.get(normalize_path(path))

    def has_state(self, path) -> bool:
        return self.recorded(path) is not None

    def get_changes(self, path, new_snapshot: DiscoverySnapshot, dependency_changed=False) -> SpecChangeSet:
        state = self.recorded(path)
        changes = diff_snapshots(
            normalize_path(path), state.snapshot if state else None, new_snapshot, dependency_changed
        )
        logger.debug(
            "%s: +%d ~%d -%d%s",
            path,
            len(changes.added),
            len(changes.modified),
            len(changes.removed),
            " (dynamic)" if changes.dynamic_specs_detected else "",
        )
        return changes

    def forget(self, path):
        with self._lock:
            self._states.pop(normalize_path(path), None)

    def clear(self):
        with self._lock:
            self._states.clear()
            self._dependency_times.clear()

    def record_dependency(self, path, mtime: float):
        with self._lock:
            self._dependency_times[normalize_path(path)] = mtime

    def has_dependency_changed(self, path, mtime: float) -> bool:
        """True for an unknown dependency or one whose timestamp moved."""
        with self._lock:
            recorded = self._dependency_times.get(normalize_path(path))
        return recorded is None or recorded != mtime
