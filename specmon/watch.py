"""
Watch orchestration: turns debounced file changes into the smallest rerun.

Each iteration rediscovers the modules a change affects, diffs them against
their recorded snapshots and hands the resulting actions to a rerun
executor. A newer batch of changes cancels the iteration in flight; whatever
it had not finished is folded into the next one.
"""
import asyncio
import os
import re
import shlex
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from specmon.change_tracker import SpecChangeSet, SpecChangeTracker
from specmon.common import get_logger, normalize_path
from specmon.discovery import DiscoveryState, SpecDiscoverer
from specmon.tree import DiscoveryError, DiscoveryResult, DiscoverySnapshot

logger = get_logger(__name__)

FULL_RUN_DYNAMIC = "Full run required: dynamic specs detected"
MATCH_NOTHING = "(?!)"


class ChangeEvent(NamedTuple):
    path: str
    is_test_module: bool


class WatchActionType(Enum):
    SKIP = "skip"
    RUN_ALL = "run_all"
    RUN_MODULE = "run_module"
    RUN_FILTERED = "run_filtered"


def build_filter_pattern(names: Iterable[str]) -> str:
    """Anchored alternation of the exact names; an empty list matches nothing."""
    escaped = [re.escape(name) for name in dict.fromkeys(names)]
    if not escaped:
        return MATCH_NOTHING
    return "^(" + "|".join(escaped) + ")$"


@dataclass
class WatchAction:
    type: WatchActionType
    path: Optional[str] = None
    spec_names: List[str] = field(default_factory=list)
    message: str = ""

    @classmethod
    def skip(cls, path, message="No spec changes detected"):
        return cls(WatchActionType.SKIP, path, message=message)

    @classmethod
    def run_all(cls, message):
        return cls(WatchActionType.RUN_ALL, message=message)

    @classmethod
    def run_module(cls, path, message):
        return cls(WatchActionType.RUN_MODULE, path, message=message)

    @classmethod
    def run_filtered(cls, path, spec_names, message):
        return cls(WatchActionType.RUN_FILTERED, path, list(spec_names), message)

    @property
    def filter_pattern(self) -> Optional[str]:
        if self.type is not WatchActionType.RUN_FILTERED:
            return None
        return build_filter_pattern(self.spec_names)


def merge_actions(actions: Iterable[WatchAction]) -> List[WatchAction]:
    """
    Collapse actions into at most one per module. A full run absorbs
    everything; a module rerun absorbs filtered reruns of the same module.
    """
    actions = list(actions)
    for action in actions:
        if action.type is WatchActionType.RUN_ALL:
            return [action]
    merged = {}
    for action in actions:
        if action.type is WatchActionType.SKIP:
            continue
        existing = merged.get(action.path)
        if existing is None or action.type is WatchActionType.RUN_MODULE:
            if existing is None or existing.type is not WatchActionType.RUN_MODULE:
                merged[action.path] = action
        elif existing.type is WatchActionType.RUN_FILTERED:
            merged[action.path] = WatchAction.run_filtered(
                action.path,
                dict.fromkeys(existing.spec_names + action.spec_names),
                action.message,
            )
    return list(merged.values())


class RerunStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass
class RerunOutcome:
    actions: List[WatchAction]
    status: RerunStatus
    detail: str = ""


@dataclass
class ModuleUpdate:
    path: str
    action: WatchAction
    snapshot: Optional[DiscoverySnapshot] = None
    changes: Optional[SpecChangeSet] = None
    state: Optional[DiscoveryState] = None
    # (helper path, mtime) to record once the iteration commits
    dependency: Optional[Tuple[str, float]] = None


RerunExecutor = Callable[[List[WatchAction]], Awaitable[bool]]

# pytest exit code 5: no tests were collected
PASSING_EXIT_CODES = (0, 5)


class PytestRerunner:
    """Reruns the selected specs in a ``python -m pytest`` subprocess."""

    def __init__(self, rootdir, python=None, extra_args=()):
        self.rootdir = rootdir
        self.python = python or sys.executable
        self.extra_args = list(extra_args)

    def command(self, action: WatchAction) -> List[str]:
        command = [self.python, "-m", "pytest"] + self.extra_args
        if action.type is WatchActionType.RUN_ALL:
            return command + [self.rootdir]
        command.append(action.path)
        if action.type is WatchActionType.RUN_FILTERED:
            command += ["--specmon-filter", action.filter_pattern]
        return command

    async def __call__(self, actions: List[WatchAction]) -> bool:
        passed = True
        for action in actions:
            command = self.command(action)
            logger.info("%s: %s", action.message, " ".join(shlex.quote(part) for part in command))
            process = await asyncio.create_subprocess_exec(*command, cwd=self.rootdir)
            try:
                returncode = await process.wait()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.terminate()
                    await process.wait()
                raise
            passed = passed and returncode in PASSING_EXIT_CODES
        return passed


class WatchOrchestrator:
    def __init__(
        self,
        discoverer: SpecDiscoverer,
        tracker: Optional[SpecChangeTracker] = None,
        rerun: Optional[RerunExecutor] = None,
        on_outcome: Optional[Callable[[RerunOutcome], None]] = None,
    ):
        self.discoverer = discoverer
        self.graph = discoverer.graph
        self.tracker = tracker or SpecChangeTracker()
        self.rerun = rerun or PytestRerunner(discoverer.rootdir)
        self.on_outcome = on_outcome
        self.outcomes: List[RerunOutcome] = []
        self._pending_actions: List[WatchAction] = []
        self._pending_events: List[ChangeEvent] = []
        self._states: Dict[str, DiscoveryState] = {}
        self._current: Optional[asyncio.Task] = None

    async def prime(self) -> DiscoveryResult:
        """Discover every spec module once and record the snapshots later changes are diffed against."""
        paths = self.discoverer.find_spec_files()
        outcomes = await asyncio.gather(
            *(self.discoverer.discover_outcome_async(path) for path in paths),
            return_exceptions=True,
        )
        result = DiscoveryResult()
        for path, outcome in zip(paths, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                result.errors.append(
                    DiscoveryError(path, self.discoverer.relative_path(path), str(outcome), outcome)
                )
                continue
            self.tracker.record_state(path, self.discoverer.snapshot(outcome))
            self._states[path] = outcome.state
            for dependency in self.graph.dependencies_of(path):
                if os.path.exists(dependency):
                    self.tracker.record_dependency(dependency, os.path.getmtime(dependency))
            result.specs.extend(outcome.specs)
        logger.info(
            "Watching %d spec modules (%d specs)", len(paths) - len(result.errors), len(result.specs)
        )
        return result

    def _action_for(self, path, changes: SpecChangeSet, previous_state=None, state=None) -> WatchAction:
        relative_path = self.discoverer.relative_path(path)
        if changes.dynamic_specs_detected:
            return WatchAction.run_all(FULL_RUN_DYNAMIC)
        if changes.dependency_changed:
            return WatchAction.run_module(path, f"Dependency changed: rerunning {relative_path}")
        if previous_state is not None and state is not previous_state:
            if state is DiscoveryState.COMPILE_FAILED:
                return WatchAction.run_module(path, f"{relative_path} no longer compiles: rerunning it")
            return WatchAction.run_module(path, f"{relative_path} compiles again: rerunning it")
        if not changes.specs_to_run:
            if changes.removed:
                return WatchAction.skip(path, f"Only removed specs in {relative_path}")
            return WatchAction.skip(path)
        names = [identity.display_name for identity in changes.specs_to_run]
        return WatchAction.run_filtered(path, names, f"Running {len(names)} changed spec(s) in {relative_path}")

    def _forget(self, path):
        self.tracker.forget(path)
        self._states.pop(path, None)
        self.discoverer.forget(path)

    async def _process_module(self, path, dependency_changed, dependency=None) -> ModuleUpdate:
        baseline = self.tracker.recorded(path)
        # an unfinished iteration must leave the diff reference where it was
        self.tracker.record_state(
            path,
            baseline.snapshot if baseline else DiscoverySnapshot(),
            baseline.dependency_changed if baseline else False,
        )
        try:
            outcome = await self.discoverer.discover_outcome_async(path)
        except FileNotFoundError:
            self._forget(path)
            return ModuleUpdate(path, WatchAction.skip(path, "Spec module removed"))
        snapshot = self.discoverer.snapshot(outcome)
        changes = self.tracker.get_changes(path, snapshot, dependency_changed)
        action = self._action_for(path, changes, self._states.get(path), outcome.state)
        return ModuleUpdate(path, action, snapshot, changes, outcome.state, dependency)

    async def process_change(self, event: ChangeEvent) -> List[ModuleUpdate]:
        path = normalize_path(event.path)
        if event.is_test_module or self.graph.is_test_module(path):
            if not os.path.exists(path):
                self._forget(path)
                return [ModuleUpdate(path, WatchAction.skip(path, "Spec module removed"))]
            return [await self._process_module(path, dependency_changed=False)]

        if not self.graph.knows(path):
            relative_path = self.discoverer.relative_path(path)
            return [ModuleUpdate(path, WatchAction.run_all(f"Full run required: {relative_path} changed"))]

        exists = os.path.exists(path)
        mtime = os.path.getmtime(path) if exists else None
        if exists and not self.tracker.has_dependency_changed(path, mtime):
            return [ModuleUpdate(path, WatchAction.skip(path, "Dependency unchanged"))]

        dependents = self.graph.dependents_of(path)
        if exists:
            self.graph.update_module(path)
        else:
            self.graph.remove_module(path)
        # the new mtime is recorded by _record, so a cancelled iteration replays this change
        dependency = (path, mtime) if exists else None
        if not dependents:
            return [ModuleUpdate(path, WatchAction.skip(path, "No spec module depends on it"), dependency=dependency)]
        return list(
            await asyncio.gather(
                *(
                    self._process_module(dependent, dependency_changed=True, dependency=dependency)
                    for dependent in dependents
                )
            )
        )

    def _record(self, updates: List[ModuleUpdate]):
        for update in updates:
            if update.snapshot is not None:
                self.tracker.record_state(update.path, update.snapshot, update.changes.dependency_changed)
                self._states[update.path] = update.state
            if update.dependency is not None:
                self.tracker.record_dependency(*update.dependency)

    def _report(self, outcome: RerunOutcome):
        self.outcomes.append(outcome)
        logger.info("Rerun %s%s", outcome.status.value, f": {outcome.detail}" if outcome.detail else "")
        if self.on_outcome is not None:
            self.on_outcome(outcome)

    async def run_iteration(self, events: Iterable[ChangeEvent]) -> Optional[RerunOutcome]:
        """
        Process one batch of changes and run what they require. Returns None
        when nothing needed to run.
        """
        events = _coalesce(self._pending_events + list(events))
        self._pending_events = []
        updates = []
        try:
            for event in events:
                updates.extend(await self.process_change(event))
        except asyncio.CancelledError:
            self._pending_events = events
            self._report(RerunOutcome(list(self._pending_actions), RerunStatus.CANCELLED, "superseded during discovery"))
            raise

        actions = merge_actions(self._pending_actions + [update.action for update in updates])
        self._pending_actions = []
        for update in updates:
            if update.action.type is WatchActionType.SKIP:
                logger.info("%s", update.action.message)
        if not actions:
            self._record(updates)
            return None

        try:
            passed = await self.rerun(actions)
        except asyncio.CancelledError:
            self._record(updates)
            self._pending_actions = actions
            self._report(RerunOutcome(actions, RerunStatus.CANCELLED, "superseded by a newer change"))
            raise
        except Exception as exc:  # the rerun executor is external; report instead of dying
            self._record(updates)
            logger.error("Rerun failed to start: %s", exc)
            outcome = RerunOutcome(actions, RerunStatus.FAILURE, str(exc))
        else:
            self._record(updates)
            outcome = RerunOutcome(actions, RerunStatus.SUCCESS if passed else RerunStatus.FAILURE)
        self._report(outcome)
        return outcome

    async def _supersede(self):
        task = self._current
        if task is None or task.done():
            return
        logger.info("Newer changes arrived; cancelling the run in flight")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _log_failure(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Watch iteration failed: %r", task.exception())

    async def run(self, queue: "asyncio.Queue[Optional[ChangeEvent]]"):
        """Consume change events until a ``None`` sentinel is queued."""
        stopping = False
        while not stopping:
            event = await queue.get()
            if event is None:
                break
            batch = [event]
            while not queue.empty():
                queued = queue.get_nowait()
                if queued is None:
                    stopping = True
                    break
                batch.append(queued)
            await self._supersede()
            self._current = asyncio.create_task(self.run_iteration(batch))
            self._current.add_done_callback(self._log_failure)
            # let the iteration start before looking for newer events
            await asyncio.sleep(0)
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)


def _coalesce(events: List[ChangeEvent]) -> List[ChangeEvent]:
    merged = {}
    for event in events:
        path = normalize_path(event.path)
        previous = merged.get(path)
        merged[path] = ChangeEvent(path, event.is_test_module or bool(previous and previous.is_test_module))
    return list(merged.values())
