"""
Hybrid discovery of spec modules.

A module is executed when it compiles and its top-level code runs cleanly;
that gives the ground-truth tree. When either step fails the module's source
is parsed statically instead and every case found is marked with the
compilation diagnostic, so the failure is reported per case rather than
making the module vanish.
"""
import asyncio
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from specmon.cache import CacheKey, CacheStore
from specmon.common import get_logger, normalize_path, read_source, relative_posix_path
from specmon.configure import DEFAULT_SPEC_GLOB
from specmon.dependency_graph import DependencyGraph, scan_project
from specmon.dsl import DiscoveryContext
from specmon.executor import ModuleExecutor, format_execution_error
from specmon.static_parser import StaticSpecParser
from specmon.tree import (
    DiscoveredSpec,
    DiscoveryError,
    DiscoveryResult,
    DiscoverySnapshot,
    SpecContext,
    TestModule,
    flatten_tree,
)

logger = get_logger(__name__)


class DiscoveryState(Enum):
    NOT_STARTED = "not_started"
    COMPILING = "compiling"
    EXECUTED = "executed"
    COMPILE_FAILED = "compile_failed"


@dataclass
class Executed:
    module: TestModule
    relative_path: str
    tree: SpecContext
    specs: List[DiscoveredSpec]
    cache_hit: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def state(self):
        return DiscoveryState.EXECUTED


@dataclass
class StaticFallback:
    module: TestModule
    relative_path: str
    tree: SpecContext
    specs: List[DiscoveredSpec]
    diagnostic: str
    warnings: List[str] = field(default_factory=list)

    @property
    def state(self):
        return DiscoveryState.COMPILE_FAILED


DiscoveryOutcome = Union[Executed, StaticFallback]


class SpecDiscoverer:
    def __init__(
        self,
        rootdir,
        cache: Optional[CacheStore] = None,
        graph: Optional[DependencyGraph] = None,
        executor: Optional[ModuleExecutor] = None,
        parser: Optional[StaticSpecParser] = None,
        spec_glob=DEFAULT_SPEC_GLOB,
        max_workers=4,
    ):
        self.rootdir = normalize_path(rootdir)
        self.cache = cache if cache is not None else CacheStore()
        self.graph = graph if graph is not None else DependencyGraph(self.rootdir)
        self.executor = executor or ModuleExecutor()
        self.parser = parser or StaticSpecParser()
        self.spec_glob = spec_glob
        self.max_workers = max_workers
        self._states: Dict[str, DiscoveryState] = {}
        self._path_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None

    def find_spec_files(self, root=None) -> List[str]:
        return scan_project(root or self.rootdir, self.spec_glob)

    def state(self, path) -> DiscoveryState:
        return self._states.get(normalize_path(path), DiscoveryState.NOT_STARTED)

    def relative_path(self, path) -> str:
        return relative_posix_path(path, self.rootdir)

    def _path_lock(self, path) -> threading.Lock:
        with self._locks_guard:
            return self._path_locks.setdefault(path, threading.Lock())

    def discover_file(self, path) -> DiscoveryOutcome:
        """
        Discover one module. Raises ``FileNotFoundError`` when it does not
        exist; any compile or execution failure yields a ``StaticFallback``.
        """
        path = normalize_path(path)
        with self._path_lock(path):
            self._states[path] = DiscoveryState.COMPILING
            try:
                outcome = self._discover(path)
            except BaseException:
                self._states.pop(path, None)
                raise
            self._states[path] = outcome.state
            return outcome

    def _discover(self, path) -> DiscoveryOutcome:
        source, content_hash = read_source(path)
        if source is None:
            raise FileNotFoundError(path)
        relative_path = self.relative_path(path)

        self.graph.add_spec_module(path)
        self.graph.update_module(path, source)
        dependency_hashes = self.graph.dependency_hashes(path)
        dependencies = tuple(dependency_hashes)
        module = TestModule(path, content_hash, os.path.getmtime(path), tuple(self.graph.direct_dependencies(path)))

        key = CacheKey.create(path, content_hash, dependency_hashes.values())
        compiles_before = self.cache.compiles
        artifact = self.cache.get_or_compile(key, lambda: self.executor.compile(source, path))
        cache_hit = self.cache.compiles == compiles_before

        if artifact.success:
            try:
                with DiscoveryContext(path) as context:
                    tree = self.executor.execute(artifact, path, context, dependencies)
            except (Exception, SystemExit) as exc:
                diagnostic = format_execution_error(exc, path)
                logger.debug("%s raised during discovery: %s", relative_path, diagnostic)
            else:
                specs = flatten_tree(tree, path, relative_path)
                logger.debug("%s: executed, %d specs (cache %s)", relative_path, len(specs), "hit" if cache_hit else "miss")
                return Executed(module, relative_path, tree, specs, cache_hit, list(context.warnings))
        else:
            diagnostic = artifact.diagnostic

        logger.debug("%s: falling back to static parsing: %s", relative_path, diagnostic)
        parsed = self.parser.parse_source(source, path)
        specs = flatten_tree(parsed.root, path, relative_path, diagnostic=diagnostic)
        return StaticFallback(module, relative_path, parsed.root, specs, diagnostic, parsed.warnings)

    def snapshot(self, outcome: DiscoveryOutcome) -> DiscoverySnapshot:
        return DiscoverySnapshot.from_specs(outcome.specs)

    def forget(self, path):
        """Drop the state, lock and graph entries of a module that no longer exists."""
        path = normalize_path(path)
        with self._locks_guard:
            self._path_locks.pop(path, None)
        self._states.pop(path, None)
        self.graph.remove_module(path)

    def _executor_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="specmon-discovery")
        return self._pool

    async def discover_outcome_async(self, path) -> DiscoveryOutcome:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor_pool(), self.discover_file, path)

    async def discover_file_async(self, path) -> List[DiscoveredSpec]:
        outcome = await self.discover_outcome_async(path)
        return outcome.specs

    async def discover_async(self, root=None) -> DiscoveryResult:
        """Discover every spec module below ``root`` in parallel; failures become ``DiscoveryError``s."""
        paths = self.find_spec_files(root)
        outcomes = await asyncio.gather(
            *(self.discover_outcome_async(path) for path in paths), return_exceptions=True
        )
        result = DiscoveryResult()
        for path, outcome in zip(paths, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                result.errors.append(
                    DiscoveryError(path, self.relative_path(path), f"{type(outcome).__name__}: {outcome}", outcome)
                )
                continue
            result.specs.extend(outcome.specs)
        return result

    def close(self):
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
