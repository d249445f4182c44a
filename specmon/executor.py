"""
In-process compiler/executor for spec modules.

Compilation is pure and may run on any thread. Execution runs the module's
top-level code inside a ``DiscoveryContext`` so its declarations build a tree;
because that touches ``sys.path`` and ``sys.modules`` it is serialized by a
process-wide lock.
"""
import builtins
import linecache
import os
import sys
import threading
import traceback
from contextlib import contextmanager
from typing import Iterable

from specmon.cache import CompiledArtifact
from specmon.common import get_logger, normalize_path
from specmon.dsl import DiscoveryContext
from specmon.tree import SpecContext

logger = get_logger(__name__)

_import_lock = threading.RLock()


def format_compile_error(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        location = f"line {exc.lineno}" if exc.lineno else "unknown line"
        if exc.offset:
            location += f", column {exc.offset}"
        return f"{type(exc).__name__}: {exc.msg} ({location})"
    return f"{type(exc).__name__}: {exc}"


def format_execution_error(exc: BaseException, path) -> str:
    """Last frame of the traceback that belongs to the spec module, plus the error."""
    frames = [frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename == path]
    where = f" (line {frames[-1].lineno})" if frames else ""
    return f"{type(exc).__name__} while executing module{where}: {exc}"


def _module_name(path):
    stem = os.path.splitext(os.path.basename(path))[0]
    return f"specmon_spec.{stem}"


@contextmanager
def isolated_imports(path, dependencies: Iterable[str]):
    """
    Make ``path``'s directory importable and guarantee its local dependencies
    are imported fresh, then drop them again so the next discovery re-reads them.
    """
    directory = os.path.dirname(path)
    tracked = {normalize_path(dependency) for dependency in dependencies}

    def local_modules():
        found = []
        for name, module in list(sys.modules.items()):
            module_file = getattr(module, "__file__", None)
            if module_file and normalize_path(module_file) in tracked:
                found.append(name)
        return found

    with _import_lock:
        for name in local_modules():
            sys.modules.pop(name, None)
        sys.path.insert(0, directory)
        try:
            yield
        finally:
            try:
                sys.path.remove(directory)
            except ValueError:
                pass
            for name in local_modules():
                sys.modules.pop(name, None)


class ModuleExecutor:
    """Default compiler/executor; any object with ``compile`` and ``execute`` can replace it."""

    def compile(self, source: str, path: str) -> CompiledArtifact:
        try:
            code = compile(source, path, "exec", dont_inherit=True)
        except (SyntaxError, ValueError) as exc:
            return CompiledArtifact.failed(format_compile_error(exc))
        return CompiledArtifact.compiled(code)

    def execute(
        self,
        artifact: CompiledArtifact,
        path: str,
        context: DiscoveryContext,
        dependencies: Iterable[str] = (),
    ) -> SpecContext:
        """
        Run the compiled module inside the already-entered ``context`` and
        return the realized tree. Exceptions from module code propagate.
        """
        if not artifact.success:
            raise ValueError(f"cannot execute {path}: {artifact.diagnostic}")
        namespace = {
            "__name__": _module_name(path),
            "__file__": path,
            "__builtins__": builtins,
            "__package__": None,
        }
        # inspect reads spec bodies through linecache
        linecache.checkcache(path)
        with isolated_imports(path, dependencies):
            exec(artifact.code, namespace)
        return context.root
