import ast
import fnmatch
import os
import re
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from specmon.common import file_hash, get_logger, normalize_path, read_source

logger = get_logger(__name__)

IGNORED_DIRS = {"venv", ".venv", "__pycache__", "build", "dist", "node_modules", "site-packages"}

# (level, module, imported names); level counts leading dots of a relative import
ImportTarget = Tuple[int, str, List[str]]

_IMPORT_LINE = re.compile(r"^\s*import\s+(?P<modules>[\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)")
_FROM_LINE = re.compile(r"^\s*from\s+(?P<dots>\.*)(?P<module>[\w.]*)\s+import\s+(?P<names>.*)$")


def scan_project(root_dir, spec_glob="*_spec.py") -> List[str]:
    """Every spec module below ``root_dir``, sorted, as absolute paths."""
    found = []
    for root, dirs, files in os.walk(root_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in IGNORED_DIRS)
        for file in sorted(files):
            if fnmatch.fnmatch(file, spec_glob):
                found.append(normalize_path(os.path.join(root, file)))
    return found


def _import_names(text: str) -> List[str]:
    text = text.split("#", 1)[0].strip().strip("()\\").strip()
    names = []
    for part in text.split(","):
        name = part.strip().strip("()").split(" as ")[0].strip()
        if name:
            names.append(name)
    return names


def _scan_import_lines(source: str) -> List[ImportTarget]:
    """Line-based import scan for modules that do not parse."""
    targets = []
    for line in source.splitlines():
        match = _FROM_LINE.match(line)
        if match:
            targets.append(
                (len(match.group("dots")), match.group("module"), _import_names(match.group("names")))
            )
            continue
        match = _IMPORT_LINE.match(line)
        if match:
            for name in _import_names(match.group("modules")):
                targets.append((0, name, []))
    return targets


def extract_import_targets(source: str) -> List[ImportTarget]:
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return _scan_import_lines(source)

    nodes = [node for node in ast.walk(tree) if isinstance(node, (ast.Import, ast.ImportFrom))]
    nodes.sort(key=lambda node: (node.lineno, node.col_offset))
    targets = []
    for node in nodes:
        if isinstance(node, ast.Import):
            for alias in node.names:
                targets.append((0, alias.name, []))
        else:
            targets.append((node.level, node.module or "", [alias.name for alias in node.names]))
    return targets


def _module_file(base, parts) -> Optional[str]:
    candidate = os.path.join(base, *parts)
    if os.path.isfile(candidate + ".py"):
        return candidate + ".py"
    init = os.path.join(candidate, "__init__.py")
    if os.path.isfile(init):
        return init
    return None


def _resolve(directory, level, module, names) -> List[str]:
    base = directory
    for _ in range(max(level - 1, 0)):
        base = os.path.dirname(base)

    parts = module.split(".") if module else []
    resolved = []
    # packages on the way are executed on import too
    for depth in range(1, len(parts)):
        init = os.path.join(base, *parts[:depth], "__init__.py")
        if os.path.isfile(init):
            resolved.append(init)
    if parts:
        target = _module_file(base, parts)
        if target:
            resolved.append(target)
        elif level == 0:
            return []
    for name in names:
        if name == "*":
            continue
        submodule = _module_file(base, parts + [name])
        if submodule:
            resolved.append(submodule)
    return resolved


def extract_dependencies(source: str, module_path) -> List[str]:
    """
    Direct dependencies of a module: the local files its imports resolve to,
    relative to the module's directory, in first-occurrence order.
    """
    module_path = normalize_path(module_path)
    directory = os.path.dirname(module_path)
    dependencies = []
    seen = {module_path}
    for level, module, names in extract_import_targets(source):
        for path in _resolve(directory, level, module, names):
            path = normalize_path(path)
            if path not in seen:
                seen.add(path)
                dependencies.append(path)
    return dependencies


class DependencyGraph:
    """
    Forward edges (module -> direct local imports) for spec modules and the
    helpers they reach, plus a reverse index used to find the spec modules
    affected by a helper change.
    """

    def __init__(self, rootdir):
        self.rootdir = normalize_path(rootdir)
        self._direct: Dict[str, List[str]] = {}
        self._reverse: Dict[str, Set[str]] = defaultdict(set)
        self._spec_modules: Set[str] = set()
        self._lock = threading.RLock()

    @classmethod
    def build(cls, rootdir, spec_files) -> "DependencyGraph":
        graph = cls(rootdir)
        for path in spec_files:
            graph.add_spec_module(path)
        return graph

    def add_spec_module(self, path) -> List[str]:
        path = normalize_path(path)
        with self._lock:
            self._spec_modules.add(path)
            return self.dependencies_of(path)

    def is_test_module(self, path) -> bool:
        return normalize_path(path) in self._spec_modules

    @property
    def spec_modules(self) -> List[str]:
        return sorted(self._spec_modules)

    def knows(self, path) -> bool:
        path = normalize_path(path)
        with self._lock:
            return path in self._spec_modules or path in self._direct

    def _set_edges(self, path, dependencies):
        for old in self._direct.get(path, ()):
            self._reverse[old].discard(path)
        self._direct[path] = dependencies
        for dependency in dependencies:
            self._reverse[dependency].add(path)

    def _edges(self, path) -> List[str]:
        if path not in self._direct:
            source, _ = read_source(path)
            try:
                dependencies = extract_dependencies(source, path) if source is not None else []
            except Exception as exc:  # extraction must never stop discovery
                logger.warning("Could not extract imports of %s: %s", path, exc)
                dependencies = []
            self._set_edges(path, dependencies)
        return self._direct[path]

    def update_module(self, path, source=None) -> List[str]:
        """Re-read a changed module's imports; returns its new direct dependencies."""
        path = normalize_path(path)
        with self._lock:
            if source is None:
                source, _ = read_source(path)
            if source is None:
                self.remove_module(path)
                return []
            self._set_edges(path, extract_dependencies(source, path))
            return list(self._direct[path])

    def remove_module(self, path):
        path = normalize_path(path)
        with self._lock:
            for dependency in self._direct.pop(path, ()):
                self._reverse[dependency].discard(path)
            self._spec_modules.discard(path)

    def direct_dependencies(self, path) -> List[str]:
        with self._lock:
            return list(self._edges(normalize_path(path)))

    def dependencies_of(self, path) -> List[str]:
        """Transitive dependencies, depth-first in first-occurrence order; cycles are cut."""
        path = normalize_path(path)
        result = []
        with self._lock:
            visited = {path}
            stack = list(reversed(self._edges(path)))
            while stack:
                current = stack.pop()
                if current in visited:
                    continue
                visited.add(current)
                result.append(current)
                stack.extend(reversed(self._edges(current)))
        return result

    def dependency_hashes(self, path) -> Dict[str, str]:
        return {dependency: file_hash(dependency) for dependency in self.dependencies_of(path)}

    def dependents_of(self, path) -> List[str]:
        """Spec modules that import ``path`` directly or transitively."""
        path = normalize_path(path)
        dependents = set()
        with self._lock:
            visited = {path}
            stack = [path]
            while stack:
                current = stack.pop()
                for importer in self._reverse.get(current, ()):
                    if importer in visited:
                        continue
                    visited.add(importer)
                    stack.append(importer)
                    if importer in self._spec_modules:
                        dependents.add(importer)
        return sorted(dependents)

    def edges(self):
        with self._lock:
            return [(module, dependency) for module, deps in self._direct.items() for dependency in deps]
