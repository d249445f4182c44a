"""
Data model shared by both discovery strategies.

A spec module is realized as a tree of ``SpecContext`` nodes holding
``SpecDefinition`` leaves. Executing the module (``specmon.dsl``) and parsing
it statically (``specmon.static_parser``) both produce this tree; it is then
flattened into ``DiscoveredSpec`` records keyed by ``TestCaseIdentity``.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from specmon.common import SpecRecord, get_logger

logger = get_logger(__name__)

DYNAMIC_PLACEHOLDER = "<dynamic at line {line}>"


class TestCaseIdentity(NamedTuple):
    """
    Stable key of a test case: module-relative path, context path and
    description. Must be unique within a module.
    """

    __test__ = False

    relative_path: str
    context_path: Tuple[str, ...]
    description: str

    @property
    def segments(self) -> Tuple[str, ...]:
        return self.context_path + (self.description,)

    @property
    def stable_id(self) -> str:
        # e.g. specs/calculator_spec.py:Calculator/with negatives/subtracts
        return f"{self.relative_path}:{'/'.join(self.segments)}"

    @property
    def display_name(self) -> str:
        return " > ".join(self.segments)

    def __str__(self):
        return self.stable_id


@dataclass
class TestModule:
    __test__ = False

    path: str
    content_hash: str
    mtime: float = None
    dependencies: Tuple[str, ...] = ()


@dataclass
class SpecDefinition:
    description: str
    line: Optional[int] = None
    end_line: Optional[int] = None
    body: Optional[Callable] = field(default=None, repr=False, compare=False)
    focused: bool = False
    skipped: bool = False
    pending: bool = False
    dynamic: bool = False
    tags: List[str] = field(default_factory=list)
    digest: Optional[str] = None  # comment-insensitive hash of the declaration source


@dataclass
class SpecContext:
    description: str
    line: Optional[int] = None
    end_line: Optional[int] = None
    focused: bool = False
    skipped: bool = False
    dynamic: bool = False
    tags: List[str] = field(default_factory=list)
    parent: Optional["SpecContext"] = field(default=None, repr=False, compare=False)
    specs: List[SpecDefinition] = field(default_factory=list)
    children: List["SpecContext"] = field(default_factory=list)

    @property
    def is_root(self):
        return self.parent is None

    def add_child(self, child: "SpecContext") -> "SpecContext":
        child.parent = self
        self.children.append(child)
        return child

    def add_spec(self, spec: SpecDefinition) -> SpecDefinition:
        self.specs.append(spec)
        return spec

    def covers(self, line: int) -> bool:
        if self.line is None:
            return False
        return self.line <= line <= (self.end_line or self.line)

    def walk(self, path: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], "SpecContext"]]:
        """Depth-first walk yielding ``(context_path, context)``; the root has an empty path."""
        stack = [(path, self)]
        while stack:
            current_path, context = stack.pop()
            yield current_path, context
            for child in reversed(context.children):
                stack.append((current_path + (child.description,), child))

    def count(self) -> int:
        return sum(len(context.specs) for _, context in self.walk())


@dataclass
class DiscoveredSpec:
    """A flattened test case, as handed to the runner, the tracker and the CLI."""

    identity: TestCaseIdentity
    source_file: str
    line: Optional[int] = None
    end_line: Optional[int] = None
    tags: Tuple[str, ...] = ()
    focused: bool = False
    skipped: bool = False
    pending: bool = False
    dynamic: bool = False
    digest: Optional[str] = None
    has_compilation_error: bool = False
    diagnostic: Optional[str] = None
    definition: Optional[SpecDefinition] = field(default=None, repr=False, compare=False)

    @property
    def id(self) -> str:
        return self.identity.stable_id

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    @property
    def description(self) -> str:
        return self.identity.description

    @property
    def context_path(self) -> Tuple[str, ...]:
        return self.identity.context_path

    def fingerprint(self) -> "SpecFingerprint":
        return SpecFingerprint(
            description=None if self.dynamic else self.identity.description,
            tags=tuple(sorted(self.tags)),
            focused=self.focused,
            skipped=self.skipped,
            pending=self.pending,
            dynamic=self.dynamic,
            digest=self.digest,
        )

    def to_record(self) -> SpecRecord:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "file": self.identity.relative_path,
            "line": self.line,
            "tags": list(self.tags),
            "focused": self.focused,
            "skipped": self.skipped,
            "pending": self.pending,
            "dynamic": self.dynamic,
            "compilation_error": self.diagnostic if self.has_compilation_error else None,
        }


def flatten_tree(
    root: SpecContext,
    source_file: str,
    relative_path: str,
    diagnostic: Optional[str] = None,
) -> List[DiscoveredSpec]:
    """
    Flatten a realized tree into ``DiscoveredSpec`` records in declaration order.

    Skip/focus flags and tags are inherited from enclosing contexts. A
    ``diagnostic`` marks every record as coming from a module that failed to
    compile.
    """
    results = []

    def visit(context: SpecContext, path, focused, skipped, dynamic, tags):
        for spec in context.specs:
            results.append(
                DiscoveredSpec(
                    identity=TestCaseIdentity(relative_path, path, spec.description),
                    source_file=source_file,
                    line=spec.line,
                    end_line=spec.end_line,
                    tags=tuple(dict.fromkeys(tags + list(spec.tags))),
                    focused=focused or spec.focused,
                    skipped=skipped or spec.skipped,
                    pending=spec.pending,
                    dynamic=dynamic or spec.dynamic,
                    digest=spec.digest,
                    has_compilation_error=diagnostic is not None,
                    diagnostic=diagnostic,
                    definition=spec,
                )
            )
        for child in context.children:
            visit(
                child,
                path + (child.description,),
                focused or child.focused,
                skipped or child.skipped,
                dynamic or child.dynamic,
                tags + list(child.tags),
            )

    visit(root, (), root.focused, root.skipped, root.dynamic, list(root.tags))
    return results


class SpecFingerprint(NamedTuple):
    description: Optional[str]  # None when not statically known
    tags: Tuple[str, ...]
    focused: bool
    skipped: bool
    pending: bool
    dynamic: bool
    digest: Optional[str]


class DiscoverySnapshot:
    """Identity -> fingerprint map of one module, captured after a discovery pass."""

    def __init__(self, fingerprints: Dict[TestCaseIdentity, SpecFingerprint] = None):
        self.fingerprints: Dict[TestCaseIdentity, SpecFingerprint] = dict(fingerprints or {})

    @classmethod
    def from_specs(cls, specs: List[DiscoveredSpec]) -> "DiscoverySnapshot":
        fingerprints = {}
        for spec in specs:
            if spec.identity in fingerprints:
                # ambiguous rerun target; the first declaration keeps the identity
                logger.warning(
                    "Duplicate spec identity %s; reruns by id will be ambiguous",
                    spec.identity.stable_id,
                )
                continue
            fingerprints[spec.identity] = spec.fingerprint()
        return cls(fingerprints)

    @property
    def identities(self):
        return set(self.fingerprints)

    @property
    def has_dynamic(self) -> bool:
        return any(fingerprint.dynamic for fingerprint in self.fingerprints.values())

    def get(self, identity):
        return self.fingerprints.get(identity)

    def __contains__(self, identity):
        return identity in self.fingerprints

    def __len__(self):
        return len(self.fingerprints)

    def __eq__(self, other):
        if not isinstance(other, DiscoverySnapshot):
            return NotImplemented
        return self.fingerprints == other.fingerprints

    def __repr__(self):
        return f"DiscoverySnapshot({len(self)} specs, dynamic={self.has_dynamic})"


@dataclass
class DiscoveryError:
    source_file: str
    relative_source_file: str
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)


@dataclass
class DiscoveryResult:
    specs: List[DiscoveredSpec] = field(default_factory=list)
    errors: List[DiscoveryError] = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors
