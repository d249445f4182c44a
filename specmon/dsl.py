"""
The describe/it vocabulary spec modules are written in.

Declarations only register themselves with the active ``DiscoveryContext``;
nothing is run at declaration time. Groups are ``with`` blocks, cases are
decorators (or a bare call for a pending case)::

    with describe("Stack"):
        @it("pushes", tags=["fast"])
        def _():
            ...

        it("pops")  # pending
"""
import inspect
from contextvars import ContextVar
from typing import List, Optional

from specmon.common import SpecmonException, get_logger, source_digest
from specmon.tree import SpecContext, SpecDefinition

logger = get_logger(__name__)

_active_context: ContextVar[Optional["DiscoveryContext"]] = ContextVar(
    "specmon_discovery_context", default=None
)


class SpecDeclarationError(SpecmonException):
    pass


class DiscoveryContext:
    """
    Tree-building state of one module's discovery.

    Entering binds it as the target of every DSL call made by the module;
    leaving unbinds it whatever happened in between, so a failed module can
    never leak half-built groups into the next one.
    """

    def __init__(self, source_file=None):
        self.source_file = source_file
        self.warnings: List[str] = []
        self._token = None
        self._reset()

    def _reset(self):
        self.root = SpecContext("")
        self._stack = [self.root]
        self._top_level_group_seen = False

    def __enter__(self):
        if self._token is not None:
            raise SpecDeclarationError("discovery context is already active")
        self._reset()
        self.warnings = []
        self._token = _active_context.set(self)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        _active_context.reset(self._token)
        self._token = None
        del self._stack[1:]
        return False

    @property
    def current(self) -> SpecContext:
        return self._stack[-1]

    def warn(self, message):
        logger.warning("%s: %s", self.source_file or "<spec>", message)
        self.warnings.append(message)

    def open_group(self, group: SpecContext) -> SpecContext:
        if len(self._stack) == 1 and self._top_level_group_seen:
            # built but left detached, so everything declared inside is dropped
            self.warn(
                f"ignoring top-level group {group.description!r} at line {group.line}: "
                "only the first top-level group of a module is used"
            )
            group.parent = self.current
        else:
            if len(self._stack) == 1:
                self._top_level_group_seen = True
            self.current.add_child(group)
        self._stack.append(group)
        return group

    def close_group(self, group: SpecContext):
        if self._stack[-1] is not group:
            raise SpecDeclarationError(f"group {group.description!r} closed out of order")
        self._stack.pop()

    def add_spec(self, spec: SpecDefinition) -> SpecDefinition:
        return self.current.add_spec(spec)


def current_context(declaration="declaration") -> DiscoveryContext:
    context = _active_context.get()
    if context is None:
        raise SpecDeclarationError(
            f"{declaration}() can only be used while specmon discovers a spec module"
        )
    return context


def _caller_line(depth=2) -> Optional[int]:
    frame = inspect.currentframe()
    try:
        for _ in range(depth):
            frame = frame.f_back
        return frame.f_lineno if frame else None
    finally:
        del frame


def _check_description(declaration, description):
    if not isinstance(description, str):
        raise SpecDeclarationError(
            f"{declaration}() expects a string description, got {type(description).__name__}"
        )


class _Group:
    def __init__(self, declaration, description, line, focused=False, skipped=False, tags=None):
        _check_description(declaration, description)
        self.declaration = declaration
        self.group = SpecContext(
            description, line=line, focused=focused, skipped=skipped, tags=list(tags or [])
        )

    def __enter__(self) -> SpecContext:
        return current_context(self.declaration).open_group(self.group)

    def __exit__(self, exc_type, exc_value, traceback):
        context = _active_context.get()
        if context is not None:
            context.close_group(self.group)
        return False


def describe(description, tags=None):
    return _Group("describe", description, _caller_line(), tags=tags)


def context(description, tags=None):
    return _Group("context", description, _caller_line(), tags=tags)


def fdescribe(description, tags=None):
    return _Group("fdescribe", description, _caller_line(), focused=True, tags=tags)


def xdescribe(description, tags=None):
    return _Group("xdescribe", description, _caller_line(), skipped=True, tags=tags)


def _attach_body(spec: SpecDefinition, body):
    if not callable(body):
        raise SpecDeclarationError(f"spec {spec.description!r} must decorate a function")
    spec.body = body
    spec.pending = False
    try:
        lines, first_line = inspect.getsourcelines(body)
    except (OSError, TypeError):
        return body
    spec.end_line = first_line + len(lines) - 1
    spec.digest = source_digest(lines)
    return body


def _declare(declaration, description, line, focused=False, skipped=False, tags=None):
    _check_description(declaration, description)
    spec = current_context(declaration).add_spec(
        SpecDefinition(
            description,
            line=line,
            end_line=line,
            focused=focused,
            skipped=skipped,
            pending=True,
            tags=list(tags or []),
        )
    )

    def decorator(body):
        return _attach_body(spec, body)

    decorator.spec = spec
    return decorator


def it(description, tags=None):
    return _declare("it", description, _caller_line(), tags=tags)


def fit(description, tags=None):
    return _declare("fit", description, _caller_line(), focused=True, tags=tags)


def xit(description, tags=None):
    return _declare("xit", description, _caller_line(), skipped=True, tags=tags)
