"""
Static structure parser.

Recovers the describe/it tree of a spec module without running it: first by
walking the ``ast`` of the module, and, when the module does not parse, with
an indentation-based scan of its declaration lines. Only declarations are
looked at; case bodies are never evaluated.
"""
import ast
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from specmon.common import SpecmonException, get_logger, read_source, source_digest
from specmon.tree import DYNAMIC_PLACEHOLDER, SpecContext, SpecDefinition

logger = get_logger(__name__)

# name -> (focused, skipped)
GROUP_DECLARATIONS = {
    "describe": (False, False),
    "context": (False, False),
    "fdescribe": (True, False),
    "xdescribe": (False, True),
}
CASE_DECLARATIONS = {
    "it": (False, False),
    "fit": (True, False),
    "xit": (False, True),
}


class NoSpecsAtLineError(SpecmonException):
    def __init__(self, lines):
        self.lines = list(lines)
        super().__init__(
            "No specs found at the specified line numbers: "
            + ", ".join(str(line) for line in self.lines)
        )


@dataclass
class StaticParseResult:
    root: SpecContext
    warnings: List[str] = field(default_factory=list)
    is_complete: bool = True
    used_line_scanner: bool = False

    def count(self):
        return self.root.count()


def _declaration_name(node) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _literal_text(node) -> Optional[str]:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    if isinstance(node, ast.JoinedStr):
        parts = [_literal_text(value) for value in node.values]
        if all(part is not None for part in parts):
            return "".join(parts)
        return None
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Add):
        left, right = _literal_text(node.left), _literal_text(node.right)
        if left is not None and right is not None:
            return left + right
    return None


def _literal_tags(node) -> Optional[List[str]]:
    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        tags = [_literal_text(element) for element in node.elts]
        if all(tag is not None for tag in tags):
            return tags
    if isinstance(node, ast.Constant) and node.value is None:
        return []
    return None


class SpecSyntaxWalker(ast.NodeVisitor):
    def __init__(self, lines: List[str]):
        self.lines = lines
        self.root = SpecContext("")
        self.warnings: List[str] = []
        self.is_complete = True
        self._stack = [self.root]
        self._top_level_group_seen = False

    @property
    def current(self):
        return self._stack[-1]

    def warn(self, message):
        self.warnings.append(message)

    def _call_arguments(self, call: ast.Call, name, line):
        """Description and tags of a declaration call; dynamic parts become placeholders."""
        dynamic = False
        description = _literal_text(call.args[0]) if call.args else None
        if description is None:
            for keyword in call.keywords:
                if keyword.arg == "description":
                    description = _literal_text(keyword.value)
        if description is None:
            dynamic = True
            description = DYNAMIC_PLACEHOLDER.format(line=line)
            self.is_complete = False
            self.warn(f"{name}() at line {line} has a description that is not a string literal")
        tags = []
        for keyword in call.keywords:
            if keyword.arg == "tags":
                literal = _literal_tags(keyword.value)
                if literal is None:
                    self.warn(f"{name}() at line {line} has tags that are not literal strings")
                else:
                    tags = literal
        return description, tags, dynamic

    def _open_group(self, call: ast.Call, name, node):
        focused, skipped = GROUP_DECLARATIONS[name]
        description, tags, dynamic = self._call_arguments(call, name, node.lineno)
        group = SpecContext(
            description,
            line=node.lineno,
            end_line=node.end_lineno,
            focused=focused,
            skipped=skipped,
            dynamic=dynamic,
            tags=tags,
        )
        if len(self._stack) == 1 and self._top_level_group_seen:
            self.warn(
                f"ignoring top-level group {description!r} at line {node.lineno}: "
                "only the first top-level group of a module is used"
            )
            group.parent = self.current
        else:
            if len(self._stack) == 1:
                self._top_level_group_seen = True
            self.current.add_child(group)
        self._stack.append(group)
        return group

    def _add_case(self, call: ast.Call, name, start, end, pending):
        focused, skipped = CASE_DECLARATIONS[name]
        description, tags, dynamic = self._call_arguments(call, name, start)
        digest = None if pending else source_digest(self.lines[start - 1 : end])
        self.current.add_spec(
            SpecDefinition(
                description,
                line=start,
                end_line=end,
                focused=focused,
                skipped=skipped,
                pending=pending,
                dynamic=dynamic,
                tags=tags,
                digest=digest,
            )
        )

    def visit_With(self, node):
        opened = 0
        for item in node.items:
            call = item.context_expr
            if isinstance(call, ast.Call) and _declaration_name(call.func) in GROUP_DECLARATIONS:
                self._open_group(call, _declaration_name(call.func), node)
                opened += 1
        for statement in node.body:
            self.visit(statement)
        for _ in range(opened):
            self._stack.pop()

    visit_AsyncWith = visit_With

    def visit_FunctionDef(self, node):
        for decorator in node.decorator_list:
            if isinstance(decorator, ast.Call) and _declaration_name(decorator.func) in CASE_DECLARATIONS:
                start = min(d.lineno for d in node.decorator_list)
                self._add_case(decorator, _declaration_name(decorator.func), start, node.end_lineno, pending=False)
                return
        # declarations inside ordinary helpers still belong to the tree
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Expr(self, node):
        call = node.value
        if isinstance(call, ast.Call):
            name = _declaration_name(call.func)
            if name in CASE_DECLARATIONS:
                self._add_case(call, name, node.lineno, node.end_lineno, pending=True)
                return
            if name in GROUP_DECLARATIONS:
                self.warn(f"{name}() at line {node.lineno} is not used as a with block and declares nothing")
                return
        self.generic_visit(node)


_SCANNED_DECLARATION = re.compile(
    r"^(?P<indent>[ \t]*)(?P<prefix>(?:async\s+)?with\s+|@)?(?:[A-Za-z_][\w]*\.)*"
    r"(?P<name>describe|context|fdescribe|xdescribe|it|fit|xit)\s*\((?P<args>.*)$"
)
_STRING_ARGUMENT = re.compile(
    r"^\s*(?P<literal>(?P<prefix>[rRuU]?)(?:\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'))\s*(?:[,)]|$)"
)
_TAGS_ARGUMENT = re.compile(r"\btags\s*=\s*(?P<tags>\[[^\]]*\]|\([^)]*\))")
_DEF_LINE = re.compile(r"^[ \t]*(?:async\s+)?def\s")
_DECORATOR_LINE = re.compile(r"^[ \t]*@")


def _indent_width(text):
    return len(text.expandtabs(8))


class LineScanner:
    """
    Fallback for modules with syntax errors: declarations are recognized line
    by line and nested by indentation.
    """

    def __init__(self, lines: List[str]):
        self.lines = lines
        self.root = SpecContext("")
        self.warnings: List[str] = []
        self.is_complete = True
        self._top_level_group_seen = False

    def _arguments(self, name, args, line) -> Tuple[str, List[str], bool]:
        match = _STRING_ARGUMENT.match(args)
        description = None
        if match:
            try:
                description = ast.literal_eval(match.group("literal"))
            except (SyntaxError, ValueError):
                description = None
        dynamic = description is None
        if dynamic:
            description = DYNAMIC_PLACEHOLDER.format(line=line)
            self.is_complete = False
            self.warnings.append(f"{name}() at line {line} has a description that is not a string literal")
        tags = []
        tags_match = _TAGS_ARGUMENT.search(args)
        if tags_match:
            try:
                value = ast.literal_eval(tags_match.group("tags"))
                tags = [str(tag) for tag in value]
            except (SyntaxError, ValueError):
                self.warnings.append(f"{name}() at line {line} has tags that are not literal strings")
        return description, tags, dynamic

    def scan(self):
        # entries: (indent, kind, node); kind is "group" or "case"
        stack = [(-1, "group", self.root)]
        last_code_line = 0
        awaiting_def = None

        def close(entry, end_line):
            _, kind, node = entry
            node.end_line = max(end_line, node.line or end_line)
            if kind == "case" and not node.pending:
                node.digest = source_digest(self.lines[node.line - 1 : node.end_line])

        for number, text in enumerate(self.lines, start=1):
            stripped = text.strip()
            if not stripped or stripped.startswith("#"):
                continue
            indent = _indent_width(text[: len(text) - len(text.lstrip())])

            if awaiting_def is not None and (_DEF_LINE.match(text) or _DECORATOR_LINE.match(text)):
                if _DEF_LINE.match(text):
                    awaiting_def = None
                last_code_line = number
                continue
            awaiting_def = None

            while len(stack) > 1 and indent <= stack[-1][0]:
                close(stack.pop(), last_code_line)
            last_code_line = number

            match = _SCANNED_DECLARATION.match(text)
            if not match:
                continue
            name, prefix = match.group("name"), (match.group("prefix") or "").strip()
            description, tags, dynamic = self._arguments(name, match.group("args"), number)
            parent_kind, parent = stack[-1][1], stack[-1][2]
            if parent_kind == "case":
                continue

            if name in GROUP_DECLARATIONS and prefix.endswith("with"):
                focused, skipped = GROUP_DECLARATIONS[name]
                group = SpecContext(
                    description, line=number, focused=focused, skipped=skipped, dynamic=dynamic, tags=tags
                )
                if parent is self.root and self._top_level_group_seen:
                    self.warnings.append(
                        f"ignoring top-level group {description!r} at line {number}: "
                        "only the first top-level group of a module is used"
                    )
                    group.parent = parent
                else:
                    if parent is self.root:
                        self._top_level_group_seen = True
                    parent.add_child(group)
                stack.append((indent, "group", group))
            elif name in CASE_DECLARATIONS and prefix in ("@", ""):
                focused, skipped = CASE_DECLARATIONS[name]
                spec = parent.add_spec(
                    SpecDefinition(
                        description,
                        line=number,
                        end_line=number,
                        focused=focused,
                        skipped=skipped,
                        pending=prefix != "@",
                        dynamic=dynamic,
                        tags=tags,
                    )
                )
                if prefix == "@":
                    stack.append((indent, "case", spec))
                    awaiting_def = spec

        while len(stack) > 1:
            close(stack.pop(), last_code_line)
        return self.root


class StaticSpecParser:
    def parse_source(self, source: str, path="<spec>") -> StaticParseResult:
        lines = source.splitlines()
        try:
            tree = ast.parse(source, filename=path)
        except SyntaxError as exc:
            logger.debug("%s does not parse (%s), scanning declaration lines", path, exc.msg)
            scanner = LineScanner(lines)
            root = scanner.scan()
            return StaticParseResult(
                root,
                warnings=scanner.warnings,
                is_complete=scanner.is_complete,
                used_line_scanner=True,
            )
        walker = SpecSyntaxWalker(lines)
        walker.visit(tree)
        return StaticParseResult(walker.root, warnings=walker.warnings, is_complete=walker.is_complete)

    def parse_file(self, path) -> StaticParseResult:
        source, _ = read_source(path)
        if source is None:
            return StaticParseResult(SpecContext(""), warnings=[f"{path} does not exist"], is_complete=False)
        return self.parse_source(source, str(path))


def find_specs_at_line(result: StaticParseResult, line: int) -> List[Tuple[Tuple[str, ...], SpecDefinition]]:
    """
    Cases selected by a line number: those whose span covers it, else every
    case of the innermost group covering it, else a case declared one line
    away (the line before wins). Raises ``NoSpecsAtLineError`` when nothing matches.
    """
    cases = []
    innermost = None
    for path, context in result.root.walk():
        if context.covers(line) and (innermost is None or len(path) > len(innermost[0])):
            innermost = (path, context)
        for spec in context.specs:
            cases.append((path, spec))

    covering = [(path, spec) for path, spec in cases if spec.line <= line <= (spec.end_line or spec.line)]
    if covering:
        return covering

    if innermost is not None:
        path, context = innermost
        grouped = [(path + sub, spec) for sub, inner in context.walk() for spec in inner.specs]
        if grouped:
            return grouped

    for candidate in (line - 1, line + 1):
        nearby = [(path, spec) for path, spec in cases if spec.line == candidate]
        if nearby:
            return nearby[:1]
    raise NoSpecsAtLineError([line])
