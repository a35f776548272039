"""Boolean expressions for job and step `if:` conditions.

Expressions are parsed once into a small tagged AST and evaluated lazily
against run state right before a job (or step) is dispatched::

    success() && event.branch == 'main'
    failure() || needs.scan.result == 'failure'
    !cancelled() && contains(event.ref, 'release/')

Supported: string/number/boolean/null literals, dotted references
(`event.kind`, `needs.<job>.result`, `env.NAME`), `!`, `&&`, `||`,
comparisons, parentheses and the functions success(), failure(),
cancelled(), always(), contains(), startsWith(), endsWith().
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .errors import ConditionError
from .model import JobStatus

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})


# ---------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------

@dataclass
class ConditionContext:
    """
    Run state visible to an expression.

    `statuses` holds what success() looks at: the job's dependencies for a
    job condition, the earlier steps for a step condition. failure() also
    sees `upstream`, the statuses of every transitive dependency.
    """
    statuses: Dict[str, JobStatus] = field(default_factory=dict)
    upstream: Dict[str, JobStatus] = field(default_factory=dict)
    optional: Set[str] = field(default_factory=set)
    cancelled: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def success(self) -> bool:
        if self.cancelled:
            return False
        for name, status in self.statuses.items():
            if status is JobStatus.SUCCESS:
                continue
            if status is JobStatus.FAILURE and name in self.optional:
                continue
            return False
        return True

    def failure(self) -> bool:
        seen = {**self.upstream, **self.statuses}
        return any(s is JobStatus.FAILURE for s in seen.values())


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Node:
    def evaluate(self, ctx: ConditionContext) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self, ctx: ConditionContext) -> Any:
        return self.value


@dataclass(frozen=True)
class Ref(Node):
    path: Tuple[str, ...]

    def evaluate(self, ctx: ConditionContext) -> Any:
        cur: Any = ctx.data
        for part in self.path:
            if isinstance(cur, Mapping):
                cur = cur.get(part)
            else:
                return None
        if isinstance(cur, JobStatus):
            return cur.value
        return cur


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, ctx: ConditionContext) -> Any:
        return not _truthy(self.operand.evaluate(ctx))


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: ConditionContext) -> Any:
        return _truthy(self.left.evaluate(ctx)) and _truthy(self.right.evaluate(ctx))


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: ConditionContext) -> Any:
        return _truthy(self.left.evaluate(ctx)) or _truthy(self.right.evaluate(ctx))


@dataclass(frozen=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, ctx: ConditionContext) -> Any:
        a, b = _coerce(self.left.evaluate(ctx), self.right.evaluate(ctx))
        if self.op == "==":
            return a == b
        if self.op == "!=":
            return a != b
        try:
            return _ORDERING[self.op](a, b)
        except TypeError:
            return False


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...] = ()

    def evaluate(self, ctx: ConditionContext) -> Any:
        if self.name == "success":
            return ctx.success()
        if self.name == "failure":
            return ctx.failure()
        if self.name == "cancelled":
            return ctx.cancelled
        if self.name == "always":
            return True
        values = [a.evaluate(ctx) for a in self.args]
        return _FUNCTIONS[self.name](*values)


_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def _truthy(value: Any) -> bool:
    return value not in (None, False, 0, "")


def _coerce(a: Any, b: Any) -> Tuple[Any, Any]:
    # Strings compare case-insensitively; a number against a numeric string compares numerically.
    if isinstance(a, str) and isinstance(b, str):
        return a.lower(), b.lower()
    if isinstance(a, (int, float)) and isinstance(b, str):
        try:
            return a, float(b)
        except ValueError:
            return str(a), b.lower()
    if isinstance(a, str) and isinstance(b, (int, float)):
        b2, a2 = _coerce(b, a)
        return a2, b2
    return a, b


def _equal(a: Any, b: Any) -> bool:
    a, b = _coerce(a, b)
    return a == b


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, str):
        return str(needle).lower() in haystack.lower()
    if isinstance(haystack, (list, tuple, set)):
        return any(_equal(item, needle) for item in haystack)
    return False


def _starts_with(s: Any, prefix: Any) -> bool:
    return isinstance(s, str) and s.lower().startswith(str(prefix).lower())


def _ends_with(s: Any, suffix: Any) -> bool:
    return isinstance(s, str) and s.lower().endswith(str(suffix).lower())


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
}

_ARITY = {"success": 0, "failure": 0, "cancelled": 0, "always": 0,
          "contains": 2, "startsWith": 2, "endsWith": 2}


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ConditionError(text, f"unexpected character {text[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, value: Optional[str] = None) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ConditionError(self.text, "unexpected end of expression")
        if value is not None and tok[1] != value:
            raise ConditionError(self.text, f"expected {value!r}, got {tok[1]!r}")
        self.pos += 1
        return tok

    def accept(self, value: str) -> bool:
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionError(self.text, f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = Or(node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_unary()
        while self.accept("&&"):
            node = And(node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        left = self.parse_primary()
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in ("==", "!=", "<", "<=", ">", ">="):
            self.pos += 1
            return Compare(tok[1], left, self.parse_primary())
        return left

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.take(")")
            return node
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "ident":
            if value == "true":
                return Literal(True)
            if value == "false":
                return Literal(False)
            if value == "null":
                return Literal(None)
            if self.accept("("):
                return self.parse_call(value)
            return self.parse_ref(value)
        raise ConditionError(self.text, f"unexpected token {value!r}")

    def parse_call(self, name: str) -> Node:
        if name not in _ARITY:
            raise ConditionError(self.text, f"unknown function {name}()")
        args: List[Node] = []
        if not self.accept(")"):
            args.append(self.parse_or())
            while self.accept(","):
                args.append(self.parse_or())
            self.take(")")
        if len(args) != _ARITY[name]:
            raise ConditionError(self.text, f"{name}() takes {_ARITY[name]} argument(s), got {len(args)}")
        return Call(name, tuple(args))

    def parse_ref(self, head: str) -> Node:
        path = [head]
        while True:
            if self.accept("."):
                kind, value = self.take()
                if kind != "ident":
                    raise ConditionError(self.text, f"expected a name after '.', got {value!r}")
                path.append(value)
            elif self.accept("["):
                kind, value = self.take()
                if kind != "string":
                    raise ConditionError(self.text, "index must be a quoted string")
                path.append(value[1:-1].replace("''", "'"))
                self.take("]")
            else:
                return Ref(tuple(path))


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    source: str
    root: Node

    @property
    def uses_status_function(self) -> bool:
        return _has_status_call(self.root)

    def evaluate(self, ctx: ConditionContext) -> bool:
        """
        Evaluate against `ctx`. Without an explicit status function the
        expression is implicitly `success() && (<expr>)`.
        """
        if not self.uses_status_function and not ctx.success():
            return False
        return _truthy(self.root.evaluate(ctx))


def _has_status_call(node: Node) -> bool:
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(_has_status_call(a) for a in node.args)
    if isinstance(node, Not):
        return _has_status_call(node.operand)
    if isinstance(node, (And, Or, Compare)):
        return _has_status_call(node.left) or _has_status_call(node.right)
    return False


def _strip_template(text: str) -> str:
    text = text.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


@lru_cache(maxsize=256)
def parse_condition(text: str) -> Condition:
    """Parse an `if:` expression. Raises ConditionError on bad syntax."""
    src = _strip_template(text)
    if not src:
        raise ConditionError(text, "empty expression")
    return Condition(source=src, root=_Parser(src).parse())


DEFAULT_CONDITION = parse_condition("success()")


def evaluate(text: Optional[str], ctx: ConditionContext) -> bool:
    cond = parse_condition(text) if text else DEFAULT_CONDITION
    return cond.evaluate(ctx)
