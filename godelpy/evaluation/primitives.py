"""
Primitive Operations and Runtime Values
=======================================

Values the meta-circular evaluator manipulates, and the table of primitive
functions visible to evaluated programs. The same primitive table (minus
evaluator-only entries) seeds the namespace of natively compiled units, so
a reflected program runs identically under both executors.

Reflective primitives expose quoted code as data:

    node_kind(code)          -> 'BinaryOp', 'Literal', ...
    node_attr(code, name)    -> attribute value (operator, literal, name)
    node_child(code, i)      -> i-th child as quoted code
    node_children(code)      -> list of children
    analyze_complexity(code) -> dict produced by the static inspector
    apply_operator(op, a, b) -> the operator's meaning on values

``current_code()`` is evaluator-only: it returns the quoted source of the
function currently executing, which is how a program inspects itself.
"""

import operator
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from godelpy.errors import EvaluationError
from godelpy.reflection.inspector import complexity_profile
from godelpy.reflection.nodes import ReifiedProgram


# ═══════════════════════════════════════════════════════════════════════════
# Environment
# ═══════════════════════════════════════════════════════════════════════════

class Environment:
    """
    One scope frame with a parent link.

    Assignment binds in the current frame (Python's local-by-assignment
    rule for the supported subset); lookup walks outwards.
    """

    __slots__ = ('_bindings', 'parent')

    def __init__(self, bindings: Optional[Dict[str, Any]] = None, parent: Optional['Environment'] = None):
        self._bindings: Dict[str, Any] = dict(bindings) if bindings else {}
        self.parent = parent

    def lookup(self, name: str) -> Any:
        env: Optional[Environment] = self
        while env is not None:
            if name in env._bindings:
                return env._bindings[name]
            env = env.parent
        raise EvaluationError(f"Unbound identifier: {name}", {"name": name})

    def define(self, name: str, value: Any) -> None:
        self._bindings[name] = value

    def extend(self, bindings: Dict[str, Any]) -> 'Environment':
        return Environment(bindings, parent=self)

    def __contains__(self, name: str) -> bool:
        env: Optional[Environment] = self
        while env is not None:
            if name in env._bindings:
                return True
            env = env.parent
        return False

    def __len__(self) -> int:
        return len(self._bindings)


# ═══════════════════════════════════════════════════════════════════════════
# Callable values
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class Closure:
    """A user function value: its declaration plus the defining scope."""
    name: str
    params: Tuple[str, ...]
    program: ReifiedProgram
    index: int                    # FUNCTION node in ``program``
    env: Environment = field(repr=False)
    _fingerprint: Optional[str] = field(default=None, repr=False)

    @property
    def body(self) -> int:
        return self.program.children(self.index)[0]

    @property
    def code(self) -> ReifiedProgram:
        return self.program.subtree(self.index)

    @property
    def fingerprint(self) -> str:
        if self._fingerprint is None:
            self._fingerprint = self.code.fingerprint()
        return self._fingerprint

    def __repr__(self) -> str:
        return f"<closure {self.name}/{len(self.params)}>"


@dataclass(frozen=True)
class Primitive:
    """A host-implemented function visible to evaluated programs."""
    name: str
    fn: Callable[..., Any]
    arity: Optional[int] = None       # None: variadic
    pure: bool = True
    needs_context: bool = False

    def __repr__(self) -> str:
        return f"<primitive {self.name}>"


@dataclass(frozen=True)
class TailCall:
    """Returned by a primitive that wants the evaluator to apply a function."""
    callee: Any
    args: Tuple[Any, ...]


class MemoTable:
    """
    Bounded LRU table backing the memoization rewrite.

    Keys are structural argument representations, so two calls with equal
    arguments share an entry even when the values are distinct objects.
    """

    def __init__(self, capacity: int):
        if not isinstance(capacity, int) or capacity <= 0:
            raise EvaluationError(f"memo_table capacity must be a positive int, got {capacity!r}")
        self.capacity = capacity
        self._entries: 'OrderedDict[Hashable, Any]' = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def contains(self, key: Hashable) -> bool:
        if key in self._entries:
            self._entries.move_to_end(key)
            self.hits += 1
            return True
        self.misses += 1
        return False

    def get(self, key: Hashable) -> Any:
        return self._entries[key]

    def put(self, key: Hashable, value: Any) -> Any:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1
        return value

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<memo_table {len(self._entries)}/{self.capacity}>"


# ═══════════════════════════════════════════════════════════════════════════
# Structural keys
# ═══════════════════════════════════════════════════════════════════════════

def structural_key(value: Any) -> Hashable:
    """A hashable representation under which equal values compare equal."""
    if isinstance(value, ReifiedProgram):
        return ('code', value.canonical())
    if isinstance(value, Closure):
        return ('closure', value.fingerprint)
    if isinstance(value, Primitive):
        return ('primitive', value.name)
    if isinstance(value, MemoTable):
        return ('memo_table', id(value))
    if isinstance(value, (list, tuple)):
        return (type(value).__name__, tuple(structural_key(v) for v in value))
    if isinstance(value, dict):
        return ('dict', tuple(sorted((repr(k), structural_key(v)) for k, v in value.items())))
    if callable(value):
        return ('native', getattr(value, '__qualname__', repr(value)))
    return (type(value).__name__, value)


def describe(value: Any) -> str:
    """Short human-readable rendering for traces and reports."""
    if isinstance(value, ReifiedProgram):
        return f"<code {value.kind.value} {value.fingerprint()}>"
    text = repr(value)
    return text if len(text) <= 60 else text[:57] + '...'


# ═══════════════════════════════════════════════════════════════════════════
# Operators
# ═══════════════════════════════════════════════════════════════════════════

_BINARY: Dict[str, Callable[[Any, Any], Any]] = {
    '+': operator.add,
    '-': operator.sub,
    '*': operator.mul,
    '/': operator.truediv,
    '//': operator.floordiv,
    '%': operator.mod,
    '**': operator.pow,
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    'in': lambda a, b: contains_value(b, a),
    'not in': lambda a, b: not contains_value(b, a),
    'and': lambda a, b: a and b,
    'or': lambda a, b: a or b,
}

_UNARY: Dict[str, Callable[[Any], Any]] = {
    'not': operator.not_,
    '-': operator.neg,
    '+': operator.pos,
}


def contains_value(collection: Any, item: Any) -> bool:
    try:
        return item in collection
    except TypeError as exc:
        raise EvaluationError(f"Membership test on {type(collection).__name__}") from exc


MAX_RESULT_SIZE = 1 << 20


def result_size(op: str, left: Any, right: Any) -> int:
    """
    Upper estimate of the size of ``left op right``, taken before computing it.

    Integer results are measured in bits and repeated sequences in elements.
    Operators whose result cannot outgrow their operands report zero.
    """
    if op == '**' and isinstance(left, int) and isinstance(right, int):
        if right <= 0 or abs(left) <= 1:
            return 0
        return right * left.bit_length()
    if op == '*':
        if isinstance(left, int) and isinstance(right, int):
            return left.bit_length() + right.bit_length()
        if isinstance(left, (str, list, tuple)) and isinstance(right, int):
            return len(left) * max(right, 0)
        if isinstance(right, (str, list, tuple)) and isinstance(left, int):
            return len(right) * max(left, 0)
    return 0


def apply_binary(op: str, left: Any, right: Any) -> Any:
    fn = _BINARY.get(op)
    if fn is None:
        raise EvaluationError(f"Unknown binary operator {op!r}")
    size = result_size(op, left, right)
    if size > MAX_RESULT_SIZE:
        raise EvaluationError(
            f"Operator {op!r} result of size ~{size} exceeds limit {MAX_RESULT_SIZE}",
            {"op": op, "size": size},
        )
    try:
        return fn(left, right)
    except ZeroDivisionError as exc:
        raise EvaluationError("Division by zero") from exc
    except TypeError as exc:
        raise EvaluationError(
            f"Operator {op!r} not defined for {type(left).__name__} and {type(right).__name__}"
        ) from exc
    except (OverflowError, ValueError) as exc:
        raise EvaluationError(f"Operator {op!r} failed: {exc}", {"op": op}) from exc


def apply_unary(op: str, operand: Any) -> Any:
    fn = _UNARY.get(op)
    if fn is None:
        raise EvaluationError(f"Unknown unary operator {op!r}")
    try:
        return fn(operand)
    except TypeError as exc:
        raise EvaluationError(f"Operator {op!r} not defined for {type(operand).__name__}") from exc
    except OverflowError as exc:
        raise EvaluationError(f"Operator {op!r} failed: {exc}", {"op": op}) from exc


# ═══════════════════════════════════════════════════════════════════════════
# Primitive implementations
# ═══════════════════════════════════════════════════════════════════════════

def _expect_code(value: Any, who: str) -> ReifiedProgram:
    if not isinstance(value, ReifiedProgram):
        raise EvaluationError(f"{who} expects quoted code, got {type(value).__name__}")
    return value


def node_kind(code: Any) -> str:
    return _expect_code(code, 'node_kind').kind.value


def node_attr(code: Any, name: str) -> Any:
    return _expect_code(code, 'node_attr').attr(name)


def node_child(code: Any, position: int) -> ReifiedProgram:
    code = _expect_code(code, 'node_child')
    children = code.children()
    if not isinstance(position, int) or not 0 <= position < len(children):
        raise EvaluationError(f"node_child index {position!r} out of range for {code.kind.value}")
    return code.child(position)


def node_children(code: Any) -> List[ReifiedProgram]:
    code = _expect_code(code, 'node_children')
    return [code.child(i) for i in range(len(code.children()))]


def node_count(code: Any) -> int:
    return _expect_code(code, 'node_count').count_nodes()


def analyze_complexity(code: Any) -> Dict[str, Any]:
    return complexity_profile(_expect_code(code, 'analyze_complexity'))


def lookup(env: Any, name: str) -> Any:
    if not isinstance(env, dict) or name not in env:
        raise EvaluationError(f"Unbound identifier in data environment: {name}")
    return env[name]


def bind(env: Any, name: str, value: Any) -> Dict[str, Any]:
    extended = dict(env)
    extended[name] = value
    return extended


def get(container: Any, key: Any) -> Any:
    try:
        return container[key]
    except (KeyError, IndexError, TypeError) as exc:
        raise EvaluationError(f"get: no entry {key!r} in {type(container).__name__}") from exc


def contains(collection: Any, item: Any) -> Any:
    """Membership; a callable collection is its own characteristic predicate."""
    if callable(collection):
        return collection(item)
    return contains_value(collection, item)


def _evaluator_contains(collection: Any, item: Any) -> Any:
    if isinstance(collection, (Closure, Primitive)):
        return TailCall(collection, (item,))
    return contains_value(collection, item)


def memo_table(capacity: int) -> MemoTable:
    return MemoTable(capacity)


def memo_key(*args: Any) -> Hashable:
    return structural_key(tuple(args))


def memo_contains(table: MemoTable, key: Hashable) -> bool:
    return table.contains(key)


def memo_get(table: MemoTable, key: Hashable) -> Any:
    return table.get(key)


def memo_put(table: MemoTable, key: Hashable, value: Any) -> Any:
    return table.put(key, value)


def fail(message: str) -> Any:
    raise EvaluationError(str(message))


def _call_primitive(name: str, args: Any) -> Any:
    primitive = PRIMITIVES.get(name)
    if primitive is None or primitive.needs_context:
        raise EvaluationError(f"Unknown primitive {name!r}")
    return _invoke_primitive(primitive, tuple(args))


def _invoke_primitive(primitive: Primitive, args: Tuple[Any, ...]) -> Any:
    if primitive.arity is not None and len(args) != primitive.arity:
        raise EvaluationError(
            f"Arity error: {primitive.name} expects {primitive.arity} arguments, got {len(args)}"
        )
    try:
        return primitive.fn(*args)
    except (TypeError, ValueError, OverflowError, ZeroDivisionError) as exc:
        # Host faults inside a primitive are faults of the evaluated program.
        raise EvaluationError(f"{primitive.name}: {exc}", {"primitive": primitive.name}) from exc


def _length(value: Any) -> int:
    try:
        return len(value)
    except TypeError as exc:
        raise EvaluationError(f"len() of {type(value).__name__}") from exc


_TABLE: List[Primitive] = [
    Primitive('len', _length, 1),
    Primitive('abs', abs, 1),
    Primitive('min', min),
    Primitive('max', max),
    Primitive('get', get, 2),
    Primitive('contains', _evaluator_contains, 2),
    Primitive('node_kind', node_kind, 1),
    Primitive('node_attr', node_attr, 2),
    Primitive('node_child', node_child, 2),
    Primitive('node_children', node_children, 1),
    Primitive('node_count', node_count, 1),
    Primitive('analyze_complexity', analyze_complexity, 1),
    Primitive('apply_operator', apply_binary, 3),
    Primitive('apply_unary', apply_unary, 2),
    Primitive('call_primitive', _call_primitive, 2),
    Primitive('lookup', lookup, 2),
    Primitive('bind', bind, 3),
    Primitive('make_env', dict, 0),
    Primitive('fail', fail, 1, pure=False),
    Primitive('memo_table', memo_table, 1, pure=False),
    Primitive('memo_key', memo_key),
    Primitive('memo_contains', memo_contains, 2, pure=False),
    Primitive('memo_get', memo_get, 2, pure=False),
    Primitive('memo_put', memo_put, 3, pure=False),
    Primitive('current_code', lambda ctx: ctx.current_code(), 0, needs_context=True),
]

PRIMITIVES: Dict[str, Primitive] = {p.name: p for p in _TABLE}

IMPURE_PRIMITIVES = frozenset(p.name for p in _TABLE if not p.pure)

MEMO_PRIMITIVES = frozenset({'memo_table', 'memo_key', 'memo_contains', 'memo_get', 'memo_put'})


def native_namespace() -> Dict[str, Any]:
    """Globals for natively compiled units, mirroring the evaluator's table."""
    namespace: Dict[str, Any] = {
        p.name: p.fn for p in _TABLE if not p.needs_context
    }
    namespace['contains'] = contains
    return namespace
