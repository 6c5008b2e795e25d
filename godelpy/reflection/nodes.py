"""
Reified Program Representation
==============================

A reified program is code turned into an ordinary immutable value. It is
stored as an *arena*: a flat tuple of ``Node`` records addressed by index,
plus the index of the root. Nodes refer to their children by index, never
by object reference, so a program is cheap to share, to hash, and to
re-root at any sub-node (``subtree``), and a quoted program can be passed
around by the evaluator like any other value.

Normal form:
    Two programs are equal when their ``canonical()`` forms are equal. The
    canonical form is a nested tuple that ignores arena layout, so a program
    rebuilt in a different node order is still the same program. Literal
    values are tagged with their Python type so that ``1``, ``1.0`` and
    ``True`` stay distinct.

Node kinds form a closed set (``NodeKind``). Consumers dispatch on the kind
and treat an unknown kind as a bug, never as something to skip.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple


class NodeKind(Enum):
    """Closed set of reified node kinds."""
    PROGRAM = "Program"
    FUNCTION = "Function"
    BLOCK = "Block"
    LET = "Let"
    RETURN = "Return"
    IF = "If"
    WHILE = "While"
    PASS = "Pass"
    EXPR_STMT = "ExprStmt"
    LITERAL = "Literal"
    IDENTIFIER = "Identifier"
    CALL = "Call"
    BINARY_OP = "BinaryOp"
    UNARY_OP = "UnaryOp"
    CONDITIONAL = "Conditional"
    SEQUENCE = "Sequence"
    INDEX = "Index"
    QUOTE = "Quote"


STATEMENT_KINDS: FrozenSet[NodeKind] = frozenset({
    NodeKind.FUNCTION, NodeKind.LET, NodeKind.RETURN, NodeKind.IF,
    NodeKind.WHILE, NodeKind.PASS, NodeKind.EXPR_STMT,
})

EXPRESSION_KINDS: FrozenSet[NodeKind] = frozenset({
    NodeKind.LITERAL, NodeKind.IDENTIFIER, NodeKind.CALL, NodeKind.BINARY_OP,
    NodeKind.UNARY_OP, NodeKind.CONDITIONAL, NodeKind.SEQUENCE, NodeKind.INDEX,
    NodeKind.QUOTE,
})

BINARY_OPERATORS: FrozenSet[str] = frozenset({
    '+', '-', '*', '/', '//', '%', '**',
    '==', '!=', '<', '<=', '>', '>=', 'in', 'not in',
    'and', 'or',
})

COMPARISON_OPERATORS: FrozenSet[str] = frozenset({'==', '!=', '<', '<=', '>', '>='})

UNARY_OPERATORS: FrozenSet[str] = frozenset({'not', '-', '+'})


@dataclass(frozen=True)
class Node:
    """One arena slot: a kind, sorted attribute pairs and child indices."""
    kind: NodeKind
    attrs: Tuple[Tuple[str, Any], ...] = ()
    children: Tuple[int, ...] = ()

    def attr(self, name: str, default: Any = None) -> Any:
        for key, value in self.attrs:
            if key == name:
                return value
        return default


def _canonical_attr(value: Any) -> Any:
    if isinstance(value, tuple):
        return ('tuple', tuple(_canonical_attr(v) for v in value))
    return (type(value).__name__, value)


class ReifiedProgram:
    """
    Immutable arena of reified nodes.

    Usage:
        >>> b = ProgramBuilder()
        >>> one = b.add(NodeKind.LITERAL, value=1)
        >>> expr = b.add(NodeKind.BINARY_OP, (one, one), op='+')
        >>> program = b.build(expr)
        >>> program.kind
        <NodeKind.BINARY_OP: 'BinaryOp'>
    """

    __slots__ = ('_nodes', '_root', '_canonical', '_hash')

    def __init__(self, nodes: Sequence[Node], root: int):
        if not 0 <= root < len(nodes):
            raise ValueError(f"root index {root} outside arena of {len(nodes)} nodes")
        self._nodes: Tuple[Node, ...] = tuple(nodes)
        self._root = root
        self._canonical: Optional[tuple] = None
        self._hash: Optional[int] = None

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def root(self) -> int:
        return self._root

    @property
    def kind(self) -> NodeKind:
        return self._nodes[self._root].kind

    def node(self, index: Optional[int] = None) -> Node:
        return self._nodes[self._root if index is None else index]

    def attr(self, name: str, default: Any = None) -> Any:
        return self._nodes[self._root].attr(name, default)

    def children(self, index: Optional[int] = None) -> Tuple[int, ...]:
        return self.node(index).children

    def child(self, position: int) -> 'ReifiedProgram':
        """The root's child at ``position`` as its own program."""
        return self.subtree(self.node().children[position])

    def subtree(self, index: int) -> 'ReifiedProgram':
        """Re-root the program at ``index``, dropping unreachable nodes."""
        if index == self._root and len(self._nodes) == self.count_nodes():
            return self
        builder = ProgramBuilder()
        new_root = builder.copy_from(self, index)
        return builder.build(new_root)

    # ── Traversal ────────────────────────────────────────────────

    def walk(self, index: Optional[int] = None) -> Iterator[int]:
        """Pre-order traversal of node indices reachable from ``index``."""
        stack = [self._root if index is None else index]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(self._nodes[current].children))

    def find(self, kind: NodeKind, index: Optional[int] = None) -> List[int]:
        return [i for i in self.walk(index) if self._nodes[i].kind is kind]

    def count_nodes(self, index: Optional[int] = None) -> int:
        return sum(1 for _ in self.walk(index))

    def depth(self, index: Optional[int] = None) -> int:
        start = self._root if index is None else index
        best = 0
        stack = [(start, 1)]
        while stack:
            current, level = stack.pop()
            best = max(best, level)
            for child in self._nodes[current].children:
                stack.append((child, level + 1))
        return best

    def functions(self) -> Dict[str, int]:
        """Top-level function declarations by name."""
        root = self.node()
        if root.kind is NodeKind.FUNCTION:
            return {root.attr('name'): self._root}
        if root.kind is not NodeKind.PROGRAM:
            return {}
        return {
            self._nodes[i].attr('name'): i
            for i in root.children
            if self._nodes[i].kind is NodeKind.FUNCTION
        }

    def function(self, name: str) -> Optional[int]:
        return self.functions().get(name)

    # ── Normal form ──────────────────────────────────────────────

    def canonical(self, index: Optional[int] = None) -> tuple:
        if index is None:
            if self._canonical is None:
                self._canonical = self._canonical_at(self._root)
            return self._canonical
        return self._canonical_at(index)

    def _canonical_at(self, index: int) -> tuple:
        node = self._nodes[index]
        return (
            node.kind.value,
            tuple((k, _canonical_attr(v)) for k, v in node.attrs),
            tuple(self._canonical_at(c) for c in node.children),
        )

    def fingerprint(self) -> str:
        return hashlib.sha256(repr(self.canonical()).encode('utf-8')).hexdigest()[:16]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReifiedProgram):
            return NotImplemented
        return self.canonical() == other.canonical()

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(self.canonical())
        return self._hash

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"ReifiedProgram({self.kind.value}, nodes={len(self._nodes)}, id={self.fingerprint()})"


class ProgramBuilder:
    """Append-only arena builder; ``build`` freezes it into a program."""

    def __init__(self):
        self._nodes: List[Node] = []

    def add(self, kind: NodeKind, children: Sequence[int] = (), **attrs: Any) -> int:
        return self.append(Node(kind=kind, attrs=tuple(sorted(attrs.items())), children=tuple(children)))

    def append(self, node: Node) -> int:
        self._nodes.append(node)
        return len(self._nodes) - 1

    def node(self, index: int) -> Node:
        return self._nodes[index]

    def copy_from(self, program: ReifiedProgram, index: Optional[int] = None) -> int:
        """Deep-copy a subtree of another program into this arena."""
        source = program.node(index)
        children = [self.copy_from(program, c) for c in source.children]
        return self.append(Node(kind=source.kind, attrs=source.attrs, children=tuple(children)))

    def build(self, root: int) -> ReifiedProgram:
        return ReifiedProgram(self._nodes, root)


# ═══════════════════════════════════════════════════════════════════════════
# Construction helpers
# ═══════════════════════════════════════════════════════════════════════════

def literal(value: Any) -> ReifiedProgram:
    b = ProgramBuilder()
    return b.build(b.add(NodeKind.LITERAL, value=value))


def identifier(name: str) -> ReifiedProgram:
    b = ProgramBuilder()
    return b.build(b.add(NodeKind.IDENTIFIER, name=name))


def compose(kind: NodeKind, parts: Sequence[ReifiedProgram], **attrs: Any) -> ReifiedProgram:
    """Build a node of ``kind`` whose children are copies of ``parts``."""
    b = ProgramBuilder()
    children = [b.copy_from(p) for p in parts]
    return b.build(b.add(kind, children, **attrs))


def binary(op: str, left: ReifiedProgram, right: ReifiedProgram) -> ReifiedProgram:
    return compose(NodeKind.BINARY_OP, (left, right), op=op)


def unary(op: str, operand: ReifiedProgram) -> ReifiedProgram:
    return compose(NodeKind.UNARY_OP, (operand,), op=op)


def call(name: str, *args: ReifiedProgram) -> ReifiedProgram:
    return compose(NodeKind.CALL, (identifier(name),) + tuple(args))


def conditional(test: ReifiedProgram, then: ReifiedProgram, orelse: ReifiedProgram) -> ReifiedProgram:
    return compose(NodeKind.CONDITIONAL, (test, then, orelse))


RewriteFn = Callable[[ReifiedProgram, int, List[int], ProgramBuilder], Optional[int]]


def rewrite(program: ReifiedProgram, fn: RewriteFn, index: Optional[int] = None) -> ReifiedProgram:
    """
    Rebuild ``program`` bottom-up.

    ``fn(program, old_index, new_child_ids, builder)`` is called for every
    node after its children have been rebuilt. It may return the index of a
    replacement node it added to ``builder``; returning ``None`` keeps the
    node as is (with its rebuilt children).
    """
    builder = ProgramBuilder()

    def visit(i: int) -> int:
        node = program.node(i)
        new_children = [visit(c) for c in node.children]
        replaced = fn(program, i, new_children, builder)
        if replaced is not None:
            return replaced
        return builder.append(Node(kind=node.kind, attrs=node.attrs, children=tuple(new_children)))

    return builder.build(visit(program.root if index is None else index))


def substitute(program: ReifiedProgram, bindings: Dict[str, ReifiedProgram]) -> ReifiedProgram:
    """Replace free identifiers of an expression by the given programs."""
    if not bindings:
        return program

    def replace(prog, i, children, builder):
        node = prog.node(i)
        if node.kind is NodeKind.IDENTIFIER and node.attr('name') in bindings:
            return builder.copy_from(bindings[node.attr('name')])
        if node.kind is NodeKind.QUOTE:
            # Quoted code is data; its identifiers are not free variables.
            return builder.copy_from(prog, i)
        return None

    return rewrite(program, replace)


def free_identifiers(program: ReifiedProgram, index: Optional[int] = None) -> List[str]:
    """Identifier names read by an expression, in first-occurrence order."""
    seen: List[str] = []
    stack = [program.root if index is None else index]
    while stack:
        i = stack.pop()
        node = program.node(i)
        if node.kind is NodeKind.QUOTE:
            continue
        if node.kind is NodeKind.IDENTIFIER and node.attr('name') not in seen:
            seen.append(node.attr('name'))
        stack.extend(reversed(node.children))
    return seen


def call_target(program: ReifiedProgram, index: int) -> Optional[str]:
    """Name of a directly-called function, or None for computed callees."""
    node = program.node(index)
    if node.kind is not NodeKind.CALL:
        return None
    callee = program.node(node.children[0])
    if callee.kind is NodeKind.IDENTIFIER:
        return callee.attr('name')
    return None
