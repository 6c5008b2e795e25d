"""
Reifier (quote / unquote)
=========================

Converts executable Python structure into a ``ReifiedProgram`` and back.

    reify(unit)      : code  → data   (quote)
    reflect(program) : data  → code   (unquote)

``reflect`` is a left inverse of ``reify`` on the image of ``reify``:

    reify(reflect(reify(u))) == reify(u)

and the reflected unit behaves exactly like the original under both the
meta-circular evaluator and native execution.

Supported surface grammar is a deliberately small, side-effect-explicit
subset of Python (see ``SUPPORTED_STATEMENTS`` / ``SUPPORTED_EXPRESSIONS``).
Anything outside it raises ``ReificationUnsupported`` naming the construct.
Information is never dropped: annotations are kept as source text, and the
only rewrites are pure desugarings whose reflected form re-reifies to the
same normal form (``x += e`` becomes ``x = x + e``; ``a and b and c``
becomes ``(a and b) and c``).
"""

import ast
import inspect
import logging
import math
import textwrap
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from godelpy.errors import ReificationUnsupported, RoundTripMismatch
from godelpy.reflection.nodes import (
    EXPRESSION_KINDS, STATEMENT_KINDS, NodeKind, ProgramBuilder, ReifiedProgram,
)

logger = logging.getLogger(__name__)


_BINOPS = {
    ast.Add: '+', ast.Sub: '-', ast.Mult: '*', ast.Div: '/',
    ast.FloorDiv: '//', ast.Mod: '%', ast.Pow: '**',
}

_CMPOPS = {
    ast.Eq: '==', ast.NotEq: '!=', ast.Lt: '<', ast.LtE: '<=',
    ast.Gt: '>', ast.GtE: '>=', ast.In: 'in', ast.NotIn: 'not in',
}

_BOOLOPS = {ast.And: 'and', ast.Or: 'or'}

_UNARYOPS = {ast.Not: 'not', ast.USub: '-', ast.UAdd: '+'}

_LITERAL_TYPES = (bool, int, float, str, type(None))

SUPPORTED_STATEMENTS = (
    'FunctionDef', 'Return', 'If', 'While', 'Pass', 'Assign', 'AugAssign', 'Expr',
)
SUPPORTED_EXPRESSIONS = (
    'Constant', 'Name', 'Call', 'BinOp', 'Compare', 'BoolOp', 'UnaryOp',
    'IfExp', 'List', 'Tuple', 'Subscript', 'quote(...)',
)

QUOTE_FORM = 'quote'


@dataclass
class ExecutableUnit:
    """
    An executable unit as the surface front end supplies it: a name and
    Python source. ``compile`` turns it into live callables.
    """
    name: str
    source: str
    _module: Optional[ast.Module] = field(default=None, repr=False, compare=False)

    @property
    def module(self) -> ast.Module:
        if self._module is None:
            self._module = ast.parse(self.source)
        return self._module

    def compile(self, namespace: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute the unit's module and return the resulting namespace."""
        env: Dict[str, Any] = dict(namespace or {})
        code = compile(self.module, f'<godel:{self.name}>', 'exec')
        exec(code, env)
        return env

    def function_names(self) -> List[str]:
        return [s.name for s in self.module.body if isinstance(s, ast.FunctionDef)]


Unit = Union[Callable, str, ast.AST, ExecutableUnit]


class Reifier:
    """
    Quote/unquote between Python code and reified programs.

    Usage:
        >>> reifier = Reifier()
        >>> program = reifier.reify("def double(x):\\n    return x + x\\n")
        >>> unit = reifier.reflect(program, name="double")
        >>> unit.compile()['double'](21)
        42
    """

    def __init__(self, check_round_trip: bool = False):
        self.check_round_trip = check_round_trip
        self.reified_count = 0
        self._stats_lock = threading.Lock()

    # ── Quote ────────────────────────────────────────────────────

    def reify(self, unit: Unit) -> ReifiedProgram:
        """Reify a unit into a Program-rooted tree."""
        module = self._to_module(unit)
        builder = ProgramBuilder()
        statements = [self._statement(builder, s) for s in module.body]
        program = builder.build(builder.add(NodeKind.PROGRAM, statements))
        with self._stats_lock:
            self.reified_count += 1
        if self.check_round_trip:
            self.assert_round_trip(program)
        logger.debug(f"Reified {type(unit).__name__} into {len(program)} nodes ({program.fingerprint()})")
        return program

    def reify_expression(self, expression: Union[str, ast.expr]) -> ReifiedProgram:
        """Reify a single expression, e.g. a pre- or postcondition."""
        if isinstance(expression, str):
            try:
                tree = ast.parse(expression.strip(), mode='eval')
            except SyntaxError as exc:
                raise ReificationUnsupported('SyntaxError', str(exc)) from exc
            expression = tree.body
        builder = ProgramBuilder()
        return builder.build(self._expression(builder, expression))

    def _to_module(self, unit: Unit) -> ast.Module:
        if isinstance(unit, ExecutableUnit):
            return unit.module
        if isinstance(unit, ast.Module):
            return unit
        if isinstance(unit, ast.FunctionDef):
            return ast.Module(body=[unit], type_ignores=[])
        if isinstance(unit, str):
            try:
                return ast.parse(textwrap.dedent(unit))
            except SyntaxError as exc:
                raise ReificationUnsupported('SyntaxError', str(exc)) from exc
        if callable(unit):
            try:
                source = textwrap.dedent(inspect.getsource(unit))
            except (OSError, TypeError) as exc:
                raise ReificationUnsupported(type(unit).__name__, 'source unavailable') from exc
            return ast.parse(source)
        raise ReificationUnsupported(type(unit).__name__)

    def _statement(self, b: ProgramBuilder, node: ast.stmt) -> int:
        if isinstance(node, ast.FunctionDef):
            return self._function(b, node)
        if isinstance(node, ast.Return):
            children = [self._expression(b, node.value)] if node.value is not None else []
            return b.add(NodeKind.RETURN, children)
        if isinstance(node, ast.If):
            test = self._expression(b, node.test)
            children = [test, self._block(b, node.body)]
            if node.orelse:
                children.append(self._block(b, node.orelse))
            return b.add(NodeKind.IF, children)
        if isinstance(node, ast.While):
            if node.orelse:
                raise ReificationUnsupported('While.orelse')
            return b.add(NodeKind.WHILE, [self._expression(b, node.test), self._block(b, node.body)])
        if isinstance(node, ast.Pass):
            return b.add(NodeKind.PASS)
        if isinstance(node, ast.Assign):
            if len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
                raise ReificationUnsupported('Assign', 'only single-name targets are supported')
            return b.add(NodeKind.LET, [self._expression(b, node.value)], target=node.targets[0].id)
        if isinstance(node, ast.AugAssign):
            if not isinstance(node.target, ast.Name) or type(node.op) not in _BINOPS:
                raise ReificationUnsupported('AugAssign')
            name = node.target.id
            current = b.add(NodeKind.IDENTIFIER, name=name)
            value = b.add(NodeKind.BINARY_OP, [current, self._expression(b, node.value)],
                          op=_BINOPS[type(node.op)])
            return b.add(NodeKind.LET, [value], target=name)
        if isinstance(node, ast.Expr):
            return b.add(NodeKind.EXPR_STMT, [self._expression(b, node.value)])
        raise ReificationUnsupported(type(node).__name__)

    def _function(self, b: ProgramBuilder, node: ast.FunctionDef) -> int:
        args = node.args
        if node.decorator_list:
            raise ReificationUnsupported('FunctionDef.decorators', node.name)
        if (args.posonlyargs or args.vararg or args.kwonlyargs or args.kwarg
                or args.defaults or args.kw_defaults):
            raise ReificationUnsupported('FunctionDef.arguments',
                                         f'{node.name}: only plain positional parameters')
        if getattr(node, 'type_params', None):
            raise ReificationUnsupported('FunctionDef.type_params', node.name)
        params = tuple(a.arg for a in args.args)
        annotations = tuple(
            ast.unparse(a.annotation) if a.annotation is not None else None for a in args.args
        )
        attrs: Dict[str, Any] = {'name': node.name, 'params': params}
        if any(a is not None for a in annotations):
            attrs['annotations'] = annotations
        if node.returns is not None:
            attrs['returns'] = ast.unparse(node.returns)
        return b.add(NodeKind.FUNCTION, [self._block(b, node.body)], **attrs)

    def _block(self, b: ProgramBuilder, body: List[ast.stmt]) -> int:
        return b.add(NodeKind.BLOCK, [self._statement(b, s) for s in body])

    def _expression(self, b: ProgramBuilder, node: ast.expr) -> int:
        if isinstance(node, ast.Constant):
            if type(node.value) not in _LITERAL_TYPES:
                raise ReificationUnsupported('Constant', type(node.value).__name__)
            return b.add(NodeKind.LITERAL, value=node.value)
        if isinstance(node, ast.Name):
            return b.add(NodeKind.IDENTIFIER, name=node.id)
        if isinstance(node, ast.Call):
            if node.keywords or any(isinstance(a, ast.Starred) for a in node.args):
                raise ReificationUnsupported('Call', 'keyword and starred arguments')
            if isinstance(node.func, ast.Name) and node.func.id == QUOTE_FORM:
                if len(node.args) != 1:
                    raise ReificationUnsupported('quote', 'takes exactly one expression')
                return b.add(NodeKind.QUOTE, [self._expression(b, node.args[0])])
            callee = self._expression(b, node.func)
            return b.add(NodeKind.CALL, [callee] + [self._expression(b, a) for a in node.args])
        if isinstance(node, ast.BinOp):
            op = _BINOPS.get(type(node.op))
            if op is None:
                raise ReificationUnsupported(f'BinOp.{type(node.op).__name__}')
            return b.add(NodeKind.BINARY_OP,
                         [self._expression(b, node.left), self._expression(b, node.right)], op=op)
        if isinstance(node, ast.Compare):
            if len(node.ops) != 1:
                raise ReificationUnsupported('Compare', 'chained comparisons')
            op = _CMPOPS.get(type(node.ops[0]))
            if op is None:
                raise ReificationUnsupported(f'Compare.{type(node.ops[0]).__name__}')
            return b.add(NodeKind.BINARY_OP,
                         [self._expression(b, node.left), self._expression(b, node.comparators[0])],
                         op=op)
        if isinstance(node, ast.BoolOp):
            op = _BOOLOPS[type(node.op)]
            current = self._expression(b, node.values[0])
            for value in node.values[1:]:
                current = b.add(NodeKind.BINARY_OP, [current, self._expression(b, value)], op=op)
            return current
        if isinstance(node, ast.UnaryOp):
            op = _UNARYOPS.get(type(node.op))
            if op is None:
                raise ReificationUnsupported(f'UnaryOp.{type(node.op).__name__}')
            return b.add(NodeKind.UNARY_OP, [self._expression(b, node.operand)], op=op)
        if isinstance(node, ast.IfExp):
            return b.add(NodeKind.CONDITIONAL, [
                self._expression(b, node.test),
                self._expression(b, node.body),
                self._expression(b, node.orelse),
            ])
        if isinstance(node, (ast.List, ast.Tuple)):
            if any(isinstance(e, ast.Starred) for e in node.elts):
                raise ReificationUnsupported('Starred')
            sequence = 'list' if isinstance(node, ast.List) else 'tuple'
            return b.add(NodeKind.SEQUENCE, [self._expression(b, e) for e in node.elts],
                         sequence=sequence)
        if isinstance(node, ast.Subscript):
            if isinstance(node.slice, ast.Slice):
                raise ReificationUnsupported('Slice')
            return b.add(NodeKind.INDEX,
                         [self._expression(b, node.value), self._expression(b, node.slice)])
        raise ReificationUnsupported(type(node).__name__)

    # ── Unquote ──────────────────────────────────────────────────

    def reflect(self, program: ReifiedProgram, name: Optional[str] = None) -> ExecutableUnit:
        """Reconstruct an executable unit from a reified program."""
        source = to_source(program)
        if name is None:
            functions = list(program.functions())
            name = functions[0] if len(functions) == 1 else 'program'
        unit = ExecutableUnit(name=name, source=source)
        logger.debug(f"Reflected {program.fingerprint()} into unit {name!r}")
        return unit

    def assert_round_trip(self, program: ReifiedProgram) -> None:
        """Escalate if reflecting and re-reifying does not reproduce ``program``."""
        source = to_source(program)
        if program.kind is NodeKind.PROGRAM:
            again = self._reify_quiet(source)
        elif program.kind in EXPRESSION_KINDS:
            again = self.reify_expression(source)
        else:
            again = self._reify_quiet(source).child(0)
        if again != program:
            raise RoundTripMismatch(
                f"Round trip changed program {program.fingerprint()} into {again.fingerprint()}"
            )

    def _reify_quiet(self, source: str) -> ReifiedProgram:
        builder = ProgramBuilder()
        statements = [self._statement(builder, s) for s in ast.parse(source).body]
        return builder.build(builder.add(NodeKind.PROGRAM, statements))


# ═══════════════════════════════════════════════════════════════════════════
# Source generation
# ═══════════════════════════════════════════════════════════════════════════

def to_source(program: ReifiedProgram, index: Optional[int] = None) -> str:
    """Render a reified program (or expression) as Python source."""
    node = program.node(index)
    i = program.root if index is None else index
    if node.kind is NodeKind.PROGRAM:
        lines: List[str] = []
        for child in node.children:
            lines.extend(_statement_lines(program, child, 0))
        return '\n'.join(lines) + '\n'
    if node.kind is NodeKind.BLOCK or node.kind in STATEMENT_KINDS:
        return '\n'.join(_statement_lines(program, i, 0)) + '\n'
    return _expr(program, i)


def _statement_lines(program: ReifiedProgram, index: int, indent: int) -> List[str]:
    node = program.node(index)
    pad = '    ' * indent
    kind = node.kind
    if kind is NodeKind.FUNCTION:
        params = node.attr('params', ())
        annotations = node.attr('annotations') or (None,) * len(params)
        rendered = ', '.join(
            p if a is None else f'{p}: {a}' for p, a in zip(params, annotations)
        )
        returns = node.attr('returns')
        suffix = f' -> {returns}' if returns is not None else ''
        header = f"{pad}def {node.attr('name')}({rendered}){suffix}:"
        return [header] + _block_lines(program, node.children[0], indent + 1)
    if kind is NodeKind.BLOCK:
        return _block_lines(program, index, indent)
    if kind is NodeKind.LET:
        return [f"{pad}{node.attr('target')} = {_expr(program, node.children[0])}"]
    if kind is NodeKind.RETURN:
        if not node.children:
            return [f'{pad}return']
        return [f'{pad}return {_expr(program, node.children[0])}']
    if kind is NodeKind.IF:
        lines = [f'{pad}if {_expr(program, node.children[0])}:']
        lines += _block_lines(program, node.children[1], indent + 1)
        if len(node.children) > 2:
            lines.append(f'{pad}else:')
            lines += _block_lines(program, node.children[2], indent + 1)
        return lines
    if kind is NodeKind.WHILE:
        lines = [f'{pad}while {_expr(program, node.children[0])}:']
        return lines + _block_lines(program, node.children[1], indent + 1)
    if kind is NodeKind.PASS:
        return [f'{pad}pass']
    if kind is NodeKind.EXPR_STMT:
        return [f'{pad}{_expr(program, node.children[0])}']
    raise ReificationUnsupported(kind.value, 'not a statement')


def _block_lines(program: ReifiedProgram, index: int, indent: int) -> List[str]:
    children = program.node(index).children
    if not children:
        # An empty block has no Python spelling; it only arises from rewrites.
        return ['    ' * indent + 'pass']
    lines: List[str] = []
    for child in children:
        lines.extend(_statement_lines(program, child, indent))
    return lines


def _literal_source(value: Any) -> str:
    if isinstance(value, float) and math.isinf(value):
        return '1e999' if value > 0 else '(-1e999)'
    return repr(value)


def _expr(program: ReifiedProgram, index: int) -> str:
    node = program.node(index)
    kind = node.kind
    if kind is NodeKind.LITERAL:
        return _literal_source(node.attr('value'))
    if kind is NodeKind.IDENTIFIER:
        return node.attr('name')
    if kind is NodeKind.CALL:
        callee, *args = node.children
        return f"{_expr(program, callee)}({', '.join(_expr(program, a) for a in args)})"
    if kind is NodeKind.BINARY_OP:
        left, right = node.children
        return f"({_expr(program, left)} {node.attr('op')} {_expr(program, right)})"
    if kind is NodeKind.UNARY_OP:
        op = node.attr('op')
        spacer = ' ' if op == 'not' else ''
        return f"({op}{spacer}{_expr(program, node.children[0])})"
    if kind is NodeKind.CONDITIONAL:
        test, then, orelse = node.children
        return f"({_expr(program, then)} if {_expr(program, test)} else {_expr(program, orelse)})"
    if kind is NodeKind.SEQUENCE:
        items = [_expr(program, c) for c in node.children]
        if node.attr('sequence') == 'tuple':
            return f"({items[0]},)" if len(items) == 1 else f"({', '.join(items)})"
        return f"[{', '.join(items)}]"
    if kind is NodeKind.INDEX:
        target, key = node.children
        return f"{_expr(program, target)}[{_expr(program, key)}]"
    if kind is NodeKind.QUOTE:
        return f"{QUOTE_FORM}({_expr(program, node.children[0])})"
    raise ReificationUnsupported(kind.value, 'not an expression')
