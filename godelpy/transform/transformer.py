"""
Program Transformer
===================

A catalog of rewrite rules over reified programs.

    transform(program, spec) → (rewritten program, BenefitEstimate)

Rules:

    MEMOIZATION            f(x) := body
                           ⟶  _f_memo = memo_table(N)
                              f__uncached(x) := body
                              f(x) := lookup/insert _f_memo keyed by x, else f__uncached(x)
                           Recursive calls inside ``body`` still name ``f`` and so go
                           through the table. Requires ``f`` pure.

    INLINING               g(a) with g(x) := return e and g non-recursive
                           ⟶  e[x := a]
                           Skipped where the substitution would capture a local, or
                           would duplicate, drop or reorder a non-trivial argument.
                           A non-trivial argument must be read exactly once, outside
                           any conditional branch or short-circuit operand, in
                           argument order, and before ``e`` applies any operator or
                           call; otherwise a fault or divergence could move.

    DEAD_CODE_ELIMINATION  statements after ``return``; ``if`` / ``while`` on a
                           literal test; unread locals bound to trivial values.

    CONSTANT_FOLDING       operators applied to literals, conditional expressions
                           and short-circuit operators with a literal test.

Every rule is a pure function of (program, spec). A rule that cannot match
its target raises ``TransformationNotApplicable`` and produces nothing.
Quoted code is data and is never rewritten.

Transformation constraints are checked by differential probing on the
meta-circular evaluator (see ``probing``); a violated constraint also
raises ``TransformationNotApplicable``.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple, Union

from godelpy.errors import EvaluationError, TransformationNotApplicable
from godelpy.evaluation.evaluator import MetaCircularEvaluator
from godelpy.evaluation.primitives import PRIMITIVES, apply_binary, apply_unary, result_size
from godelpy.reflection.inspector import recursive_functions
from godelpy.reflection.nodes import Node, NodeKind, ProgramBuilder, ReifiedProgram, call_target, rewrite
from godelpy.reflection.reifier import Reifier
from godelpy.transform import probing
from godelpy.transform.probing import PROBE_INPUTS, UNCACHED_SUFFIX
from godelpy.transform.purity import analyze_purity
from godelpy.utils.helpers import format_speedup

logger = logging.getLogger(__name__)


class TransformationKind(Enum):
    MEMOIZATION = auto()
    INLINING = auto()
    DEAD_CODE_ELIMINATION = auto()
    CONSTANT_FOLDING = auto()


@dataclass(frozen=True)
class EntireUnit:
    def __str__(self) -> str:
        return '<unit>'


@dataclass(frozen=True)
class FunctionTarget:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class BlockTarget:
    """The ``block``-th block (pre-order, 0 is the body) of ``function``."""
    function: str
    block: int = 0

    def __str__(self) -> str:
        return f"{self.function}#block{self.block}"


Target = Union[EntireUnit, FunctionTarget, BlockTarget]


class TransformationConstraint(Enum):
    PRESERVE_SEMANTICS = auto()
    PERFORMANCE_NON_DEGRADATION = auto()
    MAX_CODE_GROWTH = auto()


DEFAULT_CACHE_SIZE = 1000


@dataclass(frozen=True)
class TransformationSpec:
    kind: TransformationKind
    target: Target = EntireUnit()
    parameters: Dict[str, Any] = field(default_factory=dict, hash=False)
    constraints: FrozenSet[TransformationConstraint] = frozenset()
    claimed_benefits: Tuple[str, ...] = ()

    @property
    def cache_size(self) -> Any:
        return self.parameters.get('cache_size', DEFAULT_CACHE_SIZE)

    @classmethod
    def memoization(cls, function: str, cache_size: int = DEFAULT_CACHE_SIZE,
                    constraints: Sequence[TransformationConstraint] = (),
                    claimed_benefits: Sequence[str] = ()) -> 'TransformationSpec':
        return cls(
            kind=TransformationKind.MEMOIZATION,
            target=FunctionTarget(function),
            parameters={'cache_size': cache_size},
            constraints=frozenset(constraints),
            claimed_benefits=tuple(claimed_benefits),
        )


@dataclass(frozen=True)
class BenefitEstimate:
    kind: TransformationKind
    target: str
    nodes_before: int
    nodes_after: int
    mean_steps_before: float
    mean_steps_after: float
    probes: int
    claimed_benefits: Tuple[str, ...] = ()

    @property
    def speedup(self) -> float:
        if self.mean_steps_after <= 0:
            return 1.0
        return self.mean_steps_before / self.mean_steps_after

    @property
    def code_growth(self) -> float:
        return self.nodes_after / self.nodes_before if self.nodes_before else 1.0


# ═══════════════════════════════════════════════════════════════════════════
# Shared helpers
# ═══════════════════════════════════════════════════════════════════════════

MAX_FOLDED_INT_BITS = 256
MAX_FOLDED_STR = 256


def _rebuild(b: ProgramBuilder, node: Node, children: Sequence[int], **attrs: Any) -> int:
    merged = dict(node.attrs)
    merged.update(attrs)
    return b.append(Node(node.kind, tuple(sorted(merged.items())), tuple(children)))


def _emit_literal(b: ProgramBuilder, value: Any) -> int:
    """A literal in the shape the reifier produces (negative numbers are negations)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.copysign(1, value) < 0:
        return b.add(NodeKind.UNARY_OP, [b.add(NodeKind.LITERAL, value=-value)], op='-')
    return b.add(NodeKind.LITERAL, value=value)


def _foldable(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return True
    if isinstance(value, int):
        return value.bit_length() <= MAX_FOLDED_INT_BITS
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str):
        return len(value) <= MAX_FOLDED_STR
    return False


def _literal_value(b: ProgramBuilder, index: int) -> Tuple[bool, Any]:
    """(True, value) when the rebuilt node is a literal, or a negated numeric literal."""
    node = b.node(index)
    if node.kind is NodeKind.LITERAL:
        return True, node.attr('value')
    if node.kind is NodeKind.UNARY_OP and node.attr('op') == '-':
        inner = b.node(node.children[0])
        value = inner.attr('value')
        if inner.kind is NodeKind.LITERAL and isinstance(value, (int, float)) and not isinstance(value, bool):
            return True, -value
    return False, None


def quoted_indices(program: ReifiedProgram) -> Set[int]:
    inside: Set[int] = set()
    for quote in program.find(NodeKind.QUOTE):
        inside.update(program.walk(quote))
    return inside


def enclosing_functions(program: ReifiedProgram) -> Dict[int, int]:
    """Node index → index of the top-level function containing it."""
    owner: Dict[int, int] = {}
    for function_index in program.functions().values():
        for i in program.walk(function_index):
            owner[i] = function_index
    return owner


def local_names(program: ReifiedProgram, function_index: int) -> Set[str]:
    names = set(program.node(function_index).attr('params', ()))
    for i in program.walk(program.children(function_index)[0]):
        node = program.node(i)
        if node.kind is NodeKind.LET:
            names.add(node.attr('target'))
        elif node.kind is NodeKind.FUNCTION:
            names.add(node.attr('name'))
            names.update(node.attr('params', ()))
    return names


def calls_reflective(program: ReifiedProgram, index: int) -> bool:
    for call_index in program.find(NodeKind.CALL, index):
        target = call_target(program, call_index)
        if target in PRIMITIVES and PRIMITIVES[target].needs_context:
            return True
    return False


def memo_tables(program: ReifiedProgram) -> List[Tuple[int, Any]]:
    """Every ``memo_table(...)`` call with its literal capacity (None if computed)."""
    tables = []
    for call_index in program.find(NodeKind.CALL):
        if call_target(program, call_index) != 'memo_table':
            continue
        args = program.children(call_index)[1:]
        capacity = None
        if len(args) == 1 and program.node(args[0]).kind is NodeKind.LITERAL:
            capacity = program.node(args[0]).attr('value')
        tables.append((call_index, capacity))
    return tables


def memoized_functions(program: ReifiedProgram) -> Dict[str, str]:
    """Memoized function name → its uncached implementation's name."""
    functions = program.functions()
    return {
        name: name + UNCACHED_SUFFIX
        for name in functions
        if name + UNCACHED_SUFFIX in functions
    }


# ═══════════════════════════════════════════════════════════════════════════
# Transformer
# ═══════════════════════════════════════════════════════════════════════════

class Transformer:
    """
    Applies ``TransformationSpec``s to reified programs.

    Usage:
        >>> transformer = Transformer()
        >>> spec = TransformationSpec.memoization('fibonacci', cache_size=1000)
        >>> memoized, benefit = transformer.transform(program, spec)
        >>> benefit.speedup > 1
        True
    """

    DEFAULT_PROBE_BOUND = 200_000
    DEFAULT_MAX_CODE_GROWTH = 4.0

    def __init__(
        self,
        reifier: Optional[Reifier] = None,
        evaluator: Optional[MetaCircularEvaluator] = None,
        probe_bound: int = DEFAULT_PROBE_BOUND,
        probe_inputs: Sequence[int] = PROBE_INPUTS,
    ):
        self.reifier = reifier or Reifier()
        self.evaluator = evaluator or MetaCircularEvaluator()
        self.probe_bound = probe_bound
        self.probe_inputs = tuple(probe_inputs)
        self.transformations_applied = 0
        self._stats_lock = threading.Lock()
        self._rules: Dict[TransformationKind, Callable[[ReifiedProgram, TransformationSpec], ReifiedProgram]] = {
            TransformationKind.MEMOIZATION: self._memoize,
            TransformationKind.INLINING: self._inline,
            TransformationKind.DEAD_CODE_ELIMINATION: self._eliminate_dead_code,
            TransformationKind.CONSTANT_FOLDING: self._fold_constants,
        }

    def transform(self, program: ReifiedProgram,
                  spec: TransformationSpec) -> Tuple[ReifiedProgram, BenefitEstimate]:
        rewritten = self.apply_rule(program, spec)
        comparisons = probing.compare(self.evaluator, program, rewritten, self.probe_bound,
                                      inputs=self.probe_inputs)
        before_steps, after_steps = probing.mean_steps(comparisons)
        benefit = BenefitEstimate(
            kind=spec.kind,
            target=str(spec.target),
            nodes_before=program.count_nodes(),
            nodes_after=rewritten.count_nodes(),
            mean_steps_before=before_steps,
            mean_steps_after=after_steps,
            probes=len(comparisons),
            claimed_benefits=spec.claimed_benefits,
        )
        self._check_constraints(spec, comparisons, benefit)
        with self._stats_lock:
            self.transformations_applied += 1
        logger.info(
            f"Applied {spec.kind.name} to {spec.target}: {benefit.nodes_before} → {benefit.nodes_after} nodes, "
            f"{format_speedup(benefit.mean_steps_before, benefit.mean_steps_after)} over {benefit.probes} probes"
        )
        return rewritten, benefit

    def apply_rule(self, program: ReifiedProgram, spec: TransformationSpec) -> ReifiedProgram:
        """The bare rewrite, without probing."""
        if program.kind is not NodeKind.PROGRAM:
            raise TransformationNotApplicable(str(spec.target), 'expected a Program-rooted tree')
        rewritten = self._rules[spec.kind](program, spec)
        # Rules may share subtrees inside the arena; re-rooting copies them into a plain tree.
        return rewritten.subtree(rewritten.root)

    def _check_constraints(self, spec: TransformationSpec, comparisons: List[probing.ProbeComparison],
                           benefit: BenefitEstimate) -> None:
        target = str(spec.target)
        if TransformationConstraint.PRESERVE_SEMANTICS in spec.constraints:
            for comparison in comparisons:
                if not comparison.agrees:
                    raise TransformationNotApplicable(
                        target, f"changes {comparison.before.function}{comparison.before.args}: "
                                f"{comparison.before.outcome} became {comparison.after.outcome}"
                    )
        if TransformationConstraint.PERFORMANCE_NON_DEGRADATION in spec.constraints:
            if benefit.mean_steps_after > benefit.mean_steps_before:
                raise TransformationNotApplicable(
                    target, f"mean steps grew from {benefit.mean_steps_before:.1f} to {benefit.mean_steps_after:.1f}"
                )
        if TransformationConstraint.MAX_CODE_GROWTH in spec.constraints:
            limit = spec.parameters.get('max_code_growth', self.DEFAULT_MAX_CODE_GROWTH)
            if benefit.code_growth > limit:
                raise TransformationNotApplicable(
                    target, f"code grew {benefit.code_growth:.2f}x (limit {limit}x)"
                )

    # ── Scope selection ──────────────────────────────────────────

    def _scope(self, program: ReifiedProgram, target: Target) -> Set[int]:
        if isinstance(target, EntireUnit):
            scope = set(program.walk())
        else:
            name = target.function if isinstance(target, BlockTarget) else target.name
            index = program.function(name)
            if index is None:
                raise TransformationNotApplicable(str(target), f"no function named {name!r}")
            if isinstance(target, BlockTarget):
                blocks = program.find(NodeKind.BLOCK, index)
                if not 0 <= target.block < len(blocks):
                    raise TransformationNotApplicable(str(target), f"{name} has {len(blocks)} blocks")
                index = blocks[target.block]
            scope = set(program.walk(index))
        return scope - quoted_indices(program)

    # ── Memoization ──────────────────────────────────────────────

    def _memoize(self, program: ReifiedProgram, spec: TransformationSpec) -> ReifiedProgram:
        target = spec.target
        cache_size = spec.cache_size
        if type(cache_size) is not int or cache_size <= 0:
            raise TransformationNotApplicable(str(target), f"cache_size must be a positive int, got {cache_size!r}")
        if isinstance(target, BlockTarget):
            raise TransformationNotApplicable(str(target), 'memoization applies to whole functions')

        functions = program.functions()
        purity = analyze_purity(program)
        if isinstance(target, FunctionTarget):
            reason = self._memoization_blocker(program, target.name, purity)
            if reason:
                raise TransformationNotApplicable(str(target), reason)
            names = {target.name}
        else:
            recursive = recursive_functions(program)
            names = {n for n in functions if n in recursive and not self._memoization_blocker(program, n, purity)}
            if not names:
                raise TransformationNotApplicable(str(target), 'no pure recursive function to memoize')

        b = ProgramBuilder()
        statements: List[int] = []
        for child in program.children():
            node = program.node(child)
            if node.kind is NodeKind.FUNCTION and node.attr('name') in names:
                statements.extend(self._memo_statements(b, program, child, cache_size))
            else:
                statements.append(b.copy_from(program, child))
        return b.build(b.add(NodeKind.PROGRAM, statements))

    @staticmethod
    def _memoization_blocker(program: ReifiedProgram, name: str, purity: Dict) -> Optional[str]:
        functions = program.functions()
        if name not in functions:
            return f"no function named {name!r}"
        params = program.node(functions[name]).attr('params', ())
        if not params:
            return 'function takes no arguments'
        if name.endswith(UNCACHED_SUFFIX) or name in memoized_functions(program):
            return 'already memoized'
        if not purity[name].is_pure:
            return 'function is not pure: ' + '; '.join(purity[name].reasons)
        generated = {f"_{name}_memo", f"_{name}_key", name + UNCACHED_SUFFIX}
        taken = set(functions) | set(params)
        taken.update(program.node(c).attr('target') for c in program.children()
                     if program.node(c).kind is NodeKind.LET)
        clash = generated & taken
        if clash:
            return f"generated names already in use: {sorted(clash)}"
        return None

    def _memo_statements(self, b: ProgramBuilder, program: ReifiedProgram, index: int,
                         cache_size: int) -> List[int]:
        node = program.node(index)
        name = node.attr('name')
        args = ', '.join(node.attr('params', ()))
        table, key = f"_{name}_memo", f"_{name}_key"
        template = self.reifier.reify(
            f"{table} = memo_table({cache_size})\n"
            f"def {name}({args}):\n"
            f"    {key} = memo_key({args})\n"
            f"    if memo_contains({table}, {key}):\n"
            f"        return memo_get({table}, {key})\n"
            f"    return memo_put({table}, {key}, {name}{UNCACHED_SUFFIX}({args}))\n"
        )
        table_let = b.copy_from(template, template.children()[0])
        wrapper_index = template.children()[1]
        wrapper_body = b.copy_from(template, template.children(wrapper_index)[0])
        uncached_body = b.copy_from(program, node.children[0])
        uncached = _rebuild(b, node, [uncached_body], name=name + UNCACHED_SUFFIX)
        wrapper = _rebuild(b, node, [wrapper_body])
        return [table_let, uncached, wrapper]

    # ── Inlining ─────────────────────────────────────────────────

    def _inline(self, program: ReifiedProgram, spec: TransformationSpec) -> ReifiedProgram:
        target = spec.target
        functions = program.functions()
        recursive = recursive_functions(program)
        if isinstance(target, BlockTarget):
            raise TransformationNotApplicable(str(target), 'inlining targets a callee function')
        if isinstance(target, FunctionTarget):
            if target.name not in functions:
                raise TransformationNotApplicable(str(target), f"no function named {target.name!r}")
            candidates = [target.name]
        else:
            candidates = list(functions)

        bodies: Dict[str, Tuple[Tuple[str, ...], ReifiedProgram]] = {}
        for name in candidates:
            expression = self._inline_body(program, functions[name], name in recursive)
            if expression is not None:
                bodies[name] = (tuple(program.node(functions[name]).attr('params', ())), expression)
        if not bodies:
            raise TransformationNotApplicable(str(target), 'no single-return non-recursive function')

        quoted = quoted_indices(program)
        owner = enclosing_functions(program)
        locals_of = {i: local_names(program, i) for i in functions.values()}
        inlined = 0

        def inline_call(prog, i, children, b):
            nonlocal inlined
            callee = call_target(prog, i)
            if callee not in bodies or i in quoted:
                return None
            params, expression = bodies[callee]
            args = children[1:]
            if len(args) != len(params):
                return None
            enclosing = owner.get(i)
            if enclosing is not None:
                outer_free = set(_free_names(expression)) - set(params)
                if callee in locals_of[enclosing] or outer_free & locals_of[enclosing]:
                    return None
            eager = [param for param, arg in zip(params, args)
                     if b.node(arg).kind not in (NodeKind.LITERAL, NodeKind.IDENTIFIER)]
            if not _reads_eagerly(expression, eager):
                return None
            inlined += 1
            return _instantiate(b, expression, expression.root, dict(zip(params, args)))

        result = rewrite(program, inline_call)
        if not inlined:
            raise TransformationNotApplicable(str(target), 'no call site could be inlined')
        logger.debug(f"Inlined {inlined} call sites of {sorted(bodies)}")
        return result

    @staticmethod
    def _inline_body(program: ReifiedProgram, index: int, is_recursive: bool) -> Optional[ReifiedProgram]:
        if is_recursive or calls_reflective(program, index):
            return None
        body = program.node(program.children(index)[0])
        if len(body.children) != 1:
            return None
        statement = program.node(body.children[0])
        if statement.kind is not NodeKind.RETURN or not statement.children:
            return None
        return program.subtree(statement.children[0])

    # ── Dead-code elimination ────────────────────────────────────

    def _eliminate_dead_code(self, program: ReifiedProgram, spec: TransformationSpec) -> ReifiedProgram:
        scope = self._scope(program, spec.target)
        owner = enclosing_functions(program)
        reads: Dict[int, Set[str]] = {}
        for function_index in program.functions().values():
            reads[function_index] = {
                program.node(i).attr('name') for i in program.find(NodeKind.IDENTIFIER, function_index)
            }
        removed = 0

        def removable_let(i: int) -> bool:
            node = program.node(i)
            function_index = owner.get(i)
            if node.kind is not NodeKind.LET or function_index is None:
                return False
            if calls_reflective(program, function_index) or node.attr('target') in reads[function_index]:
                return False
            params = set(program.node(function_index).attr('params', ()))
            stack = [node.children[0]]
            while stack:
                value = program.node(stack.pop())
                if value.kind is NodeKind.IDENTIFIER and value.attr('name') not in params:
                    return False
                if value.kind not in (NodeKind.LITERAL, NodeKind.IDENTIFIER, NodeKind.QUOTE, NodeKind.SEQUENCE):
                    return False
                if value.kind is NodeKind.SEQUENCE:
                    stack.extend(value.children)
            return True

        def sweep(prog, i, children, b):
            nonlocal removed
            node = prog.node(i)
            if i not in scope or node.kind not in (NodeKind.BLOCK, NodeKind.PROGRAM):
                return None
            kept: List[int] = []
            changed = False
            for old, new in zip(node.children, children):
                statement = b.node(new)
                test_known, test = (_literal_value(b, statement.children[0])
                                    if statement.kind in (NodeKind.IF, NodeKind.WHILE) else (False, None))
                if statement.kind is NodeKind.IF and test_known:
                    if test:
                        kept.extend(b.node(statement.children[1]).children)
                    elif len(statement.children) > 2:
                        kept.extend(b.node(statement.children[2]).children)
                    changed = True
                elif statement.kind is NodeKind.WHILE and test_known and not test:
                    changed = True
                elif removable_let(old):
                    changed = True
                else:
                    kept.append(new)
            for position, statement in enumerate(kept):
                if b.node(statement).kind is NodeKind.RETURN and position + 1 < len(kept):
                    kept = kept[:position + 1]
                    changed = True
                    break
            if len(kept) > 1 and any(b.node(s).kind is NodeKind.PASS for s in kept):
                kept = [s for s in kept if b.node(s).kind is not NodeKind.PASS] or kept[:1]
                changed = True
            if not changed:
                return None
            removed += 1
            if not kept and node.kind is NodeKind.BLOCK:
                kept = [b.add(NodeKind.PASS)]
            return b.append(Node(node.kind, node.attrs, tuple(kept)))

        result = rewrite(program, sweep)
        if not removed:
            raise TransformationNotApplicable(str(spec.target), 'no dead code found')
        return result

    # ── Constant folding ─────────────────────────────────────────

    def _fold_constants(self, program: ReifiedProgram, spec: TransformationSpec) -> ReifiedProgram:
        scope = self._scope(program, spec.target)
        folded = 0

        def fold(prog, i, children, b):
            nonlocal folded
            if i not in scope:
                return None
            node = prog.node(i)
            replacement = None
            if node.kind is NodeKind.BINARY_OP:
                replacement = _fold_binary(b, node.attr('op'), children)
            elif node.kind is NodeKind.UNARY_OP:
                known, value = _literal_value(b, children[0])
                if known and not (node.attr('op') == '-' and b.node(children[0]).kind is NodeKind.LITERAL):
                    replacement = _fold_value(b, lambda: apply_unary(node.attr('op'), value))
            elif node.kind is NodeKind.CONDITIONAL:
                known, value = _literal_value(b, children[0])
                if known:
                    replacement = children[1] if value else children[2]
            if replacement is not None:
                folded += 1
            return replacement

        result = rewrite(program, fold)
        if not folded:
            raise TransformationNotApplicable(str(spec.target), 'no constant expression found')
        logger.debug(f"Folded {folded} constant expressions")
        return result


def _fold_value(b: ProgramBuilder, compute: Callable[[], Any]) -> Optional[int]:
    try:
        value = compute()
    except EvaluationError:
        # Leave faulting expressions in place; folding must not move the fault.
        return None
    return _emit_literal(b, value) if _foldable(value) else None


def _fold_binary(b: ProgramBuilder, op: str, children: List[int]) -> Optional[int]:
    left_known, left = _literal_value(b, children[0])
    if not left_known:
        return None
    if op == 'and':
        return children[1] if left else children[0]
    if op == 'or':
        return children[0] if left else children[1]
    right_known, right = _literal_value(b, children[1])
    if not right_known or op in ('in', 'not in'):
        return None
    if result_size(op, left, right) > max(MAX_FOLDED_INT_BITS, MAX_FOLDED_STR):
        return None
    return _fold_value(b, lambda: apply_binary(op, left, right))


def _free_names(program: ReifiedProgram) -> List[str]:
    """Identifier occurrences outside quotes, with repetition."""
    names = []
    stack = [program.root]
    while stack:
        node = program.node(stack.pop())
        if node.kind is NodeKind.QUOTE:
            continue
        if node.kind is NodeKind.IDENTIFIER:
            names.append(node.attr('name'))
        stack.extend(node.children)
    return names


_ACTING_KINDS = frozenset({NodeKind.CALL, NodeKind.BINARY_OP, NodeKind.UNARY_OP, NodeKind.INDEX})


def _reads_eagerly(program: ReifiedProgram, params: Sequence[str]) -> bool:
    """
    True when evaluating ``program`` reads each of ``params`` exactly once,
    unconditionally, in the given order, and before any operator or call
    is applied. Substituting argument expressions for such parameters
    evaluates them exactly as a call would have.
    """
    if not params:
        return True
    wanted = set(params)
    reads: List[str] = []
    acted_early = False

    def visit(index: int, conditional: bool) -> bool:
        nonlocal acted_early
        node = program.node(index)
        if node.kind is NodeKind.QUOTE:
            return True
        if node.kind is NodeKind.IDENTIFIER:
            name = node.attr('name')
            if name in wanted:
                if conditional or acted_early:
                    return False
                reads.append(name)
            return True
        children = node.children
        if node.kind is NodeKind.CONDITIONAL:
            return (visit(children[0], conditional)
                    and visit(children[1], True) and visit(children[2], True))
        if node.kind is NodeKind.BINARY_OP and node.attr('op') in ('and', 'or'):
            return visit(children[0], conditional) and visit(children[1], True)
        if not all(visit(child, conditional) for child in children):
            return False
        if node.kind in _ACTING_KINDS and len(reads) < len(params):
            acted_early = True
        return True

    return visit(program.root, False) and reads == list(params)


def _instantiate(b: ProgramBuilder, program: ReifiedProgram, index: int, bindings: Dict[str, int]) -> int:
    node = program.node(index)
    if node.kind is NodeKind.IDENTIFIER and node.attr('name') in bindings:
        return bindings[node.attr('name')]
    if node.kind is NodeKind.QUOTE:
        return b.copy_from(program, index)
    children = [_instantiate(b, program, c, bindings) for c in node.children]
    return b.append(Node(node.kind, node.attrs, tuple(children)))
