"""
Derivations shared by the prover and the verifier.

Every function here is a deterministic function of reified programs. The
prover uses them to build proof steps; the verifier calls them again,
independently, to re-derive each step from its justification. A step is
accepted only when both agree.
"""

from typing import Callable, Dict, Hashable, List, Optional, Sequence, Set, Tuple

from godelpy.evaluation.primitives import PRIMITIVES
from godelpy.proof.arithmetic import Constraint, constraints_of
from godelpy.proof.theorem import ComplexityClass, FunctionalCorrectness, Theorem
from godelpy.reflection.inspector import call_graph, strongly_connected
from godelpy.reflection.nodes import (
    NodeKind, ReifiedProgram, call, call_target, compose,
    free_identifiers, identifier, literal, rewrite, substitute, unary,
)
from godelpy.transform.transformer import memoized_functions

RESULT = 'result'

Case = Tuple[Tuple[ReifiedProgram, ...], ReifiedProgram]


# ── Formula construction ─────────────────────────────────────────────────

def conjunction(parts: Sequence[ReifiedProgram]) -> ReifiedProgram:
    if not parts:
        return literal(True)
    current = parts[0]
    for part in parts[1:]:
        current = compose(NodeKind.BINARY_OP, (current, part), op='and')
    return current


def conjuncts(formula: ReifiedProgram) -> List[ReifiedProgram]:
    node = formula.node()
    if node.kind is NodeKind.BINARY_OP and node.attr('op') == 'and':
        return conjuncts(formula.child(0)) + conjuncts(formula.child(1))
    if node.kind is NodeKind.LITERAL and node.attr('value') is True:
        return []
    return [formula]


def negate(formula: ReifiedProgram) -> ReifiedProgram:
    return unary('not', formula)


def compare(op: str, left: ReifiedProgram, right: ReifiedProgram) -> ReifiedProgram:
    return compose(NodeKind.BINARY_OP, (left, right), op=op)


def number(value) -> ReifiedProgram:
    """A numeric literal in reified shape (negatives are negations)."""
    if value < 0:
        return unary('-', literal(-value))
    return literal(value)


def meta(name: str, *values) -> ReifiedProgram:
    """Meta-level fact spelled as a call, e.g. ``terminates('f')``."""
    return call(name, *(literal(v) for v in values))


def replace_call(formula: ReifiedProgram, target: ReifiedProgram, replacement: ReifiedProgram) -> ReifiedProgram:
    wanted = target.canonical()

    def swap(prog, i, children, b):
        if prog.node(i).kind is NodeKind.CALL and prog.canonical(i) == wanted:
            return b.copy_from(replacement)
        return None

    result = rewrite(formula, swap)
    return result.subtree(result.root)


def calls_to(formula: ReifiedProgram, function: str) -> List[ReifiedProgram]:
    """Distinct calls of ``function`` in a formula, in pre-order."""
    found: List[ReifiedProgram] = []
    for i in formula.find(NodeKind.CALL):
        if call_target(formula, i) == function:
            sub = formula.subtree(i)
            if sub not in found:
                found.append(sub)
    return found


def call_arguments(call_expr: ReifiedProgram) -> List[ReifiedProgram]:
    return [call_expr.child(i) for i in range(1, len(call_expr.children()))]


# ── Functions as decision trees ──────────────────────────────────────────

def params_of(program: ReifiedProgram, function: str) -> Tuple[str, ...]:
    index = program.function(function)
    return tuple(program.node(index).attr('params', ())) if index is not None else ()


def primary_call(function: str, params: Sequence[str]) -> ReifiedProgram:
    return call(function, *(identifier(p) for p in params))


def goal_of(statement: FunctionalCorrectness, params: Sequence[str]) -> ReifiedProgram:
    return substitute(statement.postcondition, {RESULT: primary_call(statement.function, params)})


def _block_returns(program: ReifiedProgram, block: int) -> bool:
    statements = program.children(block)
    if not statements:
        return False
    last = program.node(statements[-1])
    if last.kind is NodeKind.RETURN:
        return True
    if last.kind is NodeKind.IF and len(last.children) > 2:
        return _block_returns(program, last.children[1]) and _block_returns(program, last.children[2])
    return False


def _is_docstring(program: ReifiedProgram, index: int) -> bool:
    node = program.node(index)
    return (node.kind is NodeKind.EXPR_STMT
            and program.node(node.children[0]).kind is NodeKind.LITERAL)


def _cases_from(program: ReifiedProgram, statements: List[int], env: Dict[str, ReifiedProgram],
                conditions: Tuple[ReifiedProgram, ...]) -> Optional[List[Case]]:
    if not statements:
        return None
    first, rest = statements[0], statements[1:]
    node = program.node(first)
    if node.kind is NodeKind.RETURN:
        if not node.children:
            return None
        return [(conditions, substitute(program.subtree(node.children[0]), env))]
    if node.kind is NodeKind.LET:
        extended = dict(env)
        extended[node.attr('target')] = substitute(program.subtree(node.children[0]), env)
        return _cases_from(program, rest, extended, conditions)
    if node.kind is NodeKind.PASS or _is_docstring(program, first):
        return _cases_from(program, rest, env, conditions)
    if node.kind is NodeKind.IF:
        test = substitute(program.subtree(node.children[0]), env)
        then_statements = list(program.children(node.children[1])) + rest
        else_statements = (list(program.children(node.children[2])) if len(node.children) > 2 else []) + rest
        positive = _cases_from(program, then_statements, env, conditions + (test,))
        negative = _cases_from(program, else_statements, env, conditions + (negate(test),))
        if positive is None or negative is None:
            return None
        return positive + negative
    return None


def function_cases(program: ReifiedProgram, function: str) -> Optional[List[Case]]:
    """The body as (path conditions, returned expression) pairs, locals substituted."""
    index = program.function(function)
    if index is None:
        return None
    return _cases_from(program, list(program.children(program.children(index)[0])), {}, ())


def path_conditions(program: ReifiedProgram, function_index: int,
                    call_index: int) -> Optional[Tuple[List[ReifiedProgram], ReifiedProgram]]:
    """
    Conditions known to hold at a call site and the call with locals
    substituted, or None when the path cannot be followed soundly.
    """
    env: Dict[str, ReifiedProgram] = {}
    poisoned: Set[str] = set()
    conditions: List[ReifiedProgram] = []

    def resolve(index: int) -> Optional[ReifiedProgram]:
        expr = program.subtree(index)
        if set(free_identifiers(expr)) & poisoned:
            return None
        return substitute(expr, env)

    def poison(block: int) -> None:
        for i in program.find(NodeKind.LET, block):
            poisoned.add(program.node(i).attr('target'))
            env.pop(program.node(i).attr('target'), None)

    statements = list(program.children(program.children(function_index)[0]))
    while statements:
        statement = statements.pop(0)
        node = program.node(statement)
        inside = set(program.walk(statement))
        if call_index in inside:
            if node.kind is NodeKind.IF and call_index not in set(program.walk(node.children[0])):
                test = resolve(node.children[0])
                if test is None:
                    return None
                if call_index in set(program.walk(node.children[1])):
                    conditions.append(test)
                    statements = list(program.children(node.children[1]))
                else:
                    conditions.append(negate(test))
                    statements = list(program.children(node.children[2]))
                continue
            if node.kind in (NodeKind.WHILE, NodeKind.FUNCTION):
                return None
            site = resolve(call_index)
            return (conditions, site) if site is not None else None
        if node.kind is NodeKind.LET:
            value = resolve(node.children[0])
            if value is None:
                poisoned.add(node.attr('target'))
            else:
                env[node.attr('target')] = value
                poisoned.discard(node.attr('target'))
        elif node.kind is NodeKind.IF:
            then_returns = _block_returns(program, node.children[1])
            else_returns = len(node.children) > 2 and _block_returns(program, node.children[2])
            if then_returns and else_returns:
                return None
            if then_returns:
                test = resolve(node.children[0])
                if test is None:
                    return None
                conditions.append(negate(test))
                if len(node.children) > 2:
                    poison(node.children[2])
            else:
                poison(node.children[1])
                if len(node.children) > 2:
                    poison(node.children[2])
        elif node.kind is NodeKind.WHILE:
            poison(node.children[1])
    return None


# ── Types ────────────────────────────────────────────────────────────────

def _call_name(canonical: tuple) -> Optional[str]:
    if not canonical or canonical[0] != NodeKind.CALL.value:
        return None
    callee = canonical[2][0]
    if callee[0] != NodeKind.IDENTIFIER.value:
        return None
    return dict(callee[1])['name'][1]


def integer_predicate(theorem: Theorem, function: Optional[str] = None) -> Callable[[Hashable], bool]:
    """Atoms known to range over integers, from type bindings and annotations."""
    program = theorem.context.program
    names = {n for n, t in theorem.context.type_bindings.items() if t == 'int'}
    if function is not None and program.function(function) is not None:
        node = program.node(program.function(function))
        annotations = node.attr('annotations') or ()
        names.update(p for p, a in zip(node.attr('params', ()), annotations) if a == 'int')
    int_functions = {
        name for name, index in program.functions().items()
        if program.node(index).attr('returns') == 'int'
    }

    def is_integer(atom: Hashable) -> bool:
        if atom[0] == 'id':
            return atom[1] in names
        return _call_name(atom[1]) in int_functions

    return is_integer


def linear_constraints(formula: ReifiedProgram, is_integer) -> Optional[List[Constraint]]:
    """Constraints of a goal; None unless every conjunct is linear."""
    return constraints_of(formula, is_integer=is_integer)


def hypothesis_constraints(formula: ReifiedProgram, is_integer) -> List[Constraint]:
    """Constraints of the linear conjuncts of a hypothesis. Dropping the rest only weakens it."""
    found: List[Constraint] = []
    for part in conjuncts(formula):
        constraints = constraints_of(part, is_integer=is_integer)
        if constraints is not None:
            found.extend(constraints)
    return found


def lower_bounds(param: str, hypotheses: Sequence[Constraint]) -> List:
    """Constants L with ``param ≥ L`` stated directly by a hypothesis."""
    bounds = []
    key = ('id', param)
    for hypothesis in hypotheses:
        if hypothesis.form.atoms != frozenset({key}):
            continue
        coefficient = hypothesis.form.terms[key]
        if coefficient > 0:
            bound = -hypothesis.form.constant_term / coefficient
            if bound not in bounds:
                bounds.append(bound)
    return bounds


def bound_literal(value) -> ReifiedProgram:
    return number(int(value) if value.denominator == 1 else float(value))


# ── Call structure ───────────────────────────────────────────────────────

def reachable_functions(program: ReifiedProgram, roots: Sequence[str]) -> List[str]:
    graph = call_graph(program)
    seen: List[str] = []
    stack = [r for r in roots if r in graph]
    while stack:
        name = stack.pop()
        if name in seen:
            continue
        seen.append(name)
        stack.extend(callee for callee, _ in graph[name])
    return seen


def opaque_calls(program: ReifiedProgram, functions: Sequence[str]) -> List[str]:
    """Call sites whose target cannot be analysed statically, described."""
    known = program.functions()
    problems = []
    for name in functions:
        index = known[name]
        params = set(program.node(index).attr('params', ()))
        quoted: Set[int] = set()
        for q in program.find(NodeKind.QUOTE, index):
            quoted.update(program.walk(q))
        for call_index in program.find(NodeKind.CALL, index):
            if call_index in quoted:
                continue
            target = call_target(program, call_index)
            if target is None or target in params:
                problems.append(f"{name}: computed callee")
            elif target in known:
                continue
            elif target not in PRIMITIVES:
                problems.append(f"{name}: unknown function {target!r}")
            elif target in ('contains', 'call_primitive'):
                problems.append(f"{name}: {target} may apply an arbitrary function")
        if program.find(NodeKind.WHILE, index):
            problems.append(f"{name}: while loop")
    return problems


def recursive_components(program: ReifiedProgram, functions: Sequence[str]) -> List[Set[str]]:
    graph = call_graph(program)
    components = []
    for component in strongly_connected(graph):
        if not component & set(functions):
            continue
        if len(component) > 1 or any(callee == next(iter(component)) for callee, _ in graph[next(iter(component))]):
            components.append(component)
    return components


def component_edges(program: ReifiedProgram, component: Set[str]) -> List[Tuple[str, str, int]]:
    graph = call_graph(program)
    return [(caller, callee, site) for caller in sorted(component)
            for callee, site in graph[caller] if callee in component]


def acyclic(nodes: Set[str], edges: Sequence[Tuple[str, str]]) -> bool:
    remaining = {n: {b for a, b in edges if a == n} for n in nodes}
    while remaining:
        sinks = [n for n, out in remaining.items() if not (out & set(remaining))]
        if not sinks:
            return False
        for n in sinks:
            del remaining[n]
    return True


def complexity_class(program: ReifiedProgram, function: str) -> Optional[ComplexityClass]:
    """Growth class of evaluation steps, or None when it cannot be bounded statically."""
    reachable = reachable_functions(program, [function])
    if not reachable or opaque_calls(program, reachable):
        return None
    memoized = memoized_functions(program)
    classes = []
    for component in recursive_components(program, reachable):
        if component & set(memoized):
            classes.append(ComplexityClass.LINEAR)
            continue
        edges = component_edges(program, component)
        per_caller = {caller: sum(1 for c, _, _ in edges if c == caller) for caller in component}
        classes.append(ComplexityClass.EXPONENTIAL if max(per_caller.values()) > 1 else ComplexityClass.LINEAR)
    if not classes:
        return ComplexityClass.CONSTANT
    worst = max(classes)
    if worst == ComplexityClass.LINEAR and len(classes) > 1:
        return ComplexityClass.POLYNOMIAL
    return worst
