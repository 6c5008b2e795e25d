"""
Tests for the meta-circular evaluator and the fixed-point solver.

    1. primitives.py   - primitive table, memo tables, structural keys
    2. evaluator.py    - values, budgets, cancellation, reflective evaluation
    3. fixed_point.py  - Kleene iteration, Liar and Russell detection
"""

import textwrap
import threading
import pytest

# ═══════════════════════════════════════════════════════════════════
#  Test Fixtures: Sample Programs
# ═══════════════════════════════════════════════════════════════════

def fibonacci(n):
    if n < 2:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)

def gcd(a, b):
    while b != 0:
        t = b
        b = a % b
        a = t
    return a

def forever(n):
    return forever(n + 1)


# An interpreter written in the object language: evaluating it with the
# meta-circular evaluator runs two levels of interpretation.
INNER_INTERPRETER = textwrap.dedent("""
    def ev_args(nodes, i, env):
        if i >= len(nodes):
            return []
        return [ev(get(nodes, i), env)] + ev_args(nodes, i + 1, env)

    def ev(code, env):
        kind = node_kind(code)
        if kind == 'Literal':
            return node_attr(code, 'value')
        if kind == 'Identifier':
            return lookup(env, node_attr(code, 'name'))
        if kind == 'BinaryOp':
            left = ev(node_child(code, 0), env)
            right = ev(node_child(code, 1), env)
            return apply_operator(node_attr(code, 'op'), left, right)
        if kind == 'Quote':
            return node_child(code, 0)
        if kind == 'Call':
            name = node_attr(node_child(code, 0), 'name')
            return call_primitive(name, ev_args(node_children(code), 1, env))
        return fail(kind)
""")


# ═══════════════════════════════════════════════════════════════════
#  Module 1: Primitives
# ═══════════════════════════════════════════════════════════════════

class TestPrimitives:
    """The fixed primitive table."""

    def test_table_contents(self):
        from godelpy.evaluation.primitives import PRIMITIVES
        for name in ('len', 'abs', 'min', 'max', 'get', 'contains', 'node_kind', 'node_attr',
                     'node_child', 'node_children', 'node_count', 'analyze_complexity',
                     'apply_operator', 'call_primitive', 'memo_table', 'current_code'):
            assert name in PRIMITIVES

    def test_memo_primitives_are_impure(self):
        from godelpy.evaluation.primitives import PRIMITIVES
        assert PRIMITIVES['memo_key'].pure
        for name in ('memo_table', 'memo_contains', 'memo_get', 'memo_put', 'fail'):
            assert not PRIMITIVES[name].pure

    def test_memo_table_capacity(self):
        from godelpy.evaluation.primitives import memo_key, memo_table
        table = memo_table(2)
        for i in range(5):
            table.put(memo_key(i), i * i)
        assert len(table) == 2

    def test_structural_key_of_code(self):
        from godelpy.evaluation.primitives import structural_key
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        a = reifier.reify_expression('x + 1')
        b = reifier.reify_expression('x + 1')
        assert structural_key(a) == structural_key(b)
        assert structural_key([1, (2, 3)]) == structural_key([1, (2, 3)])

    def test_apply_operator_faults(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.primitives import apply_binary
        assert apply_binary('+', 2, 3) == 5
        with pytest.raises(EvaluationError):
            apply_binary('/', 1, 0)
        with pytest.raises(EvaluationError):
            apply_binary('+', 1, 'a')

    def test_host_overflow_becomes_evaluation_error(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.primitives import apply_binary
        with pytest.raises(EvaluationError):
            apply_binary('**', 2.0, 10000)

    @pytest.mark.parametrize("op, left, right", [
        ('**', 3, 3_000_000),
        ('**', 10, 10 ** 10),
        ('*', 'ab', 10 ** 9),
        ('*', [0], 10 ** 9),
    ])
    def test_oversized_result_is_refused(self, op, left, right):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.primitives import apply_binary
        with pytest.raises(EvaluationError) as info:
            apply_binary(op, left, right)
        assert info.value.meta['size'] > 0

    def test_result_size(self):
        from godelpy.evaluation.primitives import result_size
        assert result_size('**', 1, 10 ** 12) == 0
        assert result_size('**', 2, -5) == 0
        assert result_size('**', 2, 64) == 128
        assert result_size('+', 10 ** 100, 1) == 0
        assert result_size('*', 2 ** 10, 2 ** 10) == 22

    @pytest.mark.parametrize("name, args", [
        ('min', ()),
        ('max', ()),
        ('abs', ('x',)),
    ])
    def test_bad_primitive_call_becomes_evaluation_error(self, name, args):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.primitives import PRIMITIVES, _invoke_primitive
        with pytest.raises(EvaluationError) as info:
            _invoke_primitive(PRIMITIVES[name], args)
        assert info.value.meta['primitive'] == name


# ═══════════════════════════════════════════════════════════════════
#  Module 2: Meta-Circular Evaluator
# ═══════════════════════════════════════════════════════════════════

class TestEvaluatorValues:
    """Evaluated values agree with native execution."""

    def test_fibonacci(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(fibonacci)
        result = MetaCircularEvaluator().evaluate(program, 100_000, entry='fibonacci', args=(15,))
        assert result.value == fibonacci(15) == 610
        assert result.metadata.evaluation_steps > 0
        assert result.metadata.stack_depth >= 15

    def test_while_loop(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(gcd)
        result = MetaCircularEvaluator().evaluate(program, 10_000, entry='gcd', args=(1071, 462))
        assert result.value == gcd(1071, 462) == 21

    def test_last_expression_statement(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("x = 4\ny = [x, x * 2]\nget(y, 1) + len(y)\n")
        assert MetaCircularEvaluator().evaluate(program, 1000).value == 10

    def test_expression_program(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        expr = Reifier().reify_expression("(1 if 2 > 1 else 0) + max(3, 4)")
        assert MetaCircularEvaluator().evaluate(expr, 100).value == 5

    def test_quote_yields_code(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.nodes import ReifiedProgram
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        program = reifier.reify("quote(a * (b + 1))\n")
        value = MetaCircularEvaluator().evaluate(program, 100).value
        assert isinstance(value, ReifiedProgram)
        assert value == reifier.reify_expression('a * (b + 1)')

    def test_current_code_is_running_function(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def me():\n    return node_attr(current_code(), 'name')\n")
        assert MetaCircularEvaluator().evaluate(program, 1000, entry='me').value == 'me'

    def test_runtime_fault(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def f(x):\n    return x / 0\n")
        with pytest.raises(EvaluationError):
            MetaCircularEvaluator().evaluate(program, 1000, entry='f', args=(1,))

    @pytest.mark.parametrize("source", [
        "def f(n):\n    return n + 2.0 ** 10000\n",
        "def f(n):\n    return 3 ** (n * 1000000)\n",
        "def f(n):\n    return min()\n",
        "def f(n):\n    return abs('x')\n",
    ])
    def test_host_faults_surface_as_evaluation_errors(self, source):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(source)
        with pytest.raises(EvaluationError):
            MetaCircularEvaluator().evaluate(program, 1000, entry='f', args=(3,))

    def test_unbound_identifier(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        with pytest.raises(EvaluationError):
            MetaCircularEvaluator().evaluate(Reifier().reify("undefined_name + 1\n"), 100)

    def test_trace_is_capped(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(fibonacci)
        result = MetaCircularEvaluator(trace_limit=50).evaluate(program, 100_000,
                                                                entry='fibonacci', args=(10,))
        assert len(result.trace.steps) <= 50
        assert result.trace.dropped > 0


class TestEvaluatorBounds:
    """Every evaluation runs under a step and depth budget."""

    def test_infinite_loop_hits_step_bound(self):
        from godelpy.errors import EvaluationBoundExceeded
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("while True:\n    pass\n")
        with pytest.raises(EvaluationBoundExceeded) as info:
            MetaCircularEvaluator().evaluate(program, 1000)
        assert info.value.limit == 'steps'
        assert info.value.steps == 1000

    def test_infinite_recursion_hits_depth_bound(self):
        from godelpy.errors import EvaluationBoundExceeded
        from godelpy.evaluation.evaluator import EvaluationBound, MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(forever)
        with pytest.raises(EvaluationBoundExceeded) as info:
            MetaCircularEvaluator().evaluate(program, EvaluationBound(1_000_000, 200),
                                             entry='forever', args=(0,))
        assert info.value.limit == 'depth'
        assert info.value.depth == 200

    def test_deep_recursion_does_not_use_host_stack(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def down(n):\n    if n == 0:\n        return 0\n    return 1 + down(n - 1)\n")
        result = MetaCircularEvaluator().evaluate(program, 1_000_000, entry='down', args=(5000,))
        assert result.value == 5000

    def test_cancellation(self):
        from godelpy.errors import EvaluationCancelled
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(EvaluationCancelled) as info:
            MetaCircularEvaluator().evaluate(Reifier().reify(forever), 1000,
                                             entry='forever', args=(0,), cancel=cancel)
        assert info.value.steps == 0


class TestReflectiveEvaluation:
    """Programs that inspect and interpret their own code."""

    def test_node_primitives(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(textwrap.dedent("""
            code = quote(f(1, 2))
            [node_kind(code), node_count(code), len(node_children(code))]
        """))
        assert MetaCircularEvaluator().evaluate(program, 1000).value == ['Call', 4, 3]

    def test_analyze_complexity_of_quoted_code(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("get(analyze_complexity(quote(1 + 2)), 'node_count')\n")
        assert MetaCircularEvaluator().evaluate(program, 1000).value == 3

    def test_two_level_interpretation(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        source = INNER_INTERPRETER + "ev(quote((1 + 2) * x), bind(make_env(), 'x', 7))\n"
        result = MetaCircularEvaluator().evaluate(Reifier().reify(source), 100_000)
        assert result.value == 21

    def test_inner_interpreter_sees_quoted_code(self):
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        source = INNER_INTERPRETER + "ev(quote(node_count(quote(1 + 2))), make_env())\n"
        result = MetaCircularEvaluator().evaluate(Reifier().reify(source), 100_000)
        assert result.value == 3

    def test_inner_interpreter_faults_propagate(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        source = INNER_INTERPRETER + "ev(quote(missing + 1), make_env())\n"
        with pytest.raises(EvaluationError):
            MetaCircularEvaluator().evaluate(Reifier().reify(source), 100_000)


# ═══════════════════════════════════════════════════════════════════
#  Module 3: Fixed-Point Solver
# ═══════════════════════════════════════════════════════════════════

class TestFixedPointConvergence:
    """Kleene iteration from a seed."""

    def test_converges(self):
        from godelpy.evaluation.fixed_point import FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def climb(x):\n    return min(x + 1, 10)\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program, 0)
        assert result.converged
        assert result.value == 10
        assert result.iterations == 11
        assert result.history[0] == '0'

    def test_halving_reaches_zero(self):
        from godelpy.evaluation.fixed_point import FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def half(x):\n    return x // 2\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program, 100)
        assert result.value == 0

    def test_iteration_bound(self):
        from godelpy.evaluation.fixed_point import Diverged, FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def inc(x):\n    return x + 1\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program, 0, bound=5)
        assert isinstance(result.outcome, Diverged)
        assert result.iterations == 5
        with pytest.raises(ValueError):
            result.value

    def test_unclassified_cycle(self):
        from godelpy.evaluation.fixed_point import Diverged, FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def flip(x):\n    return 1 - x\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program, 0)
        assert isinstance(result.outcome, Diverged)
        assert 'cycle' in result.outcome.reason
        assert not result.is_paradox

    def test_step_budget_exhausted(self):
        from godelpy.evaluation.fixed_point import Diverged, FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def spin(x):\n    while True:\n        pass\n    return x\n")
        result = FixedPointSolver(MetaCircularEvaluator(), step_bound=500).fixed_point(program, 0)
        assert isinstance(result.outcome, Diverged)
        assert result.iterations == 1

    def test_looping_top_level_code_diverges(self):
        from godelpy.evaluation.fixed_point import Diverged, FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def keep(x):\n    return x\n\nwhile True:\n    pass\n")
        result = FixedPointSolver(MetaCircularEvaluator(), step_bound=500).fixed_point(program, 0)
        assert isinstance(result.outcome, Diverged)
        assert result.iterations == 0
        assert 'top-level' in result.outcome.reason

    def test_requires_unary_function(self):
        from godelpy.errors import EvaluationError
        from godelpy.evaluation.fixed_point import FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def add(a, b):\n    return a + b\n")
        with pytest.raises(EvaluationError):
            FixedPointSolver(MetaCircularEvaluator()).fixed_point(program, 0)


class TestParadoxDetection:
    """Self-referential definitions are classified, not looped on."""

    def test_liar(self):
        from godelpy.evaluation.fixed_point import FixedPointSolver, Paradox, ParadoxKind
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def f(g):\n    return not g(g)\n")
        solver = FixedPointSolver(MetaCircularEvaluator())
        result = solver.fixed_point(program)
        assert isinstance(result.outcome, Paradox)
        assert result.outcome.kind is ParadoxKind.LIAR
        assert result.iterations <= 3
        assert solver.paradoxes_detected == 1

    @pytest.mark.parametrize('body', ['not contains(s, s)', 's not in s', 'not (s in s)'])
    def test_russell(self, body):
        from godelpy.evaluation.fixed_point import FixedPointSolver, ParadoxKind
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(f"def r(s):\n    return {body}\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program)
        assert result.is_paradox
        assert result.outcome.kind is ParadoxKind.RUSSELL
        assert result.iterations <= 3

    def test_classify_cycle_shapes(self):
        from godelpy.evaluation.fixed_point import ParadoxKind, classify_cycle
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        liar = reifier.reify("def f(g):\n    return not g(g)\n").child(0)
        assert classify_cycle(liar).kind is ParadoxKind.LIAR
        plain = reifier.reify("def f(g):\n    return g(1)\n").child(0)
        assert classify_cycle(plain) is None

    def test_self_application_without_negation_is_not_a_paradox(self):
        from godelpy.evaluation.fixed_point import FixedPointSolver
        from godelpy.evaluation.evaluator import MetaCircularEvaluator
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify("def f(g):\n    return g(g)\n")
        result = FixedPointSolver(MetaCircularEvaluator()).fixed_point(program)
        assert not result.is_paradox
        assert not result.converged
