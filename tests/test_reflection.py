"""
Tests for the reflection layer.

    1. nodes.py      - program arena, structural equality, rewriting helpers
    2. reifier.py    - quote/unquote, round trips, unsupported constructs
    3. inspector.py  - live-unit reports, call graphs, advisory termination
"""

import ast
import textwrap
import pytest

# ═══════════════════════════════════════════════════════════════════
#  Test Fixtures: Sample Functions
# ═══════════════════════════════════════════════════════════════════

def fibonacci(n):
    """Doubly recursive Fibonacci."""
    if n < 2:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)

def countdown(n):
    total = 0
    while n > 0:
        total += n
        n = n - 1
    return total

def classify(x: int) -> str:
    label = 'small' if x < 10 else 'large'
    if x < 0:
        return 'negative'
    elif x == 0:
        return 'zero'
    return label

def pick(items, i):
    pair = [items, (i, i + 1)]
    return items[i] if i < len(items) and not (i < 0) else None


MODULE_SOURCE = textwrap.dedent("""
    def is_even(n):
        if n == 0:
            return True
        return is_odd(n - 1)

    def is_odd(n):
        if n == 0:
            return False
        return is_even(n - 1)

    def helper(x):
        return x * 2
""")


# ═══════════════════════════════════════════════════════════════════
#  Module 1: Program Arena
# ═══════════════════════════════════════════════════════════════════

class TestReifiedProgram:
    """Structural identity and navigation of the immutable arena."""

    def test_same_source_same_program(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        a = reifier.reify(fibonacci)
        b = reifier.reify(fibonacci)
        assert a == b
        assert hash(a) == hash(b)
        assert a.fingerprint() == b.fingerprint()

    def test_different_source_differs(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        assert reifier.reify("x = 1\n") != reifier.reify("x = 2\n")

    def test_functions_and_kinds(self):
        from godelpy.reflection.nodes import NodeKind
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(MODULE_SOURCE)
        assert program.kind is NodeKind.PROGRAM
        assert list(program.functions()) == ['is_even', 'is_odd', 'helper']
        helper = program.node(program.function('helper'))
        assert helper.kind is NodeKind.FUNCTION
        assert helper.attr('params') == ('x',)

    def test_subtree_is_self_contained(self):
        from godelpy.reflection.nodes import NodeKind
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(MODULE_SOURCE)
        sub = program.subtree(program.function('helper'))
        assert sub.kind is NodeKind.FUNCTION
        assert sub.count_nodes() < program.count_nodes()

    def test_find_and_walk(self):
        from godelpy.reflection.nodes import NodeKind
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(fibonacci)
        calls = program.find(NodeKind.CALL)
        assert len(calls) == 2
        assert len(list(program.walk())) == program.count_nodes()

    def test_builders_compose(self):
        from godelpy.reflection.nodes import binary, call, identifier, literal
        from godelpy.reflection.reifier import Reifier, to_source
        expr = binary('+', call('f', identifier('n')), literal(1))
        assert to_source(expr) == '(f(n) + 1)'
        assert expr == Reifier().reify_expression('f(n) + 1')

    def test_substitute_replaces_free_identifiers(self):
        from godelpy.reflection.nodes import literal, substitute
        from godelpy.reflection.reifier import Reifier, to_source
        reifier = Reifier()
        expr = reifier.reify_expression('x * y + x')
        result = substitute(expr, {'x': literal(3)})
        assert result == reifier.reify_expression('3 * y + 3')
        assert 'x' not in to_source(result)

    def test_negative_literal_is_negation(self):
        from godelpy.reflection.nodes import NodeKind
        from godelpy.reflection.reifier import Reifier
        expr = Reifier().reify_expression('-1')
        assert expr.kind is NodeKind.UNARY_OP
        assert expr.attr('op') == '-'
        assert expr.child(0).attr('value') == 1


# ═══════════════════════════════════════════════════════════════════
#  Module 2: Reifier
# ═══════════════════════════════════════════════════════════════════

class TestReifierRoundTrip:
    """reify(reflect(p)) == p for every supported construct."""

    @pytest.mark.parametrize('unit', [fibonacci, countdown, classify, pick])
    def test_function_round_trip(self, unit):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        program = reifier.reify(unit)
        again = reifier.reify(reifier.reflect(program))
        assert again == program
        reifier.assert_round_trip(program)

    def test_module_round_trip(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier(check_round_trip=True)
        program = reifier.reify(MODULE_SOURCE)
        assert reifier.reify(reifier.reflect(program)) == program

    def test_quote_round_trip(self):
        from godelpy.reflection.nodes import NodeKind
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        program = reifier.reify("code = quote(x + 1)\n")
        assert program.find(NodeKind.QUOTE)
        reifier.assert_round_trip(program)

    def test_annotations_preserved(self):
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(classify)
        node = program.node(program.function('classify'))
        assert node.attr('annotations') == ('int',)
        assert node.attr('returns') == 'str'

    def test_reflected_unit_executes(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        unit = reifier.reflect(reifier.reify(fibonacci))
        assert unit.name == 'fibonacci'
        namespace = unit.compile()
        assert namespace['fibonacci'](10) == 55

    def test_reify_accepts_ast(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        tree = ast.parse("def inc(x):\n    return x + 1\n")
        assert reifier.reify(tree) == reifier.reify(tree.body[0])

    def test_reified_count(self):
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        reifier.reify(fibonacci)
        reifier.reify(countdown)
        assert reifier.reified_count == 2


class TestReifierUnsupported:
    """Constructs that cannot be represented are rejected, never approximated."""

    @pytest.mark.parametrize('source, construct', [
        ("for i in x:\n    pass\n", 'For'),
        ("f = lambda x: x\n", 'Lambda'),
        ("a, b = 1, 2\n", 'Assign'),
        ("def f(x=1):\n    return x\n", 'FunctionDef.arguments'),
        ("@dec\ndef f(x):\n    return x\n", 'FunctionDef.decorators'),
        ("x = 1 < 2 < 3\n", 'Compare'),
        ("x = y[1:2]\n", 'Slice'),
        ("class A:\n    pass\n", 'ClassDef'),
    ])
    def test_unsupported_construct(self, source, construct):
        from godelpy.errors import ErrorCode, ReificationUnsupported
        from godelpy.reflection.reifier import Reifier
        with pytest.raises(ReificationUnsupported) as info:
            Reifier().reify(source)
        assert info.value.construct == construct
        assert info.value.code is ErrorCode.REIFICATION_UNSUPPORTED

    def test_syntax_error(self):
        from godelpy.errors import ReificationUnsupported
        from godelpy.reflection.reifier import Reifier
        with pytest.raises(ReificationUnsupported):
            Reifier().reify("def broken(:\n")

    def test_builtin_without_source(self):
        from godelpy.errors import ReificationUnsupported
        from godelpy.reflection.reifier import Reifier
        with pytest.raises(ReificationUnsupported):
            Reifier().reify(len)


# ═══════════════════════════════════════════════════════════════════
#  Module 3: Inspector
# ═══════════════════════════════════════════════════════════════════

class TestCallGraph:
    """Static call structure."""

    def test_mutual_recursion_component(self):
        from godelpy.reflection.inspector import recursive_functions
        from godelpy.reflection.reifier import Reifier
        recursive = recursive_functions(Reifier().reify(MODULE_SOURCE))
        assert set(recursive) == {'is_even', 'is_odd'}
        assert recursive['is_even'] == {'is_even', 'is_odd'}

    def test_self_recursion(self):
        from godelpy.reflection.inspector import call_graph, recursive_functions
        from godelpy.reflection.reifier import Reifier
        program = Reifier().reify(fibonacci)
        assert [callee for callee, _ in call_graph(program)['fibonacci']] == ['fibonacci', 'fibonacci']
        assert 'fibonacci' in recursive_functions(program)

    def test_complexity_profile(self):
        from godelpy.reflection.inspector import complexity_profile
        from godelpy.reflection.reifier import Reifier
        profile = complexity_profile(Reifier().reify(countdown))
        assert profile['has_loops']
        assert profile['node_count'] > 0


class TestInspector:
    """Reports on live units registered with the runtime."""

    def test_inspect_function_unit(self):
        from godelpy.engine import GodelianEngine
        engine = GodelianEngine()
        engine.spawn('fib', fibonacci)
        report = engine.inspect('fib')
        assert report.basic_info.name == 'fib'
        assert report.basic_info.unit_type == 'function'
        assert report.basic_info.is_active
        (handler,) = report.behavior.handlers
        assert handler.name == 'fibonacci'
        assert handler.is_recursive
        flow = report.behavior.control_flow
        assert flow.has_recursion and not flow.has_loops
        assert flow.recursive_call_sites == 2

    def test_inspection_is_idempotent(self):
        from godelpy.engine import GodelianEngine
        engine = GodelianEngine()
        engine.spawn('fib', fibonacci)
        first = engine.inspect('fib')
        second = engine.inspect('fib')
        assert first.structural() == second.structural()
        assert engine.inspector.inspections == 2

    def test_performance_counters(self):
        from godelpy.engine import GodelianEngine
        engine = GodelianEngine()
        engine.spawn('fib', fibonacci)
        assert engine.inspect('fib').performance.total_calls == 0
        assert engine.invoke('fib', 'fibonacci', 12) == 144
        assert engine.invoke('fib', None, 5) == 5
        report = engine.inspect('fib')
        assert report.performance.total_calls == 2
        assert report.performance.average_latency >= 0.0
        assert report.performance.memory_usage > 0

    def test_module_unit(self):
        from godelpy.engine import GodelianEngine
        engine = GodelianEngine()
        engine.spawn('parity', MODULE_SOURCE)
        report = engine.inspect('parity')
        assert report.basic_info.unit_type == 'module'
        names = {h.name: h.is_recursive for h in report.behavior.handlers}
        assert names == {'is_even': True, 'is_odd': True, 'helper': False}

    def test_loop_is_not_guaranteed_to_terminate(self):
        from godelpy.engine import GodelianEngine
        engine = GodelianEngine()
        report = engine.inspect_program(engine.reify("while True:\n    pass\n"))
        assert report.behavior.control_flow.has_loops
        assert not report.behavior.control_flow.termination_guaranteed

    def test_unknown_identity(self):
        from godelpy.engine import GodelianEngine
        from godelpy.errors import IdentityNotFound
        engine = GodelianEngine()
        with pytest.raises(IdentityNotFound):
            engine.inspect('ghost')
