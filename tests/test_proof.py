"""
Tests for the proof layer.

    1. arithmetic.py  - linear forms, constraints, positivity certificates
    2. prover.py      - correctness, termination, equivalence, memory, complexity
    3. verifier.py    - independent re-checking of every step
"""

import dataclasses
import textwrap
from fractions import Fraction
import pytest

# ═══════════════════════════════════════════════════════════════════
#  Test Fixtures: Sample Functions
# ═══════════════════════════════════════════════════════════════════

def double(x):
    return x + x

def increment(x):
    return x + 1

def absolute(x):
    """Distance from zero."""
    if x < 0:
        return -x
    return x

def sum_to(n: int):
    if n <= 0:
        return 0
    return n + sum_to(n - 1)

def fibonacci(n):
    if n < 2:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)

def forever(n):
    return forever(n + 1)

def countdown(n):
    while n > 0:
        n = n - 1
    return n


PARITY_SOURCE = textwrap.dedent("""
    def is_even(n):
        if n <= 0:
            return True
        return is_odd(n - 1)

    def is_odd(n):
        if n <= 0:
            return False
        return is_even(n - 1)
""")

UNGUARDED_PARITY_SOURCE = textwrap.dedent("""
    def is_even(n):
        if n == 0:
            return True
        return is_odd(n - 1)

    def is_odd(n):
        if n == 0:
            return False
        return is_even(n - 1)
""")


def _engine():
    from godelpy.engine import GodelianEngine
    return GodelianEngine()


def _theorem(statement, program, name='theorem'):
    from godelpy.proof.theorem import Theorem, TheoremContext
    return Theorem(name, name, statement, TheoremContext(program=program))


# ═══════════════════════════════════════════════════════════════════
#  Module 1: Linear Arithmetic
# ═══════════════════════════════════════════════════════════════════

class TestLinearForms:
    """Normalisation of reified arithmetic."""

    def test_linearize(self):
        from godelpy.proof.arithmetic import CONSTANT, linearize
        from godelpy.reflection.reifier import Reifier
        form = linearize(Reifier().reify_expression('3 * x - (y - 2) + x'))
        assert form.terms[('id', 'x')] == 4
        assert form.terms[('id', 'y')] == -1
        assert form.constant_term == 2
        assert CONSTANT not in form.atoms

    def test_nonlinear_terms_are_atoms(self):
        from godelpy.proof.arithmetic import linearize
        from godelpy.reflection.reifier import Reifier
        form = linearize(Reifier().reify_expression('x * y + f(n - 1)'))
        assert len(form.atoms) == 2

    def test_non_numeric_is_none(self):
        from godelpy.proof.arithmetic import linearize
        from godelpy.reflection.reifier import Reifier
        assert linearize(Reifier().reify_expression("'a' + x")) is None

    def test_constraints_of_negation(self):
        from godelpy.proof.arithmetic import constraints_of
        from godelpy.reflection.reifier import Reifier
        (constraint,) = constraints_of(Reifier().reify_expression('not (x < 2)'))
        assert not constraint.strict
        assert constraint.form.constant_term == -2

    def test_integer_strengthening(self):
        from godelpy.proof.arithmetic import constraints_of
        from godelpy.reflection.reifier import Reifier
        expr = Reifier().reify_expression('n > 0')
        (plain,) = constraints_of(expr)
        (strong,) = constraints_of(expr, is_integer=lambda atom: atom == ('id', 'n'))
        assert plain.strict
        assert not strong.strict
        assert strong.form.constant_term == -1

    def test_equality_is_two_constraints(self):
        from godelpy.proof.arithmetic import constraints_of
        from godelpy.reflection.reifier import Reifier
        assert len(constraints_of(Reifier().reify_expression('x == y and y >= 0'))) == 3


class TestCertificates:
    """Certificates are found numerically and checked exactly."""

    def test_find_and_check(self):
        from godelpy.proof.arithmetic import check_certificate, constraints_of, find_certificate
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        hypotheses = constraints_of(reifier.reify_expression('x > 0 and y >= 1'))
        (goal,) = constraints_of(reifier.reify_expression('2 * x + y > 1'))
        certificate = find_certificate(goal, hypotheses)
        assert certificate is not None
        assert check_certificate(goal, hypotheses, certificate)
        assert all(isinstance(m, Fraction) for m in certificate.multipliers)

    def test_no_certificate_for_false_goal(self):
        from godelpy.proof.arithmetic import constraints_of, find_certificate
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        hypotheses = constraints_of(reifier.reify_expression('x >= 0'))
        (goal,) = constraints_of(reifier.reify_expression('x > 0'))
        assert find_certificate(goal, hypotheses) is None

    def test_negative_multiplier_rejected(self):
        from godelpy.proof.arithmetic import Certificate, check_certificate, constraints_of
        from godelpy.reflection.reifier import Reifier
        reifier = Reifier()
        hypotheses = constraints_of(reifier.reify_expression('x <= 0'))
        (goal,) = constraints_of(reifier.reify_expression('x >= 0'))
        assert not check_certificate(goal, hypotheses, Certificate((Fraction(-1),), Fraction(0)))


# ═══════════════════════════════════════════════════════════════════
#  Module 2: Functional Correctness
# ═══════════════════════════════════════════════════════════════════

class TestCorrectnessProofs:
    """Unfolding, case analysis and induction."""

    def test_double_exceeds_positive_input(self):
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(double), 'double', 'x > 0', 'result > x')
        proof, result = engine.prove_and_verify(theorem)
        assert proof.method == 'unfolding'
        assert result.verified
        assert result.errors == ()
        assert result.warnings == ()
        assert proof.metrics.step_count == len(proof.steps)

    def test_case_analysis(self):
        from godelpy.proof.theorem import ProofRule
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(absolute), 'absolute', 'True', 'result >= 0')
        proof, result = engine.prove_and_verify(theorem)
        assert proof.method == 'case-analysis'
        assert result.verified
        assert sum(1 for s in proof.steps if s.rule is ProofRule.CASE_SPLIT) == 2

    def test_induction_on_integer_parameter(self):
        from godelpy.proof.theorem import ProofRule
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(sum_to), 'sum_to', 'n >= 0', 'result >= 0')
        proof, result = engine.prove_and_verify(theorem)
        assert proof.method == 'induction'
        assert result.verified, result.errors
        assert any(s.rule is ProofRule.INDUCTION_HYPOTHESIS for s in proof.steps)
        assert proof.metrics.logical_depth >= 3

    def test_hypothesis_produces_warning(self):
        from godelpy.proof.theorem import AssumptionStrength
        engine = _engine()
        theorem = engine.correctness_theorem(
            engine.reify(increment), 'increment', 'True', 'result > 0',
            assumptions={'non_negative_input': ('x >= 0', AssumptionStrength.HYPOTHESIS)},
        )
        proof, result = engine.prove_and_verify(theorem)
        assert result.verified
        assert any('non_negative_input' in w for w in result.warnings)

    def test_axiom_does_not_warn(self):
        from godelpy.proof.theorem import AssumptionStrength
        engine = _engine()
        theorem = engine.correctness_theorem(
            engine.reify(increment), 'increment', 'True', 'result > 0',
            assumptions={'non_negative_input': ('x >= 0', AssumptionStrength.AXIOM)},
        )
        _, result = engine.prove_and_verify(theorem)
        assert result.verified
        assert result.warnings == ()

    def test_lemma_is_cited(self):
        from godelpy.proof.theorem import ProofRule
        engine = _engine()
        theorem = engine.correctness_theorem(
            engine.reify(increment), 'increment', 'True', 'result > 5',
            lemmas={'large_input': 'x >= 5'},
        )
        proof, result = engine.prove_and_verify(theorem)
        assert result.verified
        assert any(s.rule is ProofRule.LEMMA for s in proof.steps)

    def test_unprovable_goal(self):
        from godelpy.errors import ProofSearchExhausted
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(double), 'double', 'True', 'result > x')
        with pytest.raises(ProofSearchExhausted):
            engine.prove(theorem)

    def test_unknown_function(self):
        from godelpy.errors import ProofSearchExhausted
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(double), 'triple', 'True', 'result > x')
        with pytest.raises(ProofSearchExhausted):
            engine.prove(theorem)

    def test_step_limit(self):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(double), 'double', 'x > 0', 'result > x')
        with pytest.raises(ProofSearchExhausted) as info:
            Prover(max_steps=3).prove(theorem)
        assert 'step limit' in info.value.reason


# ═══════════════════════════════════════════════════════════════════
#  Module 3: Other Theorem Kinds
# ═══════════════════════════════════════════════════════════════════

class TestTerminationProofs:
    """Ranking functions over the recursive call graph."""

    def test_fibonacci_terminates(self):
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import Termination
        from godelpy.reflection.reifier import Reifier
        prover = Prover()
        proof = prover.prove(_theorem(Termination('fibonacci'), Reifier().reify(fibonacci)))
        assert proof.method == 'ranking-function'
        assert prover.verify(proof).verified

    def test_mutual_recursion_terminates(self):
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import Termination
        from godelpy.reflection.reifier import Reifier
        prover = Prover()
        proof = prover.prove(_theorem(Termination(), Reifier().reify(PARITY_SOURCE)))
        assert prover.verify(proof).verified

    def test_non_recursive_is_structural(self):
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import Termination
        from godelpy.reflection.reifier import Reifier
        proof = Prover().prove(_theorem(Termination(), Reifier().reify(double)))
        assert proof.method == 'structural'

    @pytest.mark.parametrize('unit', [forever, countdown, UNGUARDED_PARITY_SOURCE])
    def test_no_measure(self, unit):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import Termination
        from godelpy.reflection.reifier import Reifier
        with pytest.raises(ProofSearchExhausted):
            Prover().prove(_theorem(Termination(), Reifier().reify(unit)))

    def test_advisory_flag_is_not_trusted(self):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import Termination
        program = _engine().reify(UNGUARDED_PARITY_SOURCE)
        with pytest.raises(ProofSearchExhausted):
            Prover().prove(_theorem(Termination('is_even'), program))


class TestEquivalenceMemoryComplexity:
    """Rewrite lemmas, bounded allocation and call-graph complexity."""

    def _memoized(self, cache_size=1000):
        from godelpy.reflection.reifier import Reifier
        from godelpy.transform.transformer import Transformer, TransformationSpec
        before = Reifier().reify(fibonacci)
        spec = TransformationSpec.memoization('fibonacci', cache_size)
        return before, Transformer().apply_rule(before, spec), spec

    def test_memoization_equivalence(self):
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import ProofRule, TransformationEquivalence
        before, after, spec = self._memoized()
        prover = Prover()
        proof = prover.prove(_theorem(TransformationEquivalence(before, after, spec), after))
        assert proof.method == 'rewrite-lemma'
        assert any(s.rule is ProofRule.PURITY for s in proof.steps)
        assert prover.verify(proof).verified

    def test_equivalence_rejects_unrelated_program(self):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import TransformationEquivalence
        from godelpy.reflection.reifier import Reifier
        before, _, spec = self._memoized()
        unrelated = Reifier().reify(double)
        with pytest.raises(ProofSearchExhausted):
            Prover().prove(_theorem(TransformationEquivalence(before, unrelated, spec), unrelated))

    def test_memory_safety(self):
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import MemorySafety
        _, after, _ = self._memoized(cache_size=500)
        prover = Prover()
        proof = prover.prove(_theorem(MemorySafety(max_capacity=1000), after))
        assert proof.method == 'bounded-allocation'
        assert prover.verify(proof).verified

    def test_memory_safety_capacity_exceeded(self):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import MemorySafety
        _, after, _ = self._memoized(cache_size=5000)
        with pytest.raises(ProofSearchExhausted):
            Prover().prove(_theorem(MemorySafety(max_capacity=1000), after))

    @pytest.mark.parametrize('memoize, expected', [(False, 'EXPONENTIAL'), (True, 'LINEAR')])
    def test_complexity_classes(self, memoize, expected):
        from godelpy.proof.derivations import complexity_class
        before, after, _ = self._memoized()
        program = after if memoize else before
        assert complexity_class(program, 'fibonacci').name == expected

    def test_complexity_bound(self):
        from godelpy.errors import ProofSearchExhausted
        from godelpy.proof.prover import Prover
        from godelpy.proof.theorem import ComplexityBound, ComplexityClass
        before, after, _ = self._memoized()
        prover = Prover()
        proof = prover.prove(_theorem(ComplexityBound('fibonacci', ComplexityClass.POLYNOMIAL), after))
        assert proof.method == 'call-graph-analysis'
        assert prover.verify(proof).verified
        with pytest.raises(ProofSearchExhausted):
            prover.prove(_theorem(ComplexityBound('fibonacci', ComplexityClass.POLYNOMIAL), before))


# ═══════════════════════════════════════════════════════════════════
#  Module 4: Verifier
# ═══════════════════════════════════════════════════════════════════

class TestVerifier:
    """Tampered proofs are rejected step by step."""

    def _double_proof(self):
        engine = _engine()
        theorem = engine.correctness_theorem(engine.reify(double), 'double', 'x > 0', 'result > x')
        return engine, engine.prove(theorem)

    def test_bad_certificate(self):
        from godelpy.proof.arithmetic import Certificate
        from godelpy.proof.theorem import ProofRule
        engine, proof = self._double_proof()
        steps = list(proof.steps)
        position = next(i for i, s in enumerate(steps) if s.rule is ProofRule.LINEAR_ARITHMETIC)
        zero = Certificate(tuple(Fraction(0) for _ in steps[position].premises), Fraction(0))
        steps[position] = dataclasses.replace(steps[position], certificate=(zero,))
        result = engine.verify(dataclasses.replace(proof, steps=tuple(steps)))
        assert not result.verified
        assert any(issue.step == position for issue in result.errors)

    def test_altered_formula(self):
        from godelpy.proof.theorem import ProofRule
        engine, proof = self._double_proof()
        steps = list(proof.steps)
        position = next(i for i, s in enumerate(steps) if s.rule is ProofRule.UNFOLD)
        steps[position] = dataclasses.replace(steps[position],
                                              formula=engine.reifier.reify_expression('x * 3 > x'))
        result = engine.verify(dataclasses.replace(proof, steps=tuple(steps)))
        assert not result.verified

    def test_missing_qed(self):
        engine, proof = self._double_proof()
        result = engine.verify(dataclasses.replace(proof, steps=proof.steps[:-1]))
        assert not result.verified
        assert any('QED' in issue.message for issue in result.errors)

    def test_misnumbered_step(self):
        engine, proof = self._double_proof()
        steps = list(proof.steps)
        steps[1] = dataclasses.replace(steps[1], index=7)
        result = engine.verify(dataclasses.replace(proof, steps=tuple(steps)))
        assert not result.verified

    def test_forward_premise(self):
        engine, proof = self._double_proof()
        steps = list(proof.steps)
        steps[0] = dataclasses.replace(steps[0], premises=(len(steps) - 1,))
        result = engine.verify(dataclasses.replace(proof, steps=tuple(steps)))
        assert not result.verified

    def test_verification_time_recorded(self):
        engine, proof = self._double_proof()
        result = engine.verify(proof)
        assert result.verified
        assert result.verification_time >= 0.0
