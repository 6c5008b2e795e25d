"""
Tests for the modification coordinator and the in-memory runtime.

    1. runtime.py      - spawn, resolve, install, invoke, counters
    2. coordinator.py  - PROPOSED → SAFETY_CHECKED → PROOF_DISCHARGED → COMMITTED,
                         rejections, rollback, per-identity exclusivity
"""

import textwrap
import threading
import pytest

# ═══════════════════════════════════════════════════════════════════
#  Test Fixtures: Sample Units
# ═══════════════════════════════════════════════════════════════════

def fibonacci(n):
    """Doubly recursive Fibonacci."""
    if n < 2:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)

def double(x):
    return x + x


GEOMETRY_SOURCE = textwrap.dedent("""
    def area(w, h):
        return w * h * (2 - 1)

    def perimeter(w, h):
        padding = 0
        return 2 * (w + h)
""")

GUARDED_PICK_SOURCE = textwrap.dedent("""
    def pick(c, x):
        return x if c else 0

    def h(n):
        return pick(n > 4, 10 // (n - 4))
""")


def _engine(**config):
    from godelpy.engine import EngineConfig, GodelianEngine
    return GodelianEngine(EngineConfig(**config))


def _memoization(*obligations):
    from godelpy.modification.coordinator import CodeModification, ModificationType, ProofObligation
    from godelpy.transform.transformer import TransformationSpec
    return CodeModification(
        ModificationType.OPTIMIZE_PERFORMANCE,
        transformation=TransformationSpec.memoization('fibonacci', cache_size=1000),
        proof_obligations=obligations or (ProofObligation.FUNCTIONAL_CORRECTNESS,),
    )


def _replacement(source, obligations=()):
    from godelpy.modification.coordinator import CodeModification, ModificationType
    return CodeModification(ModificationType.REPLACE_IMPLEMENTATION, replacement=source,
                            proof_obligations=obligations)


# ═══════════════════════════════════════════════════════════════════
#  Module 1: Runtime
# ═══════════════════════════════════════════════════════════════════

class TestInMemoryRuntime:
    """Live units and their counters."""

    def test_spawn_and_invoke(self):
        from godelpy.modification.runtime import InMemoryRuntime
        runtime = InMemoryRuntime()
        handle = runtime.spawn('fib', fibonacci)
        assert handle.version == 1
        assert handle.unit_type == 'function'
        assert runtime.invoke('fib', 'fibonacci', 10) == 55
        assert runtime.counters('fib').call_count == 1
        assert runtime.identities() == ('fib',)

    def test_install_replaces_unit(self):
        from godelpy.modification.runtime import InMemoryRuntime
        from godelpy.reflection.reifier import ExecutableUnit
        runtime = InMemoryRuntime()
        runtime.spawn('d', double)
        handle = runtime.install('d', ExecutableUnit('double', "def double(x):\n    return 2 * x\n"))
        assert handle.version == 2
        assert runtime.invoke('d', None, 4) == 8

    def test_unknown_identity(self):
        from godelpy.errors import IdentityNotFound
        from godelpy.modification.runtime import InMemoryRuntime
        runtime = InMemoryRuntime()
        for action in (lambda: runtime.resolve('ghost'),
                       lambda: runtime.counters('ghost'),
                       lambda: runtime.invoke('ghost'),
                       lambda: runtime.deactivate('ghost')):
            with pytest.raises(IdentityNotFound):
                action()

    def test_missing_function(self):
        from godelpy.errors import EvaluationError
        from godelpy.modification.runtime import InMemoryRuntime
        runtime = InMemoryRuntime()
        runtime.spawn('d', double)
        with pytest.raises(EvaluationError):
            runtime.invoke('d', 'triple', 1)

    def test_latency_samples_are_capped(self):
        from godelpy.modification.runtime import InMemoryRuntime
        runtime = InMemoryRuntime(max_latency_samples=3)
        runtime.spawn('d', double)
        for i in range(10):
            runtime.invoke('d', None, i)
        counters = runtime.counters('d')
        assert counters.call_count == 10
        assert len(counters.latencies) == 3

    def test_deactivate(self):
        from godelpy.modification.runtime import InMemoryRuntime
        runtime = InMemoryRuntime()
        runtime.spawn('d', double)
        runtime.deactivate('d')
        assert not runtime.resolve('d').is_active


# ═══════════════════════════════════════════════════════════════════
#  Module 2: Coordinator
# ═══════════════════════════════════════════════════════════════════

class TestCommit:
    """Modifications that pass every gate are installed."""

    def test_memoization_with_all_obligations(self):
        from godelpy.modification.coordinator import ModificationState, ProofObligation
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        outcome = engine.self_modify('fib', _memoization(
            ProofObligation.FUNCTIONAL_CORRECTNESS,
            ProofObligation.TERMINATION_GUARANTEE,
            ProofObligation.MEMORY_SAFETY,
            ProofObligation.COMPLEXITY_BOUND,
        ))
        assert outcome.committed, outcome.error
        assert outcome.transitions == (
            ModificationState.PROPOSED,
            ModificationState.SAFETY_CHECKED,
            ModificationState.PROOF_DISCHARGED,
            ModificationState.COMMITTED,
        )
        record = outcome.unwrap()
        assert record.sequence == 1
        assert len(record.proofs) == 4
        assert all(v.verified for v in record.verifications)
        assert record.benefit.speedup > 1.0
        assert engine.runtime.resolve('fib').version == 2
        assert engine.invoke('fib', 'fibonacci', 80) == 23416728348467685

    def test_live_program_is_the_new_program(self):
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        record = engine.self_modify('fib', _memoization()).unwrap()
        assert engine.coordinator.live_program('fib') == record.new_program
        assert engine.history('fib') == (record,)
        report = engine.inspect('fib')
        assert report.basic_info.fingerprint == record.new_program.fingerprint()

    def test_replacement_with_termination_obligation(self):
        from godelpy.modification.coordinator import ProofObligation
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _replacement("def double(x):\n    return 2 * x\n",
                                                       (ProofObligation.TERMINATION_GUARANTEE,)))
        assert outcome.committed
        assert outcome.record.benefit is None
        assert engine.invoke('d', None, 21) == 42


class TestRejection:
    """Every rejection is returned as an outcome and leaves the unit untouched."""

    def test_disabled_identity(self):
        from godelpy.errors import SelfModificationDisabled
        from godelpy.modification.coordinator import ModificationState
        engine = _engine()
        engine.spawn('fib', fibonacci)
        outcome = engine.self_modify('fib', _memoization())
        assert outcome.state is ModificationState.REJECTED
        assert isinstance(outcome.error, SelfModificationDisabled)
        assert outcome.rejected_at is ModificationState.PROPOSED
        with pytest.raises(SelfModificationDisabled):
            outcome.unwrap()

    def test_disable_after_enable(self):
        from godelpy.errors import SelfModificationDisabled
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        engine.coordinator.disable_self_modification('fib')
        assert not engine.coordinator.is_enabled('fib')
        assert isinstance(engine.self_modify('fib', _memoization()).error, SelfModificationDisabled)

    def test_unknown_identity(self):
        from godelpy.errors import IdentityNotFound
        engine = _engine()
        outcome = engine.self_modify('ghost', _memoization())
        assert isinstance(outcome.error, IdentityNotFound)
        with pytest.raises(IdentityNotFound):
            engine.enable_self_modification('ghost')

    def test_semantic_change_fails_safety(self):
        from godelpy.errors import SafetyViolation
        from godelpy.modification.coordinator import ModificationState, SafetyConstraint
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _replacement("def double(x):\n    return x * 3\n"))
        assert isinstance(outcome.error, SafetyViolation)
        assert outcome.error.constraint is SafetyConstraint.PRESERVE_SEMANTICS
        assert ModificationState.SAFETY_CHECKED not in outcome.transitions
        assert outcome.transitions == (ModificationState.PROPOSED, ModificationState.REJECTED)
        assert engine.invoke('d', None, 5) == 10
        assert engine.runtime.resolve('d').version == 1
        assert engine.history('d') == ()

    def test_special_case_at_a_literal_fails_safety(self):
        from godelpy.errors import SafetyViolation
        from godelpy.modification.coordinator import SafetyConstraint
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _replacement("def double(x):\n    return 0 if x == 4 else x + x\n"))
        assert isinstance(outcome.error, SafetyViolation)
        assert outcome.error.constraint is SafetyConstraint.PRESERVE_SEMANTICS
        assert 'double(4,)' in outcome.error.message
        assert engine.invoke('d', None, 4) == 8

    def test_interface_change_fails_safety(self):
        from godelpy.errors import SafetyViolation
        from godelpy.modification.coordinator import SafetyConstraint
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _replacement("def twice(x):\n    return x + x\n"))
        assert isinstance(outcome.error, SafetyViolation)
        assert outcome.error.constraint is SafetyConstraint.MAINTAIN_INTERFACE

    def test_replacement_cannot_discharge_correctness(self):
        from godelpy.errors import ProofFailed
        from godelpy.modification.coordinator import ModificationState, ProofObligation
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _replacement("def double(x):\n    return 2 * x\n",
                                                       (ProofObligation.FUNCTIONAL_CORRECTNESS,)))
        assert isinstance(outcome.error, ProofFailed)
        assert outcome.rejected_at is ModificationState.SAFETY_CHECKED
        assert engine.runtime.resolve('d').version == 1

    def test_unbounded_memory_rejected(self):
        from godelpy.errors import SafetyViolation
        from godelpy.modification.coordinator import (
            CodeModification, ModificationType, SafetyConstraint,
        )
        from godelpy.transform.transformer import TransformationSpec
        engine = _engine(memory_growth_bytes=1024)
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        outcome = engine.self_modify('fib', CodeModification(
            ModificationType.OPTIMIZE_PERFORMANCE,
            transformation=TransformationSpec.memoization('fibonacci', cache_size=100_000),
            safety_constraints=(SafetyConstraint.BOUNDED_MEMORY_GROWTH,),
            proof_obligations=(),
        ))
        assert isinstance(outcome.error, SafetyViolation)
        assert outcome.error.constraint is SafetyConstraint.BOUNDED_MEMORY_GROWTH

    def test_memory_obligation_over_capacity(self):
        from godelpy.errors import ProofFailed
        from godelpy.modification.coordinator import ProofObligation
        engine = _engine(max_memo_capacity=10)
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        outcome = engine.self_modify('fib', _memoization(ProofObligation.MEMORY_SAFETY))
        assert isinstance(outcome.error, ProofFailed)
        assert outcome.error.obligation is ProofObligation.MEMORY_SAFETY

    def test_inapplicable_transformation(self):
        from godelpy.errors import TransformationNotApplicable
        from godelpy.modification.coordinator import ModificationState
        engine = _engine()
        engine.spawn('d', double)
        engine.enable_self_modification('d')
        outcome = engine.self_modify('d', _memoization())
        assert isinstance(outcome.error, TransformationNotApplicable)
        assert outcome.rejected_at is ModificationState.PROPOSED

    def test_inlining_that_would_hide_a_fault_is_rejected(self):
        from godelpy.errors import TransformationNotApplicable
        from godelpy.modification.coordinator import CodeModification, ModificationType
        from godelpy.transform.transformer import FunctionTarget, TransformationKind, TransformationSpec
        engine = _engine()
        engine.spawn('guarded', GUARDED_PICK_SOURCE)
        engine.enable_self_modification('guarded')
        outcome = engine.self_modify('guarded', CodeModification(
            ModificationType.SIMPLIFY,
            transformation=TransformationSpec(TransformationKind.INLINING, FunctionTarget('pick')),
        ))
        assert isinstance(outcome.error, TransformationNotApplicable)
        assert engine.runtime.resolve('guarded').version == 1
        assert engine.invoke('guarded', 'h', 9) == 2
        with pytest.raises(ZeroDivisionError):
            engine.invoke('guarded', 'h', 4)

    def test_conflict_on_timeout(self):
        from godelpy.errors import ModificationConflict
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        lock = engine.coordinator._cell('fib').modification_lock
        lock.acquire()
        try:
            outcome = engine.self_modify('fib', _memoization(), timeout=0.01)
        finally:
            lock.release()
        assert isinstance(outcome.error, ModificationConflict)

    def test_stats(self):
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.self_modify('fib', _memoization())
        engine.enable_self_modification('fib')
        engine.self_modify('fib', _memoization())
        stats = engine.coordinator.get_stats()
        assert stats['submitted'] == 2
        assert stats['committed'] == 1
        assert stats['rejected'] == 1
        assert stats['identities'] == {'fib': 1}


class TestRollback:
    """Reinstalling the program a modification replaced."""

    def test_rollback_restores_previous_program(self):
        from godelpy.modification.coordinator import ModificationType
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        original = engine.coordinator.live_program('fib')
        engine.self_modify('fib', _memoization()).unwrap()
        outcome = engine.rollback('fib')
        assert outcome.committed
        assert outcome.record.modification_type is ModificationType.ROLLBACK
        assert outcome.record.reverts == 1
        assert engine.coordinator.live_program('fib') == original
        assert len(engine.history('fib')) == 2
        assert engine.invoke('fib', 'fibonacci', 15) == 610

    def test_nothing_to_roll_back(self):
        from godelpy.errors import TransformationNotApplicable
        engine = _engine()
        engine.spawn('fib', fibonacci)
        engine.enable_self_modification('fib')
        assert isinstance(engine.rollback('fib').error, TransformationNotApplicable)
        engine.self_modify('fib', _memoization()).unwrap()
        assert engine.rollback('fib').committed
        assert isinstance(engine.rollback('fib').error, TransformationNotApplicable)


class TestExclusivity:
    """At most one modification per identity is in flight."""

    def test_concurrent_submissions_are_serialized(self):
        from godelpy.modification.coordinator import CodeModification, ModificationType
        from godelpy.transform.transformer import (
            FunctionTarget, TransformationKind, TransformationSpec,
        )
        engine = _engine()
        engine.spawn('geometry', GEOMETRY_SOURCE)
        engine.enable_self_modification('geometry')
        modifications = [
            CodeModification(ModificationType.SIMPLIFY, transformation=TransformationSpec(
                TransformationKind.CONSTANT_FOLDING, FunctionTarget('area'))),
            CodeModification(ModificationType.SIMPLIFY, transformation=TransformationSpec(
                TransformationKind.DEAD_CODE_ELIMINATION, FunctionTarget('perimeter'))),
        ]
        barrier = threading.Barrier(len(modifications))
        outcomes = []

        def submit(modification):
            barrier.wait()
            outcomes.append(engine.self_modify('geometry', modification))

        threads = [threading.Thread(target=submit, args=(m,)) for m in modifications]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(o.committed for o in outcomes), [o.error for o in outcomes]
        history = engine.history('geometry')
        assert sorted(r.sequence for r in history) == [1, 2]
        # each modification started from the program the previous one committed
        assert history[1].old_program == history[0].new_program
        assert engine.runtime.resolve('geometry').version == 3
        assert engine.invoke('geometry', 'area', 3, 4) == 12
        assert engine.invoke('geometry', 'perimeter', 3, 4) == 14

    def test_counters_under_concurrent_identities(self):
        from godelpy.modification.coordinator import CodeModification, ModificationType
        from godelpy.transform.transformer import (
            FunctionTarget, TransformationKind, TransformationSpec,
        )
        engine = _engine()
        identities = [f'geometry-{i}' for i in range(8)]
        for identity in identities:
            engine.spawn(identity, GEOMETRY_SOURCE)
            engine.enable_self_modification(identity)
        modification = CodeModification(ModificationType.SIMPLIFY, transformation=TransformationSpec(
            TransformationKind.CONSTANT_FOLDING, FunctionTarget('area')))
        barrier = threading.Barrier(len(identities))

        def submit(identity):
            barrier.wait()
            engine.self_modify(identity, modification)

        threads = [threading.Thread(target=submit, args=(i,)) for i in identities]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = engine.get_stats()
        assert stats['modifications']['submitted'] == len(identities)
        assert stats['modifications']['committed'] == len(identities)
        assert stats['transformations'] == len(identities)
