"""
Modification Coordinator
========================

The only writer of "which program is live" for an identity token. Every
change runs through a fixed state machine:

    PROPOSED ──safety──▶ SAFETY_CHECKED ──proofs──▶ PROOF_DISCHARGED ──install──▶ COMMITTED
        │                     │                          │
        └─────────────────────┴──────────────────────────┴──▶ REJECTED

    PROPOSED → SAFETY_CHECKED     the transformer produces the new program and
                                  every SafetyConstraint holds on (old, new)
    SAFETY_CHECKED → PROOF_DISCHARGED
                                  every ProofObligation becomes a Theorem that is
                                  proved and independently verified
    PROOF_DISCHARGED → COMMITTED  the new program is reflected, its round trip
                                  asserted, and it is installed via the runtime

Concurrency:
    Each identity has a cell holding a modification lock and a commit lock.
    A submission holds the modification lock from PROPOSED until it commits
    or is rejected, so at most one modification per identity is in flight;
    a second submitter waits (up to ``timeout``) and then runs against the
    program the first one left behind. The commit lock is held only while
    the runtime swaps the unit; the inspector takes it as its snapshot guard
    so no report straddles an install.

A rejected modification never reaches the runtime; the live unit is left
exactly as it was. Rejections are returned as ``ModificationOutcome``
values, not raised. ``RoundTripMismatch`` is the one fault that escapes.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Iterator, List, Optional, Tuple

from godelpy.errors import (
    GodelError, IdentityNotFound, ModificationConflict, ProofFailed, ProofSearchExhausted,
    SafetyViolation, SelfModificationDisabled, TransformationNotApplicable,
)
from godelpy.evaluation.evaluator import MetaCircularEvaluator
from godelpy.proof.prover import Prover
from godelpy.proof.theorem import (
    ComplexityBound, ComplexityClass, MemorySafety, Proof, Termination, Theorem, TheoremContext,
    TransformationEquivalence, VerificationResult,
)
from godelpy.reflection.inspector import static_memory_estimate
from godelpy.reflection.nodes import ReifiedProgram
from godelpy.reflection.reifier import Reifier, Unit
from godelpy.transform import probing
from godelpy.transform.transformer import (
    BenefitEstimate, BlockTarget, EntireUnit, FunctionTarget, Transformer, TransformationSpec, memo_tables,
)

logger = logging.getLogger(__name__)


class ModificationState(Enum):
    PROPOSED = auto()
    SAFETY_CHECKED = auto()
    PROOF_DISCHARGED = auto()
    COMMITTED = auto()
    REJECTED = auto()


class ModificationType(Enum):
    OPTIMIZE_PERFORMANCE = auto()
    SIMPLIFY = auto()
    REPLACE_IMPLEMENTATION = auto()
    ROLLBACK = auto()


class SafetyConstraint(Enum):
    PRESERVE_SEMANTICS = auto()
    MAINTAIN_INTERFACE = auto()
    NO_RESOURCE_LEAK = auto()
    BOUNDED_MEMORY_GROWTH = auto()


class ProofObligation(Enum):
    FUNCTIONAL_CORRECTNESS = auto()
    TERMINATION_GUARANTEE = auto()
    MEMORY_SAFETY = auto()
    COMPLEXITY_BOUND = auto()


DEFAULT_SAFETY = (SafetyConstraint.PRESERVE_SEMANTICS, SafetyConstraint.MAINTAIN_INTERFACE)
DEFAULT_OBLIGATIONS = (ProofObligation.FUNCTIONAL_CORRECTNESS,)


@dataclass(frozen=True)
class CodeModification:
    """
    One proposed change to a live unit.

    Either ``transformation`` (a rewrite of the live program) or
    ``replacement`` (new code supplied by the caller) must be given. A
    replacement is not related to the live program by any rewrite rule, so
    a FUNCTIONAL_CORRECTNESS obligation on it cannot be discharged.
    """
    modification_type: ModificationType
    transformation: Optional[TransformationSpec] = None
    replacement: Optional[Unit] = None
    safety_constraints: Tuple[SafetyConstraint, ...] = DEFAULT_SAFETY
    proof_obligations: Tuple[ProofObligation, ...] = DEFAULT_OBLIGATIONS
    complexity_bound: ComplexityClass = ComplexityClass.POLYNOMIAL
    description: str = ''

    @property
    def target(self) -> Any:
        return self.transformation.target if self.transformation is not None else EntireUnit()


@dataclass(frozen=True)
class ModificationRecord:
    """Audit entry: what was live before and after, and why the change was trusted."""
    identity: str
    sequence: int
    modification_type: ModificationType
    old_program: ReifiedProgram
    new_program: ReifiedProgram
    timestamp: float
    proofs: Tuple[Proof, ...] = ()
    verifications: Tuple[VerificationResult, ...] = ()
    benefit: Optional[BenefitEstimate] = None
    reverts: Optional[int] = None

    @property
    def warnings(self) -> Tuple[str, ...]:
        return tuple(w for v in self.verifications for w in v.warnings)


@dataclass(frozen=True)
class ModificationOutcome:
    state: ModificationState
    record: Optional[ModificationRecord] = None
    error: Optional[GodelError] = None
    transitions: Tuple[ModificationState, ...] = ()

    @property
    def committed(self) -> bool:
        return self.state is ModificationState.COMMITTED

    @property
    def rejected_at(self) -> Optional[ModificationState]:
        """Last state reached before rejection."""
        if self.state is not ModificationState.REJECTED:
            return None
        return self.transitions[-2]

    def unwrap(self) -> ModificationRecord:
        if self.error is not None:
            raise self.error
        return self.record


@dataclass
class _Cell:
    """Guarded per-identity state."""
    modification_lock: threading.Lock = field(default_factory=threading.Lock)
    commit_lock: threading.Lock = field(default_factory=threading.Lock)
    enabled: bool = False
    history: List[ModificationRecord] = field(default_factory=list)


class _Rejection(Exception):
    def __init__(self, error: GodelError):
        super().__init__(str(error))
        self.error = error


class ModificationCoordinator:
    """
    Sequences proposed modifications through safety checks and proofs.

    PRESERVE_SEMANTICS is checked by differential probing on a fixed sample
    set plus the small integer literals either program mentions. Agreement
    on those inputs is evidence of equivalence, not a proof of it; only the
    FUNCTIONAL_CORRECTNESS obligation establishes equivalence for all inputs.

    Usage:
        >>> coordinator = ModificationCoordinator(runtime)
        >>> coordinator.enable_self_modification('fib')
        >>> outcome = coordinator.submit('fib', CodeModification(
        ...     ModificationType.OPTIMIZE_PERFORMANCE,
        ...     transformation=TransformationSpec.memoization('fibonacci', 1000)))
        >>> outcome.state
        <ModificationState.COMMITTED: 4>
    """

    DEFAULT_PROBE_BOUND = 200_000
    DEFAULT_MEMORY_GROWTH_BYTES = 1 << 20
    DEFAULT_MAX_CAPACITY = 1_000_000

    def __init__(
        self,
        runtime: Any,
        reifier: Optional[Reifier] = None,
        transformer: Optional[Transformer] = None,
        prover: Optional[Prover] = None,
        evaluator: Optional[MetaCircularEvaluator] = None,
        probe_bound: int = DEFAULT_PROBE_BOUND,
        memory_growth_bytes: int = DEFAULT_MEMORY_GROWTH_BYTES,
        max_capacity: int = DEFAULT_MAX_CAPACITY,
    ):
        self.runtime = runtime
        self.reifier = reifier or Reifier()
        self.evaluator = evaluator or MetaCircularEvaluator()
        self.transformer = transformer or Transformer(self.reifier, self.evaluator)
        self.prover = prover or Prover(transformer=self.transformer)
        self.probe_bound = probe_bound
        self.memory_growth_bytes = memory_growth_bytes
        self.max_capacity = max_capacity
        self._cells: Dict[str, _Cell] = {}
        self._cells_lock = threading.Lock()
        self.submitted = 0
        self.committed = 0
        self.rejected = 0
        self._stats_lock = threading.Lock()

    # ── Per-identity cells ───────────────────────────────────────

    def _cell(self, identity: str) -> _Cell:
        self.runtime.resolve(identity)
        with self._cells_lock:
            return self._cells.setdefault(identity, _Cell())

    @contextmanager
    def snapshot_guard(self, identity: str) -> Iterator[None]:
        """Held by readers so they never observe a unit mid-install."""
        with self._cells_lock:
            cell = self._cells.get(identity)
        if cell is None:
            yield
            return
        with cell.commit_lock:
            yield

    def enable_self_modification(self, identity: str) -> None:
        self._cell(identity).enabled = True
        logger.info(f"Self-modification enabled for {identity}")

    def disable_self_modification(self, identity: str) -> None:
        self._cell(identity).enabled = False

    def is_enabled(self, identity: str) -> bool:
        return self._cell(identity).enabled

    def history(self, identity: str) -> Tuple[ModificationRecord, ...]:
        cell = self._cell(identity)
        with cell.commit_lock:
            return tuple(cell.history)

    def live_program(self, identity: str) -> ReifiedProgram:
        return self.reifier.reify(self.runtime.resolve(identity).unit)

    # ── Submission ───────────────────────────────────────────────

    def submit(self, identity: str, modification: CodeModification,
               timeout: Optional[float] = None) -> ModificationOutcome:
        """Run ``modification`` through the state machine; never raises for a rejection."""
        with self._stats_lock:
            self.submitted += 1
        transitions = [ModificationState.PROPOSED]
        try:
            cell = self._cell(identity)
        except IdentityNotFound as exc:
            return self._reject(identity, transitions, exc)
        if not cell.enabled:
            return self._reject(identity, transitions, SelfModificationDisabled(identity))
        if not cell.modification_lock.acquire(timeout=-1 if timeout is None else timeout):
            return self._reject(identity, transitions, ModificationConflict(identity))
        try:
            before = self.live_program(identity)
            after, benefit = self._propose(before, modification)
            self._check_safety(before, after, modification)
            transitions.append(ModificationState.SAFETY_CHECKED)
            logger.debug(f"{identity}: safety constraints hold")

            sequence = len(cell.history) + 1
            proofs, verifications = self._discharge(identity, sequence, before, after, modification)
            transitions.append(ModificationState.PROOF_DISCHARGED)
            logger.debug(f"{identity}: {len(proofs)} proof obligations discharged")

            record = ModificationRecord(
                identity=identity,
                sequence=sequence,
                modification_type=modification.modification_type,
                old_program=before,
                new_program=after,
                timestamp=time.time(),
                proofs=proofs,
                verifications=verifications,
                benefit=benefit,
            )
            self._commit(cell, record)
            transitions.append(ModificationState.COMMITTED)
        except _Rejection as rejection:
            return self._reject(identity, transitions, rejection.error)
        finally:
            cell.modification_lock.release()
        with self._stats_lock:
            self.committed += 1
        logger.info(f"Committed modification #{record.sequence} of {identity} "
                    f"({modification.modification_type.name}, {after.count_nodes()} nodes)")
        return ModificationOutcome(ModificationState.COMMITTED, record=record, transitions=tuple(transitions))

    def rollback(self, identity: str, timeout: Optional[float] = None) -> ModificationOutcome:
        """Reinstall the program the latest unreverted modification replaced."""
        transitions = [ModificationState.PROPOSED]
        try:
            cell = self._cell(identity)
        except IdentityNotFound as exc:
            return self._reject(identity, transitions, exc)
        if not cell.modification_lock.acquire(timeout=-1 if timeout is None else timeout):
            return self._reject(identity, transitions, ModificationConflict(identity))
        try:
            current = self.live_program(identity)
            reverted = {r.reverts for r in cell.history if r.reverts is not None}
            candidates = [r for r in cell.history
                          if r.reverts is None and r.sequence not in reverted and r.new_program == current]
            if not candidates:
                return self._reject(identity, transitions, TransformationNotApplicable(
                    identity, 'no committed modification to roll back'))
            target = candidates[-1]
            record = ModificationRecord(
                identity=identity,
                sequence=len(cell.history) + 1,
                modification_type=ModificationType.ROLLBACK,
                old_program=current,
                new_program=target.old_program,
                timestamp=time.time(),
                reverts=target.sequence,
            )
            self._commit(cell, record)
        finally:
            cell.modification_lock.release()
        logger.info(f"Rolled back modification #{target.sequence} of {identity}")
        transitions.append(ModificationState.COMMITTED)
        return ModificationOutcome(ModificationState.COMMITTED, record=record, transitions=tuple(transitions))

    def _reject(self, identity: str, transitions: List[ModificationState], error: GodelError) -> ModificationOutcome:
        with self._stats_lock:
            self.rejected += 1
        transitions.append(ModificationState.REJECTED)
        logger.info(f"Rejected modification of {identity} after {transitions[-2].name}: {error}")
        return ModificationOutcome(ModificationState.REJECTED, error=error, transitions=tuple(transitions))

    # ── Stages ───────────────────────────────────────────────────

    def _propose(self, before: ReifiedProgram,
                 modification: CodeModification) -> Tuple[ReifiedProgram, Optional[BenefitEstimate]]:
        if modification.transformation is not None:
            try:
                return self.transformer.transform(before, modification.transformation)
            except TransformationNotApplicable as exc:
                raise _Rejection(exc) from exc
        if modification.replacement is not None:
            return self.reifier.reify(modification.replacement), None
        raise _Rejection(TransformationNotApplicable(str(modification.target), 'nothing to apply'))

    def _check_safety(self, before: ReifiedProgram, after: ReifiedProgram,
                      modification: CodeModification) -> None:
        for constraint in modification.safety_constraints:
            detail = self._violation(constraint, before, after)
            if detail is not None:
                raise _Rejection(SafetyViolation(constraint, detail))

    def _violation(self, constraint: SafetyConstraint, before: ReifiedProgram,
                   after: ReifiedProgram) -> Optional[str]:
        if constraint is SafetyConstraint.PRESERVE_SEMANTICS:
            for comparison in probing.compare(self.evaluator, before, after, self.probe_bound):
                if not comparison.agrees:
                    run = comparison.before
                    return f"{run.function}{run.args} gave {run.outcome}, now {comparison.after.outcome}"
            return None
        if constraint is SafetyConstraint.MAINTAIN_INTERFACE:
            old, new = probing.public_signature(before), probing.public_signature(after)
            if old != new:
                return f"public interface changed from {old} to {new}"
            return None
        if constraint is SafetyConstraint.NO_RESOURCE_LEAK:
            unbounded = [site for site, capacity in memo_tables(after)
                         if type(capacity) is not int or capacity <= 0]
            if unbounded:
                return f"memo tables at nodes {unbounded} have no fixed capacity"
            return None
        if constraint is SafetyConstraint.BOUNDED_MEMORY_GROWTH:
            growth = static_memory_estimate(after) - static_memory_estimate(before)
            if growth > self.memory_growth_bytes:
                return f"static memory grows by {growth} bytes (limit {self.memory_growth_bytes})"
            return None
        raise ValueError(f"unknown safety constraint {constraint!r}")

    def _theorems(self, identity: str, sequence: int, before: ReifiedProgram, after: ReifiedProgram,
                  modification: CodeModification) -> List[Tuple[ProofObligation, Theorem]]:
        theorems = []
        context = TheoremContext(program=after)
        for obligation in modification.proof_obligations:
            prefix = f"{identity}#{sequence}:{obligation.name.lower()}"
            if obligation is ProofObligation.FUNCTIONAL_CORRECTNESS:
                if modification.transformation is None:
                    raise _Rejection(ProofFailed(obligation, 'a replacement is not related to the live program by any rewrite rule'))
                statement = TransformationEquivalence(before, after, modification.transformation)
                theorems.append((obligation, Theorem(prefix, 'transformation preserves behaviour', statement, context)))
            elif obligation is ProofObligation.TERMINATION_GUARANTEE:
                theorems.append((obligation, Theorem(prefix, 'every function terminates', Termination(), context)))
            elif obligation is ProofObligation.MEMORY_SAFETY:
                statement = MemorySafety(self.max_capacity)
                theorems.append((obligation, Theorem(prefix, 'allocations are bounded', statement, context)))
            elif obligation is ProofObligation.COMPLEXITY_BOUND:
                for name in self._complexity_targets(modification, after):
                    statement = ComplexityBound(name, modification.complexity_bound)
                    theorems.append((obligation, Theorem(f"{prefix}:{name}",
                                                         f"{name} is {modification.complexity_bound.name}",
                                                         statement, context)))
        return theorems

    @staticmethod
    def _complexity_targets(modification: CodeModification, after: ReifiedProgram) -> List[str]:
        target = modification.target
        if isinstance(target, FunctionTarget):
            return [target.name]
        if isinstance(target, BlockTarget):
            return [target.function]
        return sorted(probing.public_signature(after))

    def _discharge(self, identity: str, sequence: int, before: ReifiedProgram, after: ReifiedProgram,
                   modification: CodeModification) -> Tuple[Tuple[Proof, ...], Tuple[VerificationResult, ...]]:
        proofs, verifications = [], []
        for obligation, theorem in self._theorems(identity, sequence, before, after, modification):
            try:
                proof = self.prover.prove(theorem)
            except ProofSearchExhausted as exc:
                raise _Rejection(ProofFailed(obligation, exc.reason)) from exc
            result = self.prover.verify(proof)
            if not result.verified:
                raise _Rejection(ProofFailed(obligation, '; '.join(map(str, result.errors))))
            proofs.append(proof)
            verifications.append(result)
        return tuple(proofs), tuple(verifications)

    def _commit(self, cell: _Cell, record: ModificationRecord) -> None:
        self.reifier.assert_round_trip(record.new_program)
        handle = self.runtime.resolve(record.identity)
        unit = self.reifier.reflect(record.new_program, name=handle.unit.name)
        with cell.commit_lock:
            self.runtime.install(record.identity, unit)
            cell.history.append(record)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'submitted': self.submitted,
            'committed': self.committed,
            'rejected': self.rejected,
            'identities': {identity: len(cell.history) for identity, cell in self._cells.items()},
        }
