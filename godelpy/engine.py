"""
Gödelian Engine
===============

Façade composing the seven components around one execution runtime:

    Reifier          quote / unquote between Python code and ReifiedProgram
    Inspector        read-only reports on live units
    Evaluator        meta-circular interpreter with step and depth budgets
    FixedPointSolver Kleene iteration with paradox classification
    Transformer      catalog of semantics-preserving rewrites
    Prover/Verifier  proofs of correctness, termination, safety, complexity
    Coordinator      the state machine that commits verified modifications

Usage:
    >>> engine = GodelianEngine()
    >>> engine.spawn('fib', fibonacci)
    >>> engine.enable_self_modification('fib')
    >>> outcome = engine.self_modify('fib', CodeModification(
    ...     ModificationType.OPTIMIZE_PERFORMANCE,
    ...     transformation=TransformationSpec.memoization('fibonacci', 1000),
    ...     proof_obligations=(ProofObligation.FUNCTIONAL_CORRECTNESS,
    ...                        ProofObligation.TERMINATION_GUARANTEE,
    ...                        ProofObligation.MEMORY_SAFETY)))
    >>> outcome.committed
    True
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from godelpy.evaluation.evaluator import EvaluationBound, EvaluationResult, MetaCircularEvaluator
from godelpy.evaluation.fixed_point import SELF, FixedPointResult, FixedPointSolver
from godelpy.modification.coordinator import (
    CodeModification, ModificationCoordinator, ModificationOutcome, ModificationRecord,
)
from godelpy.modification.runtime import InMemoryRuntime, UnitHandle
from godelpy.proof.prover import Prover
from godelpy.proof.theorem import (
    Assumption, AssumptionStrength, FunctionalCorrectness, Lemma, Proof, Theorem, TheoremContext,
    VerificationResult,
)
from godelpy.reflection.inspector import InspectionReport, Inspector
from godelpy.reflection.nodes import ReifiedProgram
from godelpy.reflection.reifier import ExecutableUnit, Reifier, Unit
from godelpy.transform.transformer import BenefitEstimate, Transformer, TransformationSpec

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Budgets and switches for every component. All bounds are step counts, never wall time."""
    evaluation_bound: int = 1_000_000
    max_depth: Optional[int] = None
    trace_limit: int = MetaCircularEvaluator.DEFAULT_TRACE_LIMIT
    fixed_point_iterations: int = FixedPointSolver.DEFAULT_MAX_ITERATIONS
    fixed_point_step_bound: int = FixedPointSolver.DEFAULT_STEP_BOUND
    probe_bound: int = Transformer.DEFAULT_PROBE_BOUND
    max_proof_steps: int = Prover.DEFAULT_MAX_STEPS
    memory_growth_bytes: int = ModificationCoordinator.DEFAULT_MEMORY_GROWTH_BYTES
    max_memo_capacity: int = ModificationCoordinator.DEFAULT_MAX_CAPACITY
    check_round_trip: bool = False
    enable_logging: bool = False

    def bound(self) -> EvaluationBound:
        depth = self.max_depth if self.max_depth is not None else self.evaluation_bound
        return EvaluationBound(self.evaluation_bound, depth)


class GodelianEngine:
    """Self-inspecting, self-modifying execution engine over one runtime."""

    def __init__(self, config: Optional[EngineConfig] = None, runtime: Any = None):
        self.config = config or EngineConfig()
        if self.config.enable_logging:
            logging.basicConfig(level=logging.DEBUG)
        self.reifier = Reifier(check_round_trip=self.config.check_round_trip)
        self.runtime = runtime or InMemoryRuntime(self.reifier)
        self.evaluator = MetaCircularEvaluator(trace_limit=self.config.trace_limit)
        self.solver = FixedPointSolver(
            self.evaluator,
            max_iterations=self.config.fixed_point_iterations,
            step_bound=self.config.fixed_point_step_bound,
        )
        self.transformer = Transformer(self.reifier, self.evaluator, probe_bound=self.config.probe_bound)
        self.prover = Prover(max_steps=self.config.max_proof_steps, transformer=self.transformer)
        self.coordinator = ModificationCoordinator(
            self.runtime,
            reifier=self.reifier,
            transformer=self.transformer,
            prover=self.prover,
            evaluator=self.evaluator,
            probe_bound=self.config.probe_bound,
            memory_growth_bytes=self.config.memory_growth_bytes,
            max_capacity=self.config.max_memo_capacity,
        )
        self.inspector = Inspector(self.runtime, self.reifier, snapshot_guard=self.coordinator.snapshot_guard)

    # ── Runtime ──────────────────────────────────────────────────

    def spawn(self, identity: str, unit: Unit) -> UnitHandle:
        return self.runtime.spawn(identity, unit)

    def invoke(self, identity: str, function: Optional[str] = None, *args: Any) -> Any:
        return self.runtime.invoke(identity, function, *args)

    # ── Reflection ───────────────────────────────────────────────

    def reify(self, unit: Unit) -> ReifiedProgram:
        return self.reifier.reify(unit)

    def reflect(self, program: ReifiedProgram, name: Optional[str] = None) -> ExecutableUnit:
        return self.reifier.reflect(program, name)

    def inspect(self, identity: str) -> InspectionReport:
        return self.inspector.inspect(identity)

    def inspect_program(self, program: ReifiedProgram, name: str = "<anonymous>") -> InspectionReport:
        return self.inspector.inspect_program(program, name)

    # ── Evaluation ───────────────────────────────────────────────

    def evaluate(self, program: ReifiedProgram, bound: Union[int, EvaluationBound, None] = None,
                 entry: Optional[str] = None, args: Sequence[Any] = (), cancel: Any = None) -> EvaluationResult:
        return self.evaluator.evaluate(program, bound if bound is not None else self.config.bound(),
                                       entry=entry, args=args, cancel=cancel)

    def meta_evaluate(self, unit: Union[Unit, ReifiedProgram], **kwargs: Any) -> EvaluationResult:
        """Reify (if needed) and evaluate in one call."""
        program = unit if isinstance(unit, ReifiedProgram) else self.reify(unit)
        return self.evaluate(program, **kwargs)

    def fixed_point(self, program: ReifiedProgram, domain_seed: Any = SELF, bound: Optional[int] = None,
                    function: Optional[str] = None, cancel: Any = None) -> FixedPointResult:
        return self.solver.fixed_point(program, domain_seed, bound, function=function, cancel=cancel)

    # ── Transformation and proof ─────────────────────────────────

    def transform(self, program: ReifiedProgram,
                  spec: TransformationSpec) -> Tuple[ReifiedProgram, BenefitEstimate]:
        return self.transformer.transform(program, spec)

    def correctness_theorem(
        self,
        program: ReifiedProgram,
        function: str,
        precondition: str,
        postcondition: str,
        assumptions: Optional[Mapping[str, Tuple[str, AssumptionStrength]]] = None,
        lemmas: Optional[Mapping[str, str]] = None,
        type_bindings: Optional[Dict[str, str]] = None,
        theorem_id: Optional[str] = None,
    ) -> Theorem:
        """
        Build a FunctionalCorrectness theorem from Python expression strings.
        ``result`` in the postcondition stands for ``function(params)``.
        """
        statement = FunctionalCorrectness(
            function,
            self.reifier.reify_expression(precondition),
            self.reifier.reify_expression(postcondition),
        )
        context = TheoremContext(
            program=program,
            type_bindings=dict(type_bindings or {}),
            lemmas=tuple(Lemma(name, self.reifier.reify_expression(text))
                         for name, text in (lemmas or {}).items()),
        )
        assumed = tuple(
            Assumption(name, self.reifier.reify_expression(text), strength)
            for name, (text, strength) in (assumptions or {}).items()
        )
        identifier = theorem_id or f"{function}:{postcondition}"
        return Theorem(identifier, f"{precondition} ⇒ {postcondition}", statement, context, assumed)

    def prove(self, theorem: Theorem) -> Proof:
        return self.prover.prove(theorem)

    def verify(self, proof: Proof) -> VerificationResult:
        return self.prover.verify(proof)

    def prove_and_verify(self, theorem: Theorem) -> Tuple[Proof, VerificationResult]:
        proof = self.prove(theorem)
        return proof, self.verify(proof)

    # ── Self-modification ────────────────────────────────────────

    def enable_self_modification(self, identity: str) -> None:
        self.coordinator.enable_self_modification(identity)

    def self_modify(self, identity: str, modification: CodeModification,
                    timeout: Optional[float] = None) -> ModificationOutcome:
        return self.coordinator.submit(identity, modification, timeout)

    def rollback(self, identity: str, timeout: Optional[float] = None) -> ModificationOutcome:
        return self.coordinator.rollback(identity, timeout)

    def history(self, identity: str) -> Tuple[ModificationRecord, ...]:
        return self.coordinator.history(identity)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'reified': self.reifier.reified_count,
            'evaluations': self.evaluator.evaluations,
            'inspections': self.inspector.inspections,
            'transformations': self.transformer.transformations_applied,
            'proofs_attempted': self.prover.proofs_attempted,
            'proofs_found': self.prover.proofs_found,
            'paradoxes_detected': self.solver.paradoxes_detected,
            'modifications': self.coordinator.get_stats(),
        }
