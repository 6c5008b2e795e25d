"""
godelpy: A Gödelian Self-Modification Engine for Python
=======================================================

A running program converts its own executable structure into data,
reasons about that data formally, and commits verified modifications back
into execution.

Core Components:
    - reflection: reify/reflect (quote/unquote), program arena, inspector
    - evaluation: meta-circular evaluator, primitives, fixed-point solver
    - transform: rewrite catalog (memoization, inlining, DCE, folding)
    - proof: theorems, prover, independent verifier
    - modification: the commit state machine and the execution runtime

Usage:
    >>> import godelpy
    >>> engine = godelpy.GodelianEngine()
    >>> program = engine.reify("def double(x):\\n    return x + x\\n")
    >>> theorem = engine.correctness_theorem(program, 'double', 'x > 0', 'result > x')
    >>> proof, result = engine.prove_and_verify(theorem)
    >>> result.verified
    True
"""

__version__ = "1.0.0"
__author__ = "godelpy developers"

from godelpy.errors import (
    ErrorCode,
    GodelError,
    ReificationUnsupported,
    RoundTripMismatch,
    EvaluationError,
    EvaluationBoundExceeded,
    EvaluationCancelled,
    TransformationNotApplicable,
    SafetyViolation,
    ProofFailed,
    ProofSearchExhausted,
    IdentityNotFound,
    ModificationConflict,
    SelfModificationDisabled,
)
from godelpy.reflection import (
    NodeKind,
    ReifiedProgram,
    Reifier,
    ExecutableUnit,
    Inspector,
    InspectionReport,
)
from godelpy.evaluation import (
    MetaCircularEvaluator,
    EvaluationBound,
    EvaluationResult,
    FixedPointSolver,
    FixedPointResult,
    FixedPointValue,
    Paradox,
    ParadoxKind,
    Diverged,
)
from godelpy.transform import (
    Transformer,
    TransformationSpec,
    TransformationKind,
    TransformationConstraint,
    EntireUnit,
    FunctionTarget,
    BlockTarget,
    BenefitEstimate,
)
from godelpy.proof import (
    Prover,
    Verifier,
    Theorem,
    TheoremContext,
    Assumption,
    AssumptionStrength,
    Lemma,
    FunctionalCorrectness,
    Termination,
    TransformationEquivalence,
    MemorySafety,
    ComplexityBound,
    ComplexityClass,
    Proof,
    VerificationResult,
)
from godelpy.modification import (
    ModificationCoordinator,
    CodeModification,
    ModificationType,
    ModificationState,
    ModificationRecord,
    ModificationOutcome,
    SafetyConstraint,
    ProofObligation,
    InMemoryRuntime,
)
from godelpy.engine import GodelianEngine, EngineConfig
