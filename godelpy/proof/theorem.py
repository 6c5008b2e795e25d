"""
Theorems, Proofs and Verification Results
=========================================

Value types shared by the prover and the verifier. All of them are frozen:
a proof is built once by ``Prover.prove`` and only ever read afterwards.

Statements form a closed set of variants:

    FunctionalCorrectness(function, precondition, postcondition)
        ∀ params. precondition ⇒ postcondition, where ``result`` in the
        postcondition stands for ``function(params)``.
    Termination(function | None)
        every call of ``function`` (or of every function) terminates.
    TransformationEquivalence(before, after, spec)
        ``after`` is ``spec`` applied to ``before`` and behaves identically.
    MemorySafety(max_capacity)
        every allocation the program makes is bounded.
    ComplexityBound(function, bound)
        the number of evaluation steps of ``function`` grows at most like
        ``bound`` in the size of its measure argument.

Formulas are reified expressions. Meta-level facts (``terminates(f)``,
``pure(f)``) are spelled as calls so that every step's formula is the same
kind of value and compares structurally.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import Any, Dict, Optional, Tuple, Union

from godelpy.reflection.nodes import ReifiedProgram


class AssumptionStrength(Enum):
    HYPOTHESIS = auto()
    AXIOM = auto()


@dataclass(frozen=True)
class Assumption:
    name: str
    formula: ReifiedProgram
    strength: AssumptionStrength = AssumptionStrength.AXIOM
    justification: str = ''


@dataclass(frozen=True)
class Lemma:
    """A named fact the prover may cite without proof."""
    name: str
    formula: ReifiedProgram
    justification: str = ''


class ComplexityClass(IntEnum):
    CONSTANT = 0
    LINEAR = 1
    POLYNOMIAL = 2
    EXPONENTIAL = 3


@dataclass(frozen=True)
class FunctionalCorrectness:
    function: str
    precondition: ReifiedProgram
    postcondition: ReifiedProgram


@dataclass(frozen=True)
class Termination:
    function: Optional[str] = None


@dataclass(frozen=True)
class TransformationEquivalence:
    before: ReifiedProgram
    after: ReifiedProgram
    spec: Any   # TransformationSpec


@dataclass(frozen=True)
class MemorySafety:
    max_capacity: int = 1_000_000


@dataclass(frozen=True)
class ComplexityBound:
    function: str
    bound: ComplexityClass


Statement = Union[FunctionalCorrectness, Termination, TransformationEquivalence, MemorySafety, ComplexityBound]


@dataclass(frozen=True)
class TheoremContext:
    program: ReifiedProgram
    type_bindings: Dict[str, str] = field(default_factory=dict, hash=False)
    lemmas: Tuple[Lemma, ...] = ()


@dataclass(frozen=True)
class Theorem:
    id: str
    name: str
    statement: Statement
    context: TheoremContext
    assumptions: Tuple[Assumption, ...] = ()


class ProofRule(Enum):
    GOAL = auto()
    INTRODUCE_PRECONDITION = auto()
    INTRODUCE_ASSUMPTION = auto()
    UNFOLD = auto()
    CASE_SPLIT = auto()
    INDUCTION_HYPOTHESIS = auto()
    LINEAR_ARITHMETIC = auto()
    LEMMA = auto()
    AXIOM = auto()
    PURITY = auto()
    REWRITE_CHECK = auto()
    DECREASING_MEASURE = auto()
    BOUNDED_ALLOCATION = auto()
    COMPLEXITY = auto()
    QED = auto()


@dataclass(frozen=True)
class ProofStep:
    index: int
    rule: ProofRule
    justification: str
    formula: ReifiedProgram
    branch: str = 'main'
    premises: Tuple[int, ...] = ()
    certificate: Any = None

    def visible_from(self, branch: str) -> bool:
        """Facts of a branch hold in its sub-branches."""
        return branch == self.branch or branch.startswith(self.branch + '.')


@dataclass(frozen=True)
class ProofMetrics:
    logical_depth: int
    lemma_count: int
    step_count: int
    proof_time: float


@dataclass(frozen=True)
class Proof:
    theorem: Theorem
    steps: Tuple[ProofStep, ...]
    method: str
    metrics: ProofMetrics


@dataclass(frozen=True)
class VerificationIssue:
    step: int
    message: str

    def __str__(self) -> str:
        return f"step {self.step}: {self.message}"


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    warnings: Tuple[str, ...] = ()
    errors: Tuple[VerificationIssue, ...] = ()
    verification_time: float = 0.0
