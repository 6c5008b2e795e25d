"""Theorems over reified programs, their proofs, and an independent checker."""

from godelpy.proof.theorem import (
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
    ProofStep,
    ProofRule,
    ProofMetrics,
    VerificationIssue,
    VerificationResult,
)
from godelpy.proof.prover import Prover
from godelpy.proof.verifier import Verifier
