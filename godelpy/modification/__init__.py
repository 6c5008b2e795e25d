"""Committing verified modifications into a live runtime."""

from godelpy.modification.coordinator import (
    ModificationCoordinator,
    CodeModification,
    ModificationType,
    ModificationState,
    ModificationRecord,
    ModificationOutcome,
    SafetyConstraint,
    ProofObligation,
)
from godelpy.modification.runtime import InMemoryRuntime, UnitHandle, UnitCounters
