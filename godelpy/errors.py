"""
Error Taxonomy
==============

Every failure the engine can report to a caller is a subclass of
``GodelError`` tagged with an ``ErrorCode``. Recoverable outcomes
(an exhausted proof search, a rejected modification, an evaluation that
ran out of budget) are ordinary exceptions the caller is expected to
handle. ``RoundTripMismatch`` is the only unrecoverable fault: it means a
rewrite rule or the reifier itself broke the reify/reflect contract.

Paradoxes and divergence are *not* errors; the fixed-point solver returns
them as result variants.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable codes for every error in the taxonomy."""
    REIFICATION_UNSUPPORTED = "ReificationUnsupported"
    ROUND_TRIP_MISMATCH = "RoundTripMismatch"
    EVALUATION_ERROR = "EvaluationError"
    EVALUATION_BOUND_EXCEEDED = "EvaluationBoundExceeded"
    EVALUATION_CANCELLED = "EvaluationCancelled"
    TRANSFORMATION_NOT_APPLICABLE = "TransformationNotApplicable"
    SAFETY_VIOLATION = "SafetyViolation"
    PROOF_FAILED = "ProofFailed"
    PROOF_SEARCH_EXHAUSTED = "ProofSearchExhausted"
    IDENTITY_NOT_FOUND = "IdentityNotFound"
    MODIFICATION_CONFLICT = "ModificationConflict"
    SELF_MODIFICATION_DISABLED = "SelfModificationDisabled"


class GodelError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.EVALUATION_ERROR

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code.value, "message": self.message}
        if self.meta:
            result["meta"] = dict(self.meta)
        return result


class ReificationUnsupported(GodelError):
    """The unit contains a construct the reifier cannot represent losslessly."""
    code = ErrorCode.REIFICATION_UNSUPPORTED

    def __init__(self, construct: str, detail: str = ""):
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Unsupported construct {construct}{suffix}", {"construct": construct})
        self.construct = construct


class RoundTripMismatch(GodelError):
    """reflect(reify(u)) did not reproduce u. Indicates a bug, not bad input."""
    code = ErrorCode.ROUND_TRIP_MISMATCH


class EvaluationError(GodelError):
    """Runtime fault inside the evaluated program."""
    code = ErrorCode.EVALUATION_ERROR


class EvaluationBoundExceeded(GodelError):
    """The step or recursion-depth budget ran out."""
    code = ErrorCode.EVALUATION_BOUND_EXCEEDED

    def __init__(self, limit: str, bound: int, steps: int, depth: int):
        super().__init__(
            f"Evaluation exceeded {limit} bound of {bound} (steps={steps}, depth={depth})",
            {"limit": limit, "bound": bound, "steps": steps, "depth": depth},
        )
        self.limit = limit
        self.bound = bound
        self.steps = steps
        self.depth = depth


class EvaluationCancelled(GodelError):
    """A caller-supplied cancellation signal fired between two steps."""
    code = ErrorCode.EVALUATION_CANCELLED

    def __init__(self, steps: int):
        super().__init__(f"Evaluation cancelled after {steps} steps", {"steps": steps})
        self.steps = steps


class TransformationNotApplicable(GodelError):
    """A rewrite rule could not match its target; nothing was rewritten."""
    code = ErrorCode.TRANSFORMATION_NOT_APPLICABLE

    def __init__(self, target: str, reason: str = ""):
        suffix = f" ({reason})" if reason else ""
        super().__init__(f"Transformation not applicable to {target}{suffix}",
                         {"target": target, "reason": reason})
        self.target = target
        self.reason = reason


class SafetyViolation(GodelError):
    """A safety constraint failed on the (before, after) program pair."""
    code = ErrorCode.SAFETY_VIOLATION

    def __init__(self, constraint: Any, detail: str = ""):
        name = getattr(constraint, "name", str(constraint))
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Safety constraint {name} violated{suffix}", {"constraint": name})
        self.constraint = constraint
        self.detail = detail


class ProofFailed(GodelError):
    """A proof obligation could not be discharged or its proof did not verify."""
    code = ErrorCode.PROOF_FAILED

    def __init__(self, obligation: Any, detail: str = ""):
        name = getattr(obligation, "name", str(obligation))
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Proof obligation {name} failed{suffix}", {"obligation": name})
        self.obligation = obligation
        self.detail = detail


class ProofSearchExhausted(GodelError):
    """No tactic sequence closed the goal. Says nothing about the theorem's truth."""
    code = ErrorCode.PROOF_SEARCH_EXHAUSTED

    def __init__(self, theorem_id: str, reason: str = "", steps: int = 0):
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Proof search exhausted for {theorem_id}{suffix}",
                         {"theorem": theorem_id, "steps": steps})
        self.theorem_id = theorem_id
        self.reason = reason
        self.steps = steps


class IdentityNotFound(GodelError):
    """The runtime knows no unit under this identity token."""
    code = ErrorCode.IDENTITY_NOT_FOUND

    def __init__(self, identity: str):
        super().__init__(f"No executable unit registered as {identity!r}", {"identity": identity})
        self.identity = identity


class ModificationConflict(GodelError):
    """Another modification held the identity's lock past the caller's timeout."""
    code = ErrorCode.MODIFICATION_CONFLICT

    def __init__(self, identity: str):
        super().__init__(f"Modification already in flight for {identity!r}", {"identity": identity})
        self.identity = identity


class SelfModificationDisabled(GodelError):
    """The identity has not opted in to self-modification."""
    code = ErrorCode.SELF_MODIFICATION_DISABLED

    def __init__(self, identity: str):
        super().__init__(f"Self-modification is not enabled for {identity!r}", {"identity": identity})
        self.identity = identity
