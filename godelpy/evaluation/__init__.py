"""Meta-circular evaluation and fixed-point search under explicit budgets."""

from godelpy.evaluation.evaluator import (
    MetaCircularEvaluator,
    EvaluationBound,
    EvaluationMetadata,
    EvaluationResult,
    EvaluationTrace,
)
from godelpy.evaluation.fixed_point import (
    FixedPointSolver,
    FixedPointResult,
    FixedPointValue,
    Paradox,
    ParadoxKind,
    Diverged,
    SELF,
)
from godelpy.evaluation.primitives import Closure, Environment, MemoTable, PRIMITIVES
