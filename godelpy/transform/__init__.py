"""Semantics-preserving rewrites over reified programs."""

from godelpy.transform.transformer import (
    Transformer,
    TransformationSpec,
    TransformationKind,
    TransformationConstraint,
    EntireUnit,
    FunctionTarget,
    BlockTarget,
    BenefitEstimate,
)
from godelpy.transform.purity import PurityReport, analyze_purity, is_pure
