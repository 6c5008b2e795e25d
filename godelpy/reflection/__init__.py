"""Reification: programs as data, and read-only reports about them."""

from godelpy.reflection.nodes import NodeKind, Node, ReifiedProgram, ProgramBuilder
from godelpy.reflection.reifier import Reifier, ExecutableUnit, to_source
from godelpy.reflection.inspector import (
    Inspector,
    InspectionReport,
    BasicInfo,
    BehaviorAnalysis,
    ControlFlowSummary,
    PerformanceSnapshot,
)
