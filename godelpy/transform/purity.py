"""
Purity Analysis
===============

Decides whether a reified function may be memoized.

A function is **pure** when every call reachable from it, transitively
through the program's call graph, is to

    - another pure top-level function of the same program, or
    - a primitive flagged pure in the primitive table,

and it never calls through a parameter or a computed callee (whose
behaviour is unknown statically). Reflective primitives that observe the
executing code (``current_code``) count as impure: memoization changes
what they would observe.

Assignments inside a function always bind locals in the supported
grammar, so they never make a function impure.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from godelpy.evaluation.primitives import PRIMITIVES
from godelpy.reflection.nodes import NodeKind, ReifiedProgram, call_target


@dataclass(frozen=True)
class PurityReport:
    function: str
    is_pure: bool
    reasons: tuple = field(default=())

    @property
    def is_memoizable(self) -> bool:
        return self.is_pure


def _direct_reasons(program: ReifiedProgram, index: int, functions: Dict[str, int]) -> List[str]:
    reasons = []
    params = set(program.node(index).attr('params', ()))
    quoted: Set[int] = set()
    for quote_index in program.find(NodeKind.QUOTE, index):
        quoted.update(program.walk(quote_index))
    for call_index in program.find(NodeKind.CALL, index):
        if call_index in quoted:
            continue
        target = call_target(program, call_index)
        if target is None:
            reasons.append('computed callee')
        elif target in params:
            reasons.append(f"calls parameter {target!r}")
        elif target in functions:
            continue
        elif target in PRIMITIVES:
            primitive = PRIMITIVES[target]
            if not primitive.pure or primitive.needs_context:
                reasons.append(f"calls impure primitive {target!r}")
        else:
            reasons.append(f"calls unknown function {target!r}")
    return reasons


def analyze_purity(program: ReifiedProgram) -> Dict[str, PurityReport]:
    """Purity of every top-level function, propagated over the call graph."""
    functions = program.functions()
    direct = {name: _direct_reasons(program, index, functions) for name, index in functions.items()}
    callees = {
        name: {call_target(program, c) for c in program.find(NodeKind.CALL, index)} & set(functions)
        for name, index in functions.items()
    }

    impure = {name for name, reasons in direct.items() if reasons}
    changed = True
    while changed:
        changed = False
        for name in functions:
            if name not in impure and callees[name] & impure:
                impure.add(name)
                changed = True

    reports = {}
    for name in functions:
        reasons = list(direct[name])
        reasons.extend(f"calls impure function {c!r}" for c in sorted(callees[name] & impure) if c != name)
        reports[name] = PurityReport(name, name not in impure, tuple(reasons))
    return reports


def is_pure(program: ReifiedProgram, function: str) -> bool:
    report: Optional[PurityReport] = analyze_purity(program).get(function)
    return report is not None and report.is_pure
