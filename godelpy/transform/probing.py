"""
Differential probing of program pairs.

Runs the same public functions of two programs on a fixed set of sample
arguments, extended by the small integer literals either program mentions,
through the meta-circular evaluator and compares the outcomes.
Used by the transformer to check its constraints and estimate benefit, and
by the modification coordinator's preserve-semantics safety check.
"""

from dataclasses import dataclass
from typing import Any, Hashable, List, Optional, Sequence, Tuple

import numpy as np

from godelpy.errors import EvaluationBoundExceeded, EvaluationError
from godelpy.evaluation.evaluator import MetaCircularEvaluator
from godelpy.evaluation.primitives import structural_key
from godelpy.reflection.nodes import NodeKind, ReifiedProgram

PROBE_INPUTS: Tuple[int, ...] = (0, 1, 2, 3, 5, 8, 10)

MAX_LITERAL_INPUT = 64

UNCACHED_SUFFIX = '__uncached'


@dataclass(frozen=True)
class ProbeRun:
    function: str
    args: Tuple[Any, ...]
    outcome: Tuple[Hashable, ...]     # ('value', key) | ('error', type) | ('bound',)
    steps: Optional[int]

    @property
    def finished(self) -> bool:
        return self.outcome[0] != 'bound'


@dataclass(frozen=True)
class ProbeComparison:
    before: ProbeRun
    after: ProbeRun

    @property
    def agrees(self) -> bool:
        # A probe the original could not finish says nothing either way.
        return not self.before.finished or self.before.outcome == self.after.outcome


def public_signature(program: ReifiedProgram) -> dict:
    """Public function names and their arities."""
    signature = {}
    for name, index in program.functions().items():
        if name.startswith('_') or name.endswith(UNCACHED_SUFFIX):
            continue
        signature[name] = len(program.node(index).attr('params', ()))
    return signature


def probe_arguments(arity: int, inputs: Sequence[int] = PROBE_INPUTS) -> List[Tuple[int, ...]]:
    if arity == 0:
        return [()]
    rows = [tuple([value] * arity) for value in inputs]
    if arity > 1:
        rows.extend(
            tuple(inputs[(i + j) % len(inputs)] for j in range(arity))
            for i in range(len(inputs))
        )
    return rows


def literal_inputs(*programs: ReifiedProgram, limit: int = MAX_LITERAL_INPUT) -> List[int]:
    """
    Non-negative integers within ``limit`` of zero that appear as literals
    in any of ``programs``, together with their neighbours.
    """
    values = set()
    for program in programs:
        for index in program.find(NodeKind.LITERAL):
            value = program.node(index).attr('value')
            if type(value) is int and abs(value) <= limit:
                values.update((value - 1, value, value + 1))
    return sorted(v for v in values if v >= 0)


def probe_inputs(before: ReifiedProgram, after: ReifiedProgram,
                 inputs: Sequence[int] = PROBE_INPUTS) -> Tuple[int, ...]:
    """The fixed sample set followed by literal-derived inputs not already in it."""
    extra = [v for v in literal_inputs(before, after) if v not in inputs]
    return tuple(inputs) + tuple(extra)


def run_probe(evaluator: MetaCircularEvaluator, program: ReifiedProgram, function: str,
              args: Tuple[Any, ...], bound: int) -> ProbeRun:
    try:
        result = evaluator.evaluate(program, bound, entry=function, args=args)
    except EvaluationBoundExceeded:
        return ProbeRun(function, args, ('bound',), None)
    except EvaluationError as exc:
        return ProbeRun(function, args, ('error', type(exc).__name__), None)
    return ProbeRun(function, args, ('value', structural_key(result.value)),
                    result.metadata.evaluation_steps)


def compare(evaluator: MetaCircularEvaluator, before: ReifiedProgram, after: ReifiedProgram,
            bound: int, functions: Optional[Sequence[str]] = None,
            inputs: Sequence[int] = PROBE_INPUTS) -> List[ProbeComparison]:
    """
    Probe every public function the two programs share with equal arity,
    on ``inputs`` extended by the integer literals of either program.
    """
    inputs = probe_inputs(before, after, inputs)
    old, new = public_signature(before), public_signature(after)
    names = [n for n in (functions if functions is not None else old) if n in old and old[n] == new.get(n)]
    comparisons = []
    for name in names:
        for args in probe_arguments(old[name], inputs):
            comparisons.append(ProbeComparison(
                run_probe(evaluator, before, name, args, bound),
                run_probe(evaluator, after, name, args, bound),
            ))
    return comparisons


def mean_steps(comparisons: Sequence[ProbeComparison]) -> Tuple[float, float]:
    """Mean step counts before and after over probes both sides finished."""
    paired = [(c.before.steps, c.after.steps) for c in comparisons
              if c.before.steps is not None and c.after.steps is not None]
    if not paired:
        return 0.0, 0.0
    steps = np.array(paired, dtype=float)
    return float(steps[:, 0].mean()), float(steps[:, 1].mean())
