"""
Fixed-Point Solver
==================

Searches for ``v`` with ``f(v) = v`` by Kleene iteration on the
meta-circular evaluator, and classifies the ways the search can fail.

Theoretical Foundation:
    Starting from a seed ``x₀`` the solver computes ``xₙ₊₁ = f(xₙ)``. Every
    application is observed through the evaluator's call hook, which keeps
    the stack of active (function, argument) pairs. Three things can happen:

    1. **Convergence**: two consecutive candidates are structurally equal, giving
       ``Value(xₙ)``.
    2. **Cycle**: either an application re-enters a (function, argument)
       pair that is still active (self-reference inside one evaluation), or
       a candidate revisits an earlier state (oscillation across
       iterations). The cycle is then classified by the *shape* of the code
       at the re-entry site:

           not g(g)          →  Liar      f(f) holds iff f(f) does not hold
           not contains(s,s) →  Russell   s ∈ s iff s ∉ s
           s not in s        →  Russell

       Any other cycle is ``Diverged``.
    3. **Exhaustion**: the iteration bound or an evaluation's step budget
       runs out first, giving ``Diverged``.

    Paradox detection is purely syntactic on a dynamically observed cycle.
    It does not decide halting; it recognises two known shapes and reports
    everything else as divergence. The static ``termination_guaranteed``
    flag produced by inspection is never consulted.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Hashable, List, Optional, Tuple, Union

from godelpy.errors import EvaluationBoundExceeded, EvaluationError
from godelpy.evaluation.evaluator import EvaluationBound, MetaCircularEvaluator
from godelpy.evaluation.primitives import Closure, describe, structural_key
from godelpy.reflection.nodes import NodeKind, ReifiedProgram, call_target

logger = logging.getLogger(__name__)


class ParadoxKind(Enum):
    LIAR = auto()
    RUSSELL = auto()


@dataclass(frozen=True)
class FixedPointValue:
    value: Any


@dataclass(frozen=True)
class Paradox:
    kind: ParadoxKind
    description: str


@dataclass(frozen=True)
class Diverged:
    reason: str


Outcome = Union[FixedPointValue, Paradox, Diverged]


@dataclass(frozen=True)
class FixedPointResult:
    outcome: Outcome
    iterations: int
    algorithm: str
    history: Tuple[str, ...] = field(default=())

    @property
    def converged(self) -> bool:
        return isinstance(self.outcome, FixedPointValue)

    @property
    def is_paradox(self) -> bool:
        return isinstance(self.outcome, Paradox)

    @property
    def value(self) -> Any:
        if not isinstance(self.outcome, FixedPointValue):
            raise ValueError(f"No fixed point: {self.outcome}")
        return self.outcome.value


class _SelfSeed:
    def __repr__(self) -> str:
        return 'SELF'


SELF = _SelfSeed()
"""Seed meaning "the function itself", i.e. search via self-application."""


class _Reentry(Exception):
    """Raised from the call hook when an active application recurs."""

    def __init__(self, closure: Closure, args: Tuple[Any, ...]):
        super().__init__(closure.name)
        self.closure = closure
        self.args = args


class _CycleMonitor:
    """Call hook tracking the active (function, argument) pairs."""

    def __init__(self):
        self.active: List[Tuple[str, Hashable]] = []
        self.applications = 0

    def __call__(self, event: str, closure: Closure, args: Tuple[Any, ...]) -> None:
        if event == 'leave':
            self.active.pop()
            return
        pair = (closure.fingerprint, structural_key(args))
        if pair in self.active:
            raise _Reentry(closure, args)
        self.active.append(pair)
        self.applications += 1


# ── Shape classification ─────────────────────────────────────────────────

def _identifier(program: ReifiedProgram, index: int) -> Optional[str]:
    node = program.node(index)
    return node.attr('name') if node.kind is NodeKind.IDENTIFIER else None


def _is_self_application(program: ReifiedProgram, index: int, own_name: str,
                         params: Tuple[str, ...]) -> bool:
    """``g(g)`` for a parameter ``g``, or a recursive call on the unchanged parameters."""
    node = program.node(index)
    if node.kind is not NodeKind.CALL:
        return False
    callee = call_target(program, index)
    args = [_identifier(program, a) for a in node.children[1:]]
    if callee in params and args == [callee]:
        return True
    return callee == own_name and tuple(args) == params


def _is_self_membership(program: ReifiedProgram, index: int) -> bool:
    """``contains(s, s)`` or ``s in s``."""
    node = program.node(index)
    if node.kind is NodeKind.CALL and call_target(program, index) == 'contains':
        args = [_identifier(program, a) for a in node.children[1:]]
        return len(args) == 2 and args[0] is not None and args[0] == args[1]
    if node.kind is NodeKind.BINARY_OP and node.attr('op') == 'in':
        left, right = (_identifier(program, c) for c in node.children)
        return left is not None and left == right
    return False


def classify_cycle(code: ReifiedProgram) -> Optional[Paradox]:
    """Recognise a paradox shape in a function's code, or return None."""
    if code.kind is not NodeKind.FUNCTION:
        return None
    name = code.attr('name')
    params = tuple(code.attr('params', ()))
    for index in code.walk():
        node = code.node(index)
        if node.kind is NodeKind.BINARY_OP and node.attr('op') == 'not in':
            left, right = (_identifier(code, c) for c in node.children)
            if left is not None and left == right:
                return Paradox(ParadoxKind.RUSSELL,
                               f"{name}: {left} is a member of {left} iff it is not")
        if node.kind is not NodeKind.UNARY_OP or node.attr('op') != 'not':
            continue
        operand = node.children[0]
        if _is_self_membership(code, operand):
            return Paradox(ParadoxKind.RUSSELL,
                           f"{name}: the set of all sets not containing themselves contains itself iff it does not")
        if _is_self_application(code, operand, name, params):
            return Paradox(ParadoxKind.LIAR,
                           f"{name}({name}) holds iff {name}({name}) does not hold")
    return None


class FixedPointSolver:
    """
    Kleene iteration with cycle classification.

    Usage:
        >>> solver = FixedPointSolver()
        >>> liar = reifier.reify("def f(g):\\n    return not g(g)\\n")
        >>> solver.fixed_point(liar).outcome
        Paradox(kind=<ParadoxKind.LIAR: 1>, description='f(f) holds iff f(f) does not hold')
    """

    ALGORITHM = 'kleene-iteration'
    DEFAULT_MAX_ITERATIONS = 32
    DEFAULT_STEP_BOUND = 10_000

    def __init__(
        self,
        evaluator: Optional[MetaCircularEvaluator] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        step_bound: Union[int, EvaluationBound] = DEFAULT_STEP_BOUND,
    ):
        self.evaluator = evaluator or MetaCircularEvaluator()
        self.max_iterations = max_iterations
        self.step_bound = step_bound
        self.paradoxes_detected = 0
        self._stats_lock = threading.Lock()

    def fixed_point(
        self,
        program: ReifiedProgram,
        domain_seed: Any = SELF,
        bound: Optional[int] = None,
        function: Optional[str] = None,
        cancel: Any = None,
    ) -> FixedPointResult:
        """
        Iterate ``f`` from ``domain_seed`` for at most ``bound`` applications.

        ``function`` picks the unary function when the program defines
        several; by default it is the last top-level function.
        """
        max_iterations = self.max_iterations if bound is None else bound
        name = self._select_function(program, function)
        try:
            env = self.evaluator.load(program, self.step_bound)
        except EvaluationBoundExceeded as exc:
            return self._result(Diverged(f"top-level code exceeded its bound: {exc.message}"), 0, [])
        f = env.lookup(name)
        if not isinstance(f, Closure) or len(f.params) != 1:
            raise EvaluationError(f"fixed_point needs a unary function, got {describe(f)}")

        candidate = f if domain_seed is SELF else domain_seed
        visited = {structural_key(candidate): 0}
        history: List[str] = [describe(candidate)]

        for iteration in range(1, max_iterations + 1):
            monitor = _CycleMonitor()
            try:
                result = self.evaluator.apply(f, (candidate,), self.step_bound,
                                              cancel=cancel, call_hook=monitor)
            except _Reentry as reentry:
                return self._classify(reentry.closure.code, iteration, history,
                                      f"{reentry.closure.name} re-entered with the same argument")
            except EvaluationBoundExceeded as exc:
                return self._result(Diverged(f"evaluation bound exceeded: {exc.message}"),
                                    iteration, history)

            value = result.value
            history.append(describe(value))
            key = structural_key(value)
            if key == structural_key(candidate):
                logger.debug(f"Fixed point of {name} after {iteration} iterations")
                return self._result(FixedPointValue(value), iteration, history)
            if key in visited:
                return self._classify(
                    f.code, iteration, history,
                    f"candidate revisited state from iteration {visited[key]}",
                )
            visited[key] = iteration
            candidate = value

        return self._result(Diverged(f"no fixed point within {max_iterations} iterations"),
                            max_iterations, history)

    def _classify(self, code: ReifiedProgram, iteration: int, history: List[str],
                  cycle: str) -> FixedPointResult:
        paradox = classify_cycle(code)
        if paradox is None:
            logger.debug(f"Unclassified cycle at iteration {iteration}: {cycle}")
            return self._result(Diverged(f"cycle without recognised shape: {cycle}"), iteration, history)
        with self._stats_lock:
            self.paradoxes_detected += 1
        logger.info(f"Paradox detected ({paradox.kind.name}) at iteration {iteration}: {paradox.description}")
        return self._result(paradox, iteration, history)

    def _result(self, outcome: Outcome, iterations: int, history: List[str]) -> FixedPointResult:
        return FixedPointResult(outcome=outcome, iterations=iterations,
                                algorithm=self.ALGORITHM, history=tuple(history))

    @staticmethod
    def _select_function(program: ReifiedProgram, function: Optional[str]) -> str:
        functions = program.functions()
        if function is not None:
            if function not in functions:
                raise EvaluationError(f"Program defines no function {function!r}")
            return function
        if not functions:
            raise EvaluationError("Program defines no function to iterate")
        return list(functions)[-1]
