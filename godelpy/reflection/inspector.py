"""
Self-Inspection
===============

Read-only reports about a live unit: who it is, what shape its control
flow has, and how it has been performing.

Behavioral analysis is a static structural scan of the reified program:

    - handlers           : top-level function declarations
    - loops              : ``while`` constructs
    - recursion          : functions on a cycle of the direct call graph
    - dynamic calls      : calls whose callee is computed (a parameter,
                           a subscript, a call result)
    - termination flag   : see ``termination_estimate``

The ``termination_guaranteed`` flag is ADVISORY. It is ``True`` only when
the scan sees no loops, no dynamic calls, no mutual recursion, and every
self-recursive function guards a parameter with a literal lower bound
(``if n < k: return ...``) and recurses only on ``n - c`` for positive
literal ``c``. It is a conservative estimate, not a proof; the fixed-point
solver and the prover never consult it.
"""

import logging
import threading
import time
from collections import defaultdict
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ContextManager, Dict, List, Optional, Set, Tuple

import numpy as np

from godelpy.reflection.nodes import NodeKind, ReifiedProgram, call_target

logger = logging.getLogger(__name__)

# Rough per-node footprint used for static memory estimates.
NODE_BYTES = 96
MEMO_ENTRY_BYTES = 128


@dataclass(frozen=True)
class HandlerInfo:
    """A top-level function of the unit."""
    name: str
    params: Tuple[str, ...]
    node_count: int
    is_recursive: bool


@dataclass(frozen=True)
class ControlFlowSummary:
    has_loops: bool
    loop_count: int
    has_recursion: bool
    recursive_call_sites: int
    dynamic_call_sites: int
    termination_guaranteed: bool  # advisory only


@dataclass(frozen=True)
class BehaviorAnalysis:
    handlers: Tuple[HandlerInfo, ...]
    control_flow: ControlFlowSummary


@dataclass(frozen=True)
class BasicInfo:
    name: str
    unit_type: str
    created_at: float
    is_active: bool
    fingerprint: str
    node_count: int


@dataclass(frozen=True)
class PerformanceSnapshot:
    total_calls: int
    average_latency: float  # seconds
    memory_usage: int       # bytes


@dataclass(frozen=True)
class InspectionReport:
    """Immutable snapshot; never mutated after construction."""
    basic_info: BasicInfo
    behavior: BehaviorAnalysis
    performance: PerformanceSnapshot
    taken_at: float = field(default_factory=time.time, compare=False)

    def structural(self) -> 'InspectionReport':
        """The report with performance counters zeroed, for comparisons."""
        return replace(self, performance=PerformanceSnapshot(0, 0.0, 0))


# ═══════════════════════════════════════════════════════════════════════════
# Static scan
# ═══════════════════════════════════════════════════════════════════════════

def call_graph(program: ReifiedProgram) -> Dict[str, List[Tuple[str, int]]]:
    """Direct calls between top-level functions: caller → [(callee, call index)]."""
    functions = program.functions()
    graph: Dict[str, List[Tuple[str, int]]] = {name: [] for name in functions}
    for name, index in functions.items():
        for call_index in program.find(NodeKind.CALL, index):
            target = call_target(program, call_index)
            if target in functions:
                graph[name].append((target, call_index))
    return graph


def strongly_connected(graph: Dict[str, List[Tuple[str, int]]]) -> List[Set[str]]:
    """Tarjan's algorithm, iterative."""
    index_of: Dict[str, int] = {}
    low: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[Set[str]] = []
    counter = 0

    for start in graph:
        if start in index_of:
            continue
        work = [(start, 0)]
        while work:
            node, edge = work.pop()
            if edge == 0:
                index_of[node] = low[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            successors = graph[node]
            if edge < len(successors):
                work.append((node, edge + 1))
                succ = successors[edge][0]
                if succ not in index_of:
                    work.append((succ, 0))
                elif succ in on_stack:
                    low[node] = min(low[node], index_of[succ])
                continue
            if low[node] == index_of[node]:
                component = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                components.append(component)
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
    return components


def recursive_functions(program: ReifiedProgram) -> Dict[str, Set[str]]:
    """Each recursive function mapped to the call-graph cycle it belongs to."""
    graph = call_graph(program)
    result: Dict[str, Set[str]] = {}
    for component in strongly_connected(graph):
        if len(component) > 1:
            for name in component:
                result[name] = component
        else:
            (name,) = component
            if any(callee == name for callee, _ in graph[name]):
                result[name] = component
    return result


def dynamic_call_sites(program: ReifiedProgram, index: Optional[int] = None) -> int:
    """Calls whose callee is not a top-level function or a known global name."""
    functions = program.functions()
    count = 0
    for function_index in ([index] if index is not None else functions.values()):
        params = set(program.node(function_index).attr('params', ()))
        for call_index in program.find(NodeKind.CALL, function_index):
            target = call_target(program, call_index)
            if target is None or target in params:
                count += 1
    return count


def _decreasing_argument(program: ReifiedProgram, arg_index: int, param: str) -> bool:
    node = program.node(arg_index)
    if node.kind is not NodeKind.BINARY_OP or node.attr('op') != '-':
        return False
    left, right = (program.node(c) for c in node.children)
    return (left.kind is NodeKind.IDENTIFIER and left.attr('name') == param
            and right.kind is NodeKind.LITERAL
            and type(right.attr('value')) is int and right.attr('value') > 0)


def _literal_lower_guard(program: ReifiedProgram, function_index: int, param: str) -> bool:
    """First statement is ``if param < k`` (or ``<=``) whose branch returns."""
    body = program.node(program.children(function_index)[0])
    if not body.children:
        return False
    first = program.node(body.children[0])
    if first.kind is not NodeKind.IF:
        return False
    test = program.node(first.children[0])
    if test.kind is not NodeKind.BINARY_OP:
        return False
    op = test.attr('op')
    left, right = (program.node(c) for c in test.children)

    def is_param(n):
        return n.kind is NodeKind.IDENTIFIER and n.attr('name') == param

    def is_int(n):
        return n.kind is NodeKind.LITERAL and type(n.attr('value')) is int

    guarded = ((op in ('<', '<=') and is_param(left) and is_int(right))
               or (op in ('>', '>=') and is_int(left) and is_param(right)))
    if not guarded:
        return False
    then_block = program.node(first.children[1])
    returns = [c for c in then_block.children if program.node(c).kind is NodeKind.RETURN]
    if not returns:
        return False
    name = program.node(function_index).attr('name')
    then_calls = [call_target(program, c) for c in program.find(NodeKind.CALL, first.children[1])]
    return name not in then_calls


def termination_estimate(program: ReifiedProgram) -> bool:
    """Conservative, advisory termination flag (see module docstring)."""
    if program.find(NodeKind.WHILE):
        return False
    if dynamic_call_sites(program):
        return False
    functions = program.functions()
    for name, cycle in recursive_functions(program).items():
        if len(cycle) > 1:
            return False
        index = functions[name]
        params = program.node(index).attr('params', ())
        sites = [c for c in program.find(NodeKind.CALL, index) if call_target(program, c) == name]
        structural = False
        for position, param in enumerate(params):
            if not _literal_lower_guard(program, index, param):
                continue
            if all(len(program.children(c)) == 1 + len(params)
                   and _decreasing_argument(program, program.children(c)[1 + position], param)
                   for c in sites):
                structural = True
                break
        if not structural:
            return False
    return True


def analyze_behavior(program: ReifiedProgram) -> BehaviorAnalysis:
    """Static behavioral analysis of a reified program."""
    recursive = recursive_functions(program)
    functions = program.functions()
    handlers = tuple(
        HandlerInfo(
            name=name,
            params=tuple(program.node(index).attr('params', ())),
            node_count=program.count_nodes(index),
            is_recursive=name in recursive,
        )
        for name, index in functions.items()
    )
    recursive_sites = 0
    for caller, edges in call_graph(program).items():
        cycle = recursive.get(caller)
        if cycle:
            recursive_sites += sum(1 for callee, _ in edges if callee in cycle)
    loops = len(program.find(NodeKind.WHILE))
    control_flow = ControlFlowSummary(
        has_loops=loops > 0,
        loop_count=loops,
        has_recursion=bool(recursive),
        recursive_call_sites=recursive_sites,
        dynamic_call_sites=dynamic_call_sites(program),
        termination_guaranteed=termination_estimate(program),
    )
    return BehaviorAnalysis(handlers=handlers, control_flow=control_flow)


def complexity_profile(program: ReifiedProgram) -> Dict[str, Any]:
    """Dictionary summary used by self-reasoning programs."""
    behavior = analyze_behavior(program)
    flow = behavior.control_flow
    return {
        'node_count': program.count_nodes(),
        'depth': program.depth(),
        'functions': len(behavior.handlers),
        'has_loops': flow.has_loops,
        'has_recursion': flow.has_recursion,
        'recursive_call_sites': flow.recursive_call_sites,
        'termination_guaranteed': flow.termination_guaranteed,
    }


def static_memory_estimate(program: ReifiedProgram) -> int:
    """Bytes for the tree itself plus any bounded memo tables it allocates."""
    total = program.count_nodes() * NODE_BYTES
    for call_index in program.find(NodeKind.CALL):
        if call_target(program, call_index) == 'memo_table':
            args = program.children(call_index)[1:]
            if args and program.node(args[0]).kind is NodeKind.LITERAL:
                capacity = program.node(args[0]).attr('value')
                if isinstance(capacity, int):
                    total += capacity * MEMO_ENTRY_BYTES
    return total


# ═══════════════════════════════════════════════════════════════════════════
# Inspector
# ═══════════════════════════════════════════════════════════════════════════

class Inspector:
    """
    Produces ``InspectionReport``s for units registered with the runtime.

    ``snapshot_guard(identity)`` returns a context manager held while the
    program and counters are read; the modification coordinator supplies
    one so a report never straddles a commit.
    """

    def __init__(
        self,
        runtime: Any,
        reifier: Any,
        snapshot_guard: Optional[Callable[[str], ContextManager]] = None,
    ):
        self.runtime = runtime
        self.reifier = reifier
        self._guard = snapshot_guard or (lambda identity: nullcontext())
        self.inspections = 0
        self._stats_lock = threading.Lock()

    def inspect(self, identity: str) -> InspectionReport:
        with self._guard(identity):
            handle = self.runtime.resolve(identity)
            counters = self.runtime.counters(identity)
        program = self.reifier.reify(handle.unit)
        report = InspectionReport(
            basic_info=BasicInfo(
                name=identity,
                unit_type=handle.unit_type,
                created_at=handle.created_at,
                is_active=handle.is_active,
                fingerprint=program.fingerprint(),
                node_count=program.count_nodes(),
            ),
            behavior=analyze_behavior(program),
            performance=self._performance(counters, program),
        )
        with self._stats_lock:
            self.inspections += 1
        logger.debug(f"Inspected {identity}: {len(report.behavior.handlers)} handlers, "
                     f"recursion={report.behavior.control_flow.has_recursion}")
        return report

    def inspect_program(self, program: ReifiedProgram, name: str = "<anonymous>") -> InspectionReport:
        """Static report for a program that is not registered with the runtime."""
        return InspectionReport(
            basic_info=BasicInfo(
                name=name,
                unit_type=unit_type_of(program),
                created_at=time.time(),
                is_active=False,
                fingerprint=program.fingerprint(),
                node_count=program.count_nodes(),
            ),
            behavior=analyze_behavior(program),
            performance=PerformanceSnapshot(0, 0.0, static_memory_estimate(program)),
        )

    @staticmethod
    def _performance(counters: Any, program: ReifiedProgram) -> PerformanceSnapshot:
        latencies = np.asarray(counters.latencies, dtype=float)
        average = float(np.mean(latencies)) if latencies.size else 0.0
        memory = counters.memory_bytes or static_memory_estimate(program)
        return PerformanceSnapshot(
            total_calls=counters.call_count,
            average_latency=average,
            memory_usage=int(memory),
        )


def unit_type_of(program: ReifiedProgram) -> str:
    functions = program.functions()
    if len(functions) == 1 and len(program.children()) == 1:
        return 'function'
    return 'module'
