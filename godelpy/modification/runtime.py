"""
In-Memory Execution Runtime
===========================

The execution collaborator the engine talks to: it owns the live unit for
each identity token, executes it natively and keeps per-identity counters.

    spawn(identity, unit)     register a unit (function, source, AST, ExecutableUnit)
    resolve(identity)         current UnitHandle, or IdentityNotFound
    install(identity, unit)   replace the live unit (modification coordinator only)
    invoke(identity, fn, *a)  call a function of the live unit, recording latency
    counters(identity)        snapshot of call count, latencies and memory

Installing swaps the whole handle in one assignment under the runtime's
lock, so a reader sees either the old unit or the new one, never a mix.
Supervision, delivery ordering and restart policy are not handled here.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from godelpy.errors import EvaluationError, IdentityNotFound
from godelpy.evaluation.primitives import MemoTable, native_namespace
from godelpy.reflection.inspector import MEMO_ENTRY_BYTES, unit_type_of
from godelpy.reflection.reifier import ExecutableUnit, Reifier, Unit
from godelpy.utils.helpers import Timer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitHandle:
    """The live unit registered under one identity."""
    identity: str
    unit: ExecutableUnit
    unit_type: str
    created_at: float
    version: int = 1
    is_active: bool = True
    namespace: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False, hash=False)


@dataclass
class UnitCounters:
    call_count: int = 0
    latencies: List[float] = field(default_factory=list)
    memory_bytes: int = 0

    def snapshot(self) -> 'UnitCounters':
        return UnitCounters(self.call_count, list(self.latencies), self.memory_bytes)


class InMemoryRuntime:
    """
    Usage:
        >>> runtime = InMemoryRuntime()
        >>> runtime.spawn('fib', fibonacci)
        >>> runtime.invoke('fib', 'fibonacci', 10)
        55
    """

    MAX_LATENCY_SAMPLES = 1000

    def __init__(self, reifier: Optional[Reifier] = None, max_latency_samples: int = MAX_LATENCY_SAMPLES):
        self.reifier = reifier or Reifier()
        self.max_latency_samples = max_latency_samples
        self._handles: Dict[str, UnitHandle] = {}
        self._counters: Dict[str, UnitCounters] = {}
        self._lock = threading.Lock()

    def spawn(self, identity: str, unit: Unit) -> UnitHandle:
        executable = self._executable(unit)
        program = self.reifier.reify(executable)
        handle = UnitHandle(
            identity=identity,
            unit=executable,
            unit_type=unit_type_of(program),
            created_at=time.time(),
            namespace=executable.compile(native_namespace()),
        )
        with self._lock:
            self._handles[identity] = handle
            self._counters[identity] = UnitCounters()
        logger.info(f"Spawned {identity} ({handle.unit_type}, functions: {executable.function_names()})")
        return handle

    def resolve(self, identity: str) -> UnitHandle:
        with self._lock:
            handle = self._handles.get(identity)
        if handle is None:
            raise IdentityNotFound(identity)
        return handle

    def identities(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._handles)

    def install(self, identity: str, unit: ExecutableUnit) -> UnitHandle:
        namespace = unit.compile(native_namespace())
        with self._lock:
            current = self._handles.get(identity)
            if current is None:
                raise IdentityNotFound(identity)
            handle = replace(current, unit=unit, version=current.version + 1, namespace=namespace)
            self._handles[identity] = handle
        logger.info(f"Installed version {handle.version} of {identity}")
        return handle

    def deactivate(self, identity: str) -> None:
        with self._lock:
            current = self._handles.get(identity)
            if current is None:
                raise IdentityNotFound(identity)
            self._handles[identity] = replace(current, is_active=False)

    def invoke(self, identity: str, function: Optional[str] = None, *args: Any) -> Any:
        """Call ``function`` (default: the unit's name) natively."""
        handle = self.resolve(identity)
        name = function or handle.unit.name
        target = handle.namespace.get(name)
        if not callable(target):
            raise EvaluationError(f"{identity} has no function {name!r}")
        with Timer() as timer:
            value = target(*args)
        memory = sum(len(v) * MEMO_ENTRY_BYTES for v in handle.namespace.values() if isinstance(v, MemoTable))
        with self._lock:
            counters = self._counters[identity]
            counters.call_count += 1
            counters.latencies.append(timer.elapsed_s)
            del counters.latencies[:-self.max_latency_samples]
            counters.memory_bytes = memory
        return value

    def counters(self, identity: str) -> UnitCounters:
        with self._lock:
            counters = self._counters.get(identity)
            if counters is None:
                raise IdentityNotFound(identity)
            return counters.snapshot()

    def _executable(self, unit: Unit) -> ExecutableUnit:
        if isinstance(unit, ExecutableUnit):
            return unit
        return self.reifier.reflect(self.reifier.reify(unit), name=getattr(unit, '__name__', None))
