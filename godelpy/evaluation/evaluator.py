"""
Meta-Circular Evaluator
=======================

Executes a reified program as data.

    evaluate(program, bound) → EvaluationResult(value, metadata, trace)

Theoretical Foundation:
    The evaluator is a big-step interpreter over the reified tree written
    as a *trampoline*: every node evaluation is a generator that yields
    requests for sub-evaluations instead of recursing. A single driver loop
    owns an explicit stack of suspended generators. Consequently

        - evaluation depth never touches the host interpreter's recursion
          limit, however deep the evaluated program recurses;
        - every step boundary is a point where the step budget, the
          recursion-depth budget, and the caller's cancellation signal are
          checked, so evaluation is bounded and promptly abortable.

    Code and data are the same value type. ``quote(e)`` evaluates to the
    reified tree of ``e``; reflective primitives take such trees apart. A
    reified program may therefore define an evaluator and apply it to the
    quotation of another program: data describing code describing code.

Step accounting:
    One step per node evaluation. With ``max_steps = N`` the N-th step is
    the last one performed; the attempt to take step N+1 raises
    ``EvaluationBoundExceeded`` reporting exactly N steps.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence, Tuple, Union

from godelpy.errors import EvaluationBoundExceeded, EvaluationCancelled, EvaluationError
from godelpy.evaluation.primitives import (
    PRIMITIVES,
    Closure,
    Environment,
    Primitive,
    TailCall,
    _invoke_primitive,
    apply_binary,
    apply_unary,
    contains_value,
    describe,
    get,
)
from godelpy.reflection.nodes import NodeKind, ReifiedProgram

logger = logging.getLogger(__name__)

# Rough allocation sizes for the memory estimate.
FRAME_BYTES = 232
BINDING_BYTES = 72
CONTINUATION_BYTES = 200


@dataclass(frozen=True)
class EvaluationBound:
    """Step and call-depth budget for one evaluation."""
    max_steps: int
    max_depth: int

    @classmethod
    def of(cls, bound: Union[int, 'EvaluationBound']) -> 'EvaluationBound':
        if isinstance(bound, EvaluationBound):
            return bound
        if not isinstance(bound, int) or bound <= 0:
            raise ValueError(f"bound must be a positive int, got {bound!r}")
        return cls(max_steps=bound, max_depth=bound)


@dataclass(frozen=True)
class TraceEntry:
    operation: str
    value: Any = None


@dataclass
class EvaluationTrace:
    """Primitive operations in execution order, capped at ``limit`` entries."""
    steps: List[TraceEntry] = field(default_factory=list)
    limit: int = 10_000
    dropped: int = 0

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def record(self, operation: str, value: Any = None) -> None:
        if len(self.steps) < self.limit:
            self.steps.append(TraceEntry(operation, value))
        else:
            self.dropped += 1


@dataclass(frozen=True)
class EvaluationMetadata:
    evaluation_steps: int
    memory_allocated: int   # estimated bytes
    stack_depth: int        # deepest active call chain
    start_time: float
    end_time: float

    @property
    def elapsed(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class EvaluationResult:
    value: Any
    metadata: EvaluationMetadata
    trace: EvaluationTrace


# ── Trampoline requests and signals ──────────────────────────────────────

@dataclass(frozen=True)
class _Eval:
    program: ReifiedProgram
    index: int
    env: Environment


@dataclass(frozen=True)
class _Apply:
    callee: Any
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class _Return:
    value: Any


CallHook = Callable[[str, Closure, Tuple[Any, ...]], None]


class _Context:
    """Mutable per-evaluation state."""

    def __init__(self, bound: EvaluationBound, trace_limit: int, cancel: Any,
                 call_hook: Optional[CallHook], program: ReifiedProgram):
        self.bound = bound
        self.steps = 0
        self.depth = 0
        self.max_depth_seen = 0
        self.peak_stack = 0
        self.frames_created = 0
        self.bindings_created = 0
        self.trace = EvaluationTrace(limit=trace_limit)
        self.cancel = cancel
        self.call_hook = call_hook
        self.program = program
        self.active: List[Closure] = []

    def tick(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise EvaluationCancelled(self.steps)
        if self.steps >= self.bound.max_steps:
            raise EvaluationBoundExceeded('steps', self.bound.max_steps, self.steps, self.depth)
        self.steps += 1

    def enter(self, closure: Closure, args: Tuple[Any, ...]) -> None:
        if self.depth >= self.bound.max_depth:
            raise EvaluationBoundExceeded('depth', self.bound.max_depth, self.steps, self.depth)
        self.depth += 1
        self.max_depth_seen = max(self.max_depth_seen, self.depth)
        self.active.append(closure)
        if self.call_hook is not None:
            self.call_hook('enter', closure, args)

    def leave(self, closure: Closure, args: Tuple[Any, ...]) -> None:
        self.depth -= 1
        self.active.pop()
        if self.call_hook is not None:
            self.call_hook('leave', closure, args)

    def current_code(self) -> ReifiedProgram:
        if self.active:
            return self.active[-1].code
        return self.program

    @property
    def memory_estimate(self) -> int:
        return (self.frames_created * FRAME_BYTES
                + self.bindings_created * BINDING_BYTES
                + self.peak_stack * CONTINUATION_BYTES)


class MetaCircularEvaluator:
    """
    Structural interpreter for reified programs.

    Usage:
        >>> evaluator = MetaCircularEvaluator()
        >>> result = evaluator.evaluate(program, bound=100_000,
        ...                             entry='fibonacci', args=(20,))
        >>> result.value, result.metadata.evaluation_steps
    """

    DEFAULT_TRACE_LIMIT = 10_000

    def __init__(self, trace_limit: int = DEFAULT_TRACE_LIMIT,
                 primitives: Optional[Dict[str, Primitive]] = None):
        self.trace_limit = trace_limit
        self.primitives = dict(primitives if primitives is not None else PRIMITIVES)
        self.evaluations = 0
        self._stats_lock = threading.Lock()
        self._dispatch = {
            NodeKind.PROGRAM: self._eval_program,
            NodeKind.FUNCTION: self._eval_function,
            NodeKind.BLOCK: self._eval_block,
            NodeKind.LET: self._eval_let,
            NodeKind.RETURN: self._eval_return,
            NodeKind.IF: self._eval_if,
            NodeKind.WHILE: self._eval_while,
            NodeKind.PASS: self._eval_pass,
            NodeKind.EXPR_STMT: self._eval_expr_stmt,
            NodeKind.LITERAL: self._eval_literal,
            NodeKind.IDENTIFIER: self._eval_identifier,
            NodeKind.CALL: self._eval_call,
            NodeKind.BINARY_OP: self._eval_binary,
            NodeKind.UNARY_OP: self._eval_unary,
            NodeKind.CONDITIONAL: self._eval_conditional,
            NodeKind.SEQUENCE: self._eval_sequence,
            NodeKind.INDEX: self._eval_index,
            NodeKind.QUOTE: self._eval_quote,
        }
        missing = set(NodeKind) - set(self._dispatch)
        if missing:
            raise AssertionError(f"evaluator has no rule for {sorted(k.value for k in missing)}")

    # ── Public API ───────────────────────────────────────────────

    def evaluate(
        self,
        program: ReifiedProgram,
        bound: Union[int, EvaluationBound],
        entry: Optional[str] = None,
        args: Sequence[Any] = (),
        cancel: Any = None,
        call_hook: Optional[CallHook] = None,
        env: Optional[Environment] = None,
    ) -> EvaluationResult:
        """
        Run ``program``. Without ``entry`` the value is that of the last
        top-level expression statement (or of the expression itself when
        the program is an expression); with ``entry`` the named function is
        then applied to ``args``. Both phases share one budget.
        """
        ctx = _Context(EvaluationBound.of(bound), self.trace_limit, cancel, call_hook, program)
        globals_env = env if env is not None else self.global_environment()
        start = time.time()
        value = self._run(self._root_request(program, globals_env, entry, tuple(args)), ctx)
        return self._finish(value, ctx, start)

    def apply(
        self,
        function: Any,
        args: Sequence[Any],
        bound: Union[int, EvaluationBound],
        cancel: Any = None,
        call_hook: Optional[CallHook] = None,
    ) -> EvaluationResult:
        """Apply a function value obtained from an earlier evaluation."""
        program = function.program if isinstance(function, Closure) else None
        ctx = _Context(EvaluationBound.of(bound), self.trace_limit, cancel, call_hook, program)
        start = time.time()
        value = self._run(self._apply_request(function, tuple(args)), ctx)
        return self._finish(value, ctx, start)

    def load(self, program: ReifiedProgram, bound: Union[int, EvaluationBound]) -> Environment:
        """Run the top-level statements and return the populated global scope."""
        env = self.global_environment()
        self.evaluate(program, bound, env=env)
        return env

    def global_environment(self) -> Environment:
        return Environment(self.primitives).extend({})

    # ── Driver ───────────────────────────────────────────────────

    def _root_request(self, program, env, entry, args):
        value = yield _Eval(program, program.root, env)
        if entry is None:
            return value.value if isinstance(value, _Return) else value
        function = env.lookup(entry)
        return (yield _Apply(function, args))

    def _apply_request(self, function, args):
        return (yield _Apply(function, args))

    def _run(self, root: Generator, ctx: _Context) -> Any:
        stack: List[Generator] = [root]
        value: Any = None
        while stack:
            try:
                request = stack[-1].send(value)
            except StopIteration as stop:
                stack.pop()
                value = stop.value
                continue
            if isinstance(request, _Eval):
                ctx.tick()
                node = request.program.node(request.index)
                stack.append(self._dispatch[node.kind](request.program, request.index, request.env, ctx))
            else:
                stack.append(self._apply_value(request.callee, request.args, ctx))
            ctx.peak_stack = max(ctx.peak_stack, len(stack))
            value = None
        return value

    def _finish(self, value: Any, ctx: _Context, start: float) -> EvaluationResult:
        with self._stats_lock:
            self.evaluations += 1
        metadata = EvaluationMetadata(
            evaluation_steps=ctx.steps,
            memory_allocated=ctx.memory_estimate,
            stack_depth=ctx.max_depth_seen,
            start_time=start,
            end_time=time.time(),
        )
        logger.debug(f"Evaluation finished in {ctx.steps} steps (depth {ctx.max_depth_seen})")
        return EvaluationResult(value=value, metadata=metadata, trace=ctx.trace)

    def _apply_value(self, callee: Any, args: Tuple[Any, ...], ctx: _Context):
        if isinstance(callee, Closure):
            if len(args) != len(callee.params):
                raise EvaluationError(
                    f"Arity error: {callee.name} expects {len(callee.params)} arguments, got {len(args)}"
                )
            ctx.enter(callee, args)
            scope = callee.env.extend(dict(zip(callee.params, args)))
            ctx.frames_created += 1
            ctx.bindings_created += len(args)
            signal = yield _Eval(callee.program, callee.body, scope)
            ctx.leave(callee, args)
            return signal.value if isinstance(signal, _Return) else None
        if isinstance(callee, Primitive):
            if callee.needs_context:
                result = callee.fn(ctx)
            else:
                result = _invoke_primitive(callee, args)
            if isinstance(result, TailCall):
                result = yield _Apply(result.callee, result.args)
            return result
        raise EvaluationError(f"{describe(callee)} is not callable")

    # ── Statements ───────────────────────────────────────────────

    def _eval_program(self, program, index, env, ctx):
        node = program.node(index)
        last = None
        for child in node.children:
            result = yield _Eval(program, child, env)
            if isinstance(result, _Return):
                return result
            if program.node(child).kind is NodeKind.EXPR_STMT:
                last = result
        return last

    def _eval_function(self, program, index, env, ctx):
        node = program.node(index)
        closure = Closure(
            name=node.attr('name'),
            params=tuple(node.attr('params', ())),
            program=program,
            index=index,
            env=env,
        )
        env.define(closure.name, closure)
        ctx.bindings_created += 1
        return None
        yield  # pragma: no cover

    def _eval_block(self, program, index, env, ctx):
        node = program.node(index)
        for child in node.children:
            result = yield _Eval(program, child, env)
            if isinstance(result, _Return):
                return result
        return None

    def _eval_let(self, program, index, env, ctx):
        node = program.node(index)
        value = yield _Eval(program, node.children[0], env)
        env.define(node.attr('target'), value)
        ctx.bindings_created += 1
        return None

    def _eval_return(self, program, index, env, ctx):
        node = program.node(index)
        if not node.children:
            return _Return(None)
        value = yield _Eval(program, node.children[0], env)
        return _Return(value)

    def _eval_if(self, program, index, env, ctx):
        node = program.node(index)
        test = yield _Eval(program, node.children[0], env)
        if test:
            return (yield _Eval(program, node.children[1], env))
        if len(node.children) > 2:
            return (yield _Eval(program, node.children[2], env))
        return None

    def _eval_while(self, program, index, env, ctx):
        node = program.node(index)
        while (yield _Eval(program, node.children[0], env)):
            result = yield _Eval(program, node.children[1], env)
            if isinstance(result, _Return):
                return result
        return None

    def _eval_pass(self, program, index, env, ctx):
        node = program.node(index)
        return None
        yield  # pragma: no cover

    def _eval_expr_stmt(self, program, index, env, ctx):
        node = program.node(index)
        return (yield _Eval(program, node.children[0], env))

    # ── Expressions ──────────────────────────────────────────────

    def _eval_literal(self, program, index, env, ctx):
        node = program.node(index)
        value = node.attr('value')
        ctx.trace.record('literal', value)
        return value
        yield  # pragma: no cover

    def _eval_identifier(self, program, index, env, ctx):
        node = program.node(index)
        value = env.lookup(node.attr('name'))
        ctx.trace.record(f"lookup {node.attr('name')}", value)
        return value
        yield  # pragma: no cover

    def _eval_call(self, program, index, env, ctx):
        node = program.node(index)
        callee = yield _Eval(program, node.children[0], env)
        args = []
        for child in node.children[1:]:
            args.append((yield _Eval(program, child, env)))
        result = yield _Apply(callee, tuple(args))
        ctx.trace.record(f"call {getattr(callee, 'name', describe(callee))}", result)
        return result

    def _eval_binary(self, program, index, env, ctx):
        node = program.node(index)
        op = node.attr('op')
        left = yield _Eval(program, node.children[0], env)
        if op == 'and' and not left:
            result = left
        elif op == 'or' and left:
            result = left
        else:
            right = yield _Eval(program, node.children[1], env)
            if op in ('in', 'not in') and isinstance(right, (Closure, Primitive)):
                # A function used as a collection is its characteristic predicate.
                member = yield _Apply(right, (left,))
                result = bool(member) if op == 'in' else not member
            elif op in ('and', 'or'):
                result = right
            else:
                result = apply_binary(op, left, right)
        ctx.trace.record(f"binary_op {op}", result)
        return result

    def _eval_unary(self, program, index, env, ctx):
        node = program.node(index)
        operand = yield _Eval(program, node.children[0], env)
        result = apply_unary(node.attr('op'), operand)
        ctx.trace.record(f"unary_op {node.attr('op')}", result)
        return result

    def _eval_conditional(self, program, index, env, ctx):
        node = program.node(index)
        test = yield _Eval(program, node.children[0], env)
        branch = node.children[1] if test else node.children[2]
        return (yield _Eval(program, branch, env))

    def _eval_sequence(self, program, index, env, ctx):
        node = program.node(index)
        items = []
        for child in node.children:
            items.append((yield _Eval(program, child, env)))
        return tuple(items) if node.attr('sequence') == 'tuple' else items

    def _eval_index(self, program, index, env, ctx):
        node = program.node(index)
        target = yield _Eval(program, node.children[0], env)
        key = yield _Eval(program, node.children[1], env)
        return get(target, key)

    def _eval_quote(self, program, index, env, ctx):
        node = program.node(index)
        code = program.subtree(node.children[0])
        ctx.trace.record('quote', code)
        return code
        yield  # pragma: no cover

