"""
Prover
======

Builds proofs for the closed set of theorem statements.

Tactic priority (functional correctness):

    1. GOAL                     postcondition with ``result := f(params)``
    2. INTRODUCE_PRECONDITION   then every distinct assumption, then lemmas
    3. CASE_SPLIT               one branch per return path of ``f``
    4. UNFOLD                   replace ``f(params)`` by the branch's returned expression
    5. INDUCTION_HYPOTHESIS     for each recursive call left in the goal, once its
                                measure is shown to decrease and be bounded below
                                and the precondition shown to hold at its arguments
    6. LINEAR_ARITHMETIC        close the branch with a non-negative combination
    7. QED

Termination, transformation equivalence, memory safety and complexity
bounds each have their own fixed step sequence (see the ``_prove_*``
methods). Every step records the rule, a justification, the resulting
formula and the premises it rests on, so the verifier can re-derive it.

The prover never consults the inspector's advisory termination flag.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from godelpy.errors import ProofSearchExhausted, TransformationNotApplicable
from godelpy.proof import derivations as d
from godelpy.proof.arithmetic import Certificate, Constraint, find_certificate, linearize
from godelpy.proof.theorem import (
    AssumptionStrength, ComplexityBound, FunctionalCorrectness, MemorySafety, Proof,
    ProofMetrics, ProofRule, ProofStep, Termination, Theorem, TransformationEquivalence,
    VerificationResult,
)
from godelpy.reflection.nodes import ReifiedProgram, identifier, substitute
from godelpy.transform.transformer import Transformer, memo_tables, memoized_functions
from godelpy.utils.helpers import Timer

logger = logging.getLogger(__name__)


RULE_LEMMAS: Dict[str, str] = {
    'MEMOIZATION': "a pure function's result depends only on its arguments, so a table keyed by "
                   "the arguments returns what the call would",
    'INLINING': "calling a single-return function equals its returned expression with "
                "parameters replaced by arguments that are trivial or read once, eagerly and in order",
    'DEAD_CODE_ELIMINATION': "statements after return, branches on constant tests and unread "
                             "trivial bindings are never observed",
    'CONSTANT_FOLDING': "an operator applied to literals equals the literal of its value",
}

BUILTIN_AXIOMS: Dict[str, str] = {
    'bounded_evaluation': "every evaluation runs under a finite step and depth budget",
}


class _Steps:
    """Append-only step log with a hard size limit."""

    def __init__(self, theorem: Theorem, limit: int):
        self.theorem = theorem
        self.limit = limit
        self.steps: List[ProofStep] = []

    def add(self, rule: ProofRule, formula: ReifiedProgram, justification: str,
            branch: str = 'main', premises: Sequence[int] = (), certificate: Any = None) -> int:
        if len(self.steps) >= self.limit:
            raise ProofSearchExhausted(self.theorem.id, f"step limit {self.limit} reached", len(self.steps))
        index = len(self.steps)
        self.steps.append(ProofStep(index, rule, justification, formula, branch, tuple(premises), certificate))
        return index

    def formula(self, index: int) -> ReifiedProgram:
        return self.steps[index].formula


def _logical_depth(steps: Sequence[ProofStep]) -> int:
    depth: Dict[int, int] = {}
    for step in steps:
        depth[step.index] = 1 + max((depth[p] for p in step.premises), default=0)
    return max(depth.values(), default=0)


class Prover:
    """
    Usage:
        >>> prover = Prover()
        >>> proof = prover.prove(theorem)
        >>> prover.verify(proof).verified
        True
    """

    DEFAULT_MAX_STEPS = 512

    def __init__(self, max_steps: int = DEFAULT_MAX_STEPS, transformer: Optional[Transformer] = None):
        self.max_steps = max_steps
        self.transformer = transformer or Transformer()
        self.proofs_attempted = 0
        self.proofs_found = 0
        self._stats_lock = threading.Lock()

    def prove(self, theorem: Theorem) -> Proof:
        with self._stats_lock:
            self.proofs_attempted += 1
        statement = theorem.statement
        log = _Steps(theorem, self.max_steps)
        with Timer() as timer:
            if isinstance(statement, FunctionalCorrectness):
                method = self._prove_correctness(log, statement)
            elif isinstance(statement, Termination):
                method = self._prove_termination(log, statement)
            elif isinstance(statement, TransformationEquivalence):
                method = self._prove_equivalence(log, statement)
            elif isinstance(statement, MemorySafety):
                method = self._prove_memory_safety(log, statement)
            elif isinstance(statement, ComplexityBound):
                method = self._prove_complexity(log, statement)
            else:
                raise ProofSearchExhausted(theorem.id, f"no tactic for {type(statement).__name__}")
        steps = tuple(log.steps)
        metrics = ProofMetrics(
            logical_depth=_logical_depth(steps),
            lemma_count=sum(1 for s in steps if s.rule in (ProofRule.LEMMA, ProofRule.AXIOM,
                                                           ProofRule.INDUCTION_HYPOTHESIS)),
            step_count=len(steps),
            proof_time=timer.elapsed_s,
        )
        with self._stats_lock:
            self.proofs_found += 1
        logger.info(f"Proved {theorem.id} ({theorem.name}) by {method} in {len(steps)} steps")
        return Proof(theorem=theorem, steps=steps, method=method, metrics=metrics)

    def verify(self, proof: Proof) -> VerificationResult:
        from godelpy.proof.verifier import Verifier
        return Verifier(self.transformer).verify(proof)

    # ── Shared tactics ───────────────────────────────────────────

    @staticmethod
    def _introduce_context(log: _Steps, skip: Sequence[ReifiedProgram] = ()) -> List[int]:
        """Assumptions (deduplicated) and lemmas as main-branch facts."""
        theorem = log.theorem
        seen = list(skip)
        introduced = []
        for assumption in theorem.assumptions:
            if assumption.formula in seen:
                continue
            seen.append(assumption.formula)
            strength = 'hypothesis' if assumption.strength is AssumptionStrength.HYPOTHESIS else 'axiom'
            introduced.append(log.add(ProofRule.INTRODUCE_ASSUMPTION, assumption.formula,
                                      assumption.name, certificate=strength))
        for lemma in theorem.context.lemmas:
            if lemma.formula in seen:
                continue
            seen.append(lemma.formula)
            introduced.append(log.add(ProofRule.LEMMA, lemma.formula, lemma.name))
        return introduced

    @staticmethod
    def _close(log: _Steps, goal: ReifiedProgram, facts: Sequence[int], branch: str,
               is_integer, what: str) -> int:
        """LINEAR_ARITHMETIC step proving ``goal`` from ``facts``, or exhaustion."""
        goals = d.linear_constraints(goal, is_integer)
        if goals is None:
            raise ProofSearchExhausted(log.theorem.id, f"{what}: goal is not linear arithmetic")
        premises = [f for f in facts if d.hypothesis_constraints(log.formula(f), is_integer)]
        hypotheses: List[Constraint] = []
        for premise in premises:
            hypotheses.extend(d.hypothesis_constraints(log.formula(premise), is_integer))
        certificates: List[Certificate] = []
        for constraint in goals:
            certificate = find_certificate(constraint, hypotheses)
            if certificate is None:
                raise ProofSearchExhausted(log.theorem.id, f"{what}: no linear certificate for {constraint.form}")
            certificates.append(certificate)
        return log.add(ProofRule.LINEAR_ARITHMETIC, goal, f"linear combination ({what})",
                       branch, premises, tuple(certificates))

    # ── Functional correctness ───────────────────────────────────

    def _prove_correctness(self, log: _Steps, statement: FunctionalCorrectness) -> str:
        theorem = log.theorem
        program = theorem.context.program
        function = statement.function
        if program.function(function) is None:
            raise ProofSearchExhausted(theorem.id, f"program defines no function {function!r}")
        params = d.params_of(program, function)
        is_integer = d.integer_predicate(theorem, function)

        goal_step = log.add(ProofRule.GOAL, d.goal_of(statement, params), f"postcondition of {function}")
        pre_step = log.add(ProofRule.INTRODUCE_PRECONDITION, statement.precondition, 'precondition')
        facts = [pre_step] + self._introduce_context(log, skip=[statement.precondition])

        cases = d.function_cases(program, function)
        if cases is None:
            raise ProofSearchExhausted(theorem.id, f"{function} is not a tree of conditional returns")
        primary = d.primary_call(function, params)
        split = len(cases) > 1 or bool(cases[0][0])
        closing = []
        used_induction = False

        for k, (conditions, returned) in enumerate(cases, 1):
            branch = f"main.{k}" if split else 'main'
            branch_facts = list(facts)
            unfold_premises = [goal_step]
            if split:
                case_step = log.add(ProofRule.CASE_SPLIT, d.conjunction(conditions),
                                    f"case {k} of {len(cases)} in {function}", branch, (goal_step,), k)
                branch_facts.append(case_step)
                unfold_premises.append(case_step)
            unfolded = d.replace_call(log.formula(goal_step), primary, returned)
            log.add(ProofRule.UNFOLD, unfolded, f"unfold {function}", branch, unfold_premises, k if split else None)

            for recursive_call in d.calls_to(unfolded, function):
                hypothesis = self._induction(log, statement, params, recursive_call, branch_facts,
                                             branch, is_integer)
                if hypothesis is not None:
                    branch_facts.append(hypothesis)
                    used_induction = True
            closing.append(self._close(log, unfolded, branch_facts, branch, is_integer, f"case {k}"))

        log.add(ProofRule.QED, log.formula(goal_step), 'all cases closed', premises=closing)
        return 'induction' if used_induction else ('case-analysis' if split else 'unfolding')

    def _induction(self, log: _Steps, statement: FunctionalCorrectness, params: Tuple[str, ...],
                   recursive_call: ReifiedProgram, facts: List[int], branch: str,
                   is_integer) -> Optional[int]:
        args = d.call_arguments(recursive_call)
        if len(args) != len(params):
            return None
        precondition_parts = d.conjuncts(substitute(statement.precondition, dict(zip(params, args))))
        hypotheses: List[Constraint] = []
        for fact in facts:
            hypotheses.extend(d.hypothesis_constraints(log.formula(fact), is_integer))

        for position, param in enumerate(params):
            if linearize(args[position]) is None:
                continue
            decrease = d.compare('<=', args[position],
                                 d.compare('-', identifier(param), d.number(1)))
            for bound in d.lower_bounds(param, hypotheses):
                floor = d.compare('>=', identifier(param), d.bound_literal(bound))
                mark = len(log.steps)
                try:
                    premises = [
                        self._close(log, decrease, facts, branch, is_integer, 'measure decreases'),
                        self._close(log, floor, facts, branch, is_integer, 'measure bounded below'),
                    ]
                    premises.extend(self._close(log, part, facts, branch, is_integer, 'precondition at call')
                                    for part in precondition_parts)
                except ProofSearchExhausted:
                    del log.steps[mark:]
                    continue
                ih = substitute(d.goal_of(statement, params), dict(zip(params, args)))
                return log.add(ProofRule.INDUCTION_HYPOTHESIS, ih,
                               f"induction on {param}", branch, premises,
                               {'call': recursive_call, 'measure': position})
        return None

    # ── Termination ──────────────────────────────────────────────

    def _prove_termination(self, log: _Steps, statement: Termination) -> str:
        theorem = log.theorem
        program = theorem.context.program
        roots = [statement.function] if statement.function else list(program.functions())
        if statement.function and program.function(statement.function) is None:
            raise ProofSearchExhausted(theorem.id, f"program defines no function {statement.function!r}")
        reachable = d.reachable_functions(program, roots)
        problems = d.opaque_calls(program, reachable)
        if problems:
            raise ProofSearchExhausted(theorem.id, '; '.join(problems))
        facts = self._introduce_context(log)
        measures = []
        branch_counter = 0
        for component in d.recursive_components(program, reachable):
            found = None
            arity = min(len(d.params_of(program, name)) for name in component)
            for position in range(arity):
                mark = len(log.steps)
                start = branch_counter
                try:
                    found = self._measure(log, component, position, facts, start)
                except ProofSearchExhausted:
                    del log.steps[mark:]
                    continue
                branch_counter += len(found)
                break
            if found is None:
                raise ProofSearchExhausted(theorem.id, f"no decreasing measure for {sorted(component)}")
            measures.extend(found)
        target = statement.function or '*'
        log.add(ProofRule.QED, d.meta('terminates', target),
                'every recursive cycle strictly decreases a bounded measure', premises=measures)
        return 'ranking-function' if measures else 'structural'

    def _measure(self, log: _Steps, component, position: int, facts: List[int], offset: int) -> List[int]:
        theorem = log.theorem
        program = theorem.context.program
        functions = program.functions()
        edges = d.component_edges(program, component)
        strict_edges = []
        steps = []
        for number, (caller, callee, site) in enumerate(edges, offset + 1):
            branch = f"main.{number}"
            located = d.path_conditions(program, functions[caller], site)
            if located is None:
                raise ProofSearchExhausted(theorem.id, f"cannot follow path to call {caller} → {callee}")
            conditions, call_expr = located
            param = d.params_of(program, caller)[position]
            arg = d.call_arguments(call_expr)[position]
            is_integer = d.integer_predicate(theorem, caller)
            case = log.add(ProofRule.CASE_SPLIT, d.conjunction(conditions),
                           f"call {caller} → {callee}", branch, (), site)
            branch_facts = facts + [case]
            hypotheses: List[Constraint] = []
            for fact in branch_facts:
                hypotheses.extend(d.hypothesis_constraints(log.formula(fact), is_integer))

            premises = None
            decrease = d.compare('<=', arg, d.compare('-', identifier(param), d.number(1)))
            for bound in d.lower_bounds(param, hypotheses):
                mark = len(log.steps)
                try:
                    premises = [
                        self._close(log, decrease, branch_facts, branch, is_integer, 'measure decreases'),
                        self._close(log, d.compare('>=', identifier(param), d.bound_literal(bound)),
                                    branch_facts, branch, is_integer, 'measure bounded below'),
                    ]
                    strict = True
                    break
                except ProofSearchExhausted:
                    del log.steps[mark:]
            if premises is None:
                premises = [self._close(log, d.compare('<=', arg, identifier(param)), branch_facts, branch,
                                        is_integer, 'measure does not grow')]
                strict = False
            if strict:
                strict_edges.append((caller, callee))
            steps.append(log.add(
                ProofRule.DECREASING_MEASURE,
                d.meta('decreases', caller, callee, position, strict),
                f"argument {position} of {callee} {'decreases' if strict else 'does not grow'}",
                branch, [case] + premises,
                {'caller': caller, 'callee': callee, 'site': site, 'measure': position, 'strict': strict},
            ))
        non_strict = [(a, b) for a, b, _ in edges if (a, b) not in strict_edges]
        if not d.acyclic(set(component), non_strict):
            raise ProofSearchExhausted(theorem.id, f"a cycle in {sorted(component)} never decreases")
        return steps

    # ── Transformation equivalence ───────────────────────────────

    def _prove_equivalence(self, log: _Steps, statement: TransformationEquivalence) -> str:
        theorem = log.theorem
        kind = statement.spec.kind.name
        before, after = statement.before, statement.after
        try:
            expected = self.transformer.apply_rule(before, statement.spec)
        except TransformationNotApplicable as exc:
            raise ProofSearchExhausted(theorem.id, f"rule does not apply: {exc.reason}") from exc
        if expected != after:
            raise ProofSearchExhausted(theorem.id, 'program is not the result of the stated rewrite')
        premises = [log.add(ProofRule.LEMMA, d.meta('preserves', kind), RULE_LEMMAS[kind])]
        if statement.spec.kind.name == 'MEMOIZATION':
            for name in sorted(set(memoized_functions(after)) - set(memoized_functions(before))):
                premises.append(log.add(ProofRule.PURITY, d.meta('pure', name),
                                        f"{name} calls only pure functions"))
        premises.append(log.add(ProofRule.REWRITE_CHECK,
                                d.meta('rewrites_to', before.fingerprint(), after.fingerprint()),
                                f"re-applying {kind} reproduces the program"))
        log.add(ProofRule.QED, d.meta('equivalent', before.fingerprint(), after.fingerprint()),
                'rule lemma with side conditions', premises=premises)
        return 'rewrite-lemma'

    # ── Memory safety ────────────────────────────────────────────

    def _prove_memory_safety(self, log: _Steps, statement: MemorySafety) -> str:
        theorem = log.theorem
        premises = [log.add(ProofRule.AXIOM, d.meta('bounded_evaluation'), BUILTIN_AXIOMS['bounded_evaluation'])]
        for site, capacity in memo_tables(theorem.context.program):
            if type(capacity) is not int or capacity <= 0:
                raise ProofSearchExhausted(theorem.id, f"memo table at node {site} has no positive literal capacity")
            if capacity > statement.max_capacity:
                raise ProofSearchExhausted(theorem.id, f"memo table capacity {capacity} exceeds {statement.max_capacity}")
            premises.append(log.add(ProofRule.BOUNDED_ALLOCATION, d.meta('bounded', site, capacity),
                                    f"memo table holds at most {capacity} entries", certificate=site))
        log.add(ProofRule.QED, d.meta('memory_safe', statement.max_capacity),
                'every allocation is bounded', premises=premises)
        return 'bounded-allocation'

    # ── Complexity ───────────────────────────────────────────────

    def _prove_complexity(self, log: _Steps, statement: ComplexityBound) -> str:
        theorem = log.theorem
        derived = d.complexity_class(theorem.context.program, statement.function)
        if derived is None:
            raise ProofSearchExhausted(theorem.id, f"cannot bound the cost of {statement.function}")
        if derived > statement.bound:
            raise ProofSearchExhausted(theorem.id, f"{statement.function} is {derived.name}, not within {statement.bound.name}")
        step = log.add(ProofRule.COMPLEXITY, d.meta('complexity', statement.function, derived.name),
                       'recursion structure of the call graph')
        log.add(ProofRule.QED, d.meta('within', statement.function, statement.bound.name),
                f"{derived.name} ≤ {statement.bound.name}", premises=[step])
        return 'call-graph-analysis'
