"""
Proof Verifier
==============

Independent checker for ``Proof`` objects. Each step is re-derived from
the theorem, the program and the step's premises; nothing the prover
computed is trusted except the certificates, which are checked exactly.

A step that fails is reported as a ``VerificationIssue`` and halts its
branch: later steps of that branch (and of its sub-branches) are not
checked and cannot serve as premises. ``verified`` holds when no errors
were found. Warnings do not affect it; one is emitted whenever a closing
step leans on an assumption introduced with ``HYPOTHESIS`` strength.
"""

import logging
from fractions import Fraction
from typing import Callable, Dict, List, Optional, Sequence, Set

from godelpy.errors import TransformationNotApplicable
from godelpy.proof import derivations as d
from godelpy.proof.arithmetic import Certificate, Constraint, check_certificate, constraints_of
from godelpy.proof.prover import BUILTIN_AXIOMS, RULE_LEMMAS
from godelpy.proof.theorem import (
    AssumptionStrength, ComplexityBound, FunctionalCorrectness, MemorySafety, Proof, ProofRule,
    ProofStep, Termination, TransformationEquivalence, VerificationIssue, VerificationResult,
)
from godelpy.reflection.inspector import call_graph
from godelpy.reflection.nodes import ReifiedProgram, identifier, substitute
from godelpy.transform.purity import is_pure
from godelpy.transform.transformer import Transformer, enclosing_functions, memo_tables, memoized_functions
from godelpy.utils.helpers import Timer

logger = logging.getLogger(__name__)

FACT_RULES = frozenset({
    ProofRule.INTRODUCE_PRECONDITION, ProofRule.INTRODUCE_ASSUMPTION, ProofRule.LEMMA,
    ProofRule.AXIOM, ProofRule.CASE_SPLIT, ProofRule.INDUCTION_HYPOTHESIS,
})


class _Reject(Exception):
    """A step does not follow from its premises."""


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise _Reject(message)


class Verifier:
    """
    Usage:
        >>> result = Verifier().verify(proof)
        >>> result.verified, result.errors
        (True, ())
    """

    def __init__(self, transformer: Optional[Transformer] = None):
        self.transformer = transformer or Transformer()

    def verify(self, proof: Proof) -> VerificationResult:
        with Timer() as timer:
            run = _Run(proof, self.transformer)
            run.check()
        result = VerificationResult(
            verified=not run.errors,
            warnings=tuple(run.warnings),
            errors=tuple(run.errors),
            verification_time=timer.elapsed_s,
        )
        if result.verified:
            logger.debug(f"Verified proof of {proof.theorem.id} ({len(proof.steps)} steps)")
        else:
            logger.info(f"Proof of {proof.theorem.id} rejected: {'; '.join(map(str, result.errors))}")
        return result


class _Run:
    """State of one verification pass."""

    def __init__(self, proof: Proof, transformer: Transformer):
        self.proof = proof
        self.theorem = proof.theorem
        self.statement = proof.theorem.statement
        self.program = proof.theorem.context.program
        self.transformer = transformer
        self.verified: Set[int] = set()
        self.halted: List[str] = []
        self.errors: List[VerificationIssue] = []
        self.warnings: List[str] = []
        self._cases = None
        self._checks: Dict[ProofRule, Callable[[ProofStep], None]] = {
            ProofRule.GOAL: self._goal,
            ProofRule.INTRODUCE_PRECONDITION: self._precondition,
            ProofRule.INTRODUCE_ASSUMPTION: self._assumption,
            ProofRule.LEMMA: self._lemma,
            ProofRule.AXIOM: self._axiom,
            ProofRule.CASE_SPLIT: self._case_split,
            ProofRule.UNFOLD: self._unfold,
            ProofRule.INDUCTION_HYPOTHESIS: self._induction,
            ProofRule.LINEAR_ARITHMETIC: self._linear,
            ProofRule.DECREASING_MEASURE: self._decreasing,
            ProofRule.PURITY: self._purity,
            ProofRule.REWRITE_CHECK: self._rewrite_check,
            ProofRule.BOUNDED_ALLOCATION: self._bounded_allocation,
            ProofRule.COMPLEXITY: self._complexity,
            ProofRule.QED: self._qed,
        }

    def check(self) -> None:
        steps = self.proof.steps
        qed = [s for s in steps if s.rule is ProofRule.QED]
        for position, step in enumerate(steps):
            if step.index != position:
                self.errors.append(VerificationIssue(position, f"step is numbered {step.index}"))
                return
            if any(_below(b, step.branch) for b in self.halted):
                continue
            try:
                self._premises_precede(step)
                self._checks[step.rule](step)
            except _Reject as exc:
                self.errors.append(VerificationIssue(step.index, str(exc)))
                self.halted.append(step.branch)
                continue
            self.verified.add(step.index)
        if not qed:
            self.errors.append(VerificationIssue(len(steps), 'proof has no QED step'))
        elif qed[-1].index != len(steps) - 1 or len(qed) > 1:
            self.errors.append(VerificationIssue(qed[0].index, 'QED must be the single final step'))

    # ── Helpers ──────────────────────────────────────────────────

    def step(self, index: int) -> ProofStep:
        return self.proof.steps[index]

    def _premises_precede(self, step: ProofStep) -> None:
        for p in step.premises:
            _require(0 <= p < step.index, f"premise {p} does not precede the step")
            _require(p in self.verified, f"premise {p} is not verified")
            if step.rule is not ProofRule.QED:
                _require(self.step(p).visible_from(step.branch),
                         f"premise {p} belongs to branch {self.step(p).branch}, not visible from {step.branch}")

    def _correctness(self) -> FunctionalCorrectness:
        _require(isinstance(self.statement, FunctionalCorrectness), 'rule applies to functional correctness only')
        return self.statement

    def _params(self):
        return d.params_of(self.program, self._correctness().function)

    def cases(self):
        if self._cases is None:
            statement = self._correctness()
            cases = d.function_cases(self.program, statement.function)
            _require(cases is not None, f"{statement.function} is not a tree of conditional returns")
            self._cases = cases
        return self._cases

    def _split(self) -> bool:
        cases = self.cases()
        return len(cases) > 1 or bool(cases[0][0])

    def _integer_predicate(self, branch: str):
        if isinstance(self.statement, FunctionalCorrectness):
            return d.integer_predicate(self.theorem, self.statement.function)
        if isinstance(self.statement, Termination):
            caller = self._branch_caller(branch)
            if caller is not None:
                return d.integer_predicate(self.theorem, caller)
        return d.integer_predicate(self.theorem)

    def _branch_caller(self, branch: str) -> Optional[str]:
        """Function owning the call site a termination branch was split on."""
        for step in self.proof.steps:
            if step.rule is ProofRule.CASE_SPLIT and step.branch == branch and isinstance(step.certificate, int):
                owner = enclosing_functions(self.program).get(step.certificate)
                if owner is not None:
                    return self.program.node(owner).attr('name')
        return None

    def _linear_premise(self, step: ProofStep, formula: ReifiedProgram) -> bool:
        return any(
            self.step(p).rule is ProofRule.LINEAR_ARITHMETIC and self.step(p).formula == formula
            for p in step.premises
        )

    def _lower_bounded(self, step: ProofStep, param: str) -> bool:
        """Some premise proves ``param ≥ L`` for a constant L."""
        for p in step.premises:
            premise = self.step(p)
            if premise.rule is not ProofRule.LINEAR_ARITHMETIC:
                continue
            constraints = constraints_of(premise.formula)
            if constraints and d.lower_bounds(param, constraints):
                return True
        return False

    # ── Introduction rules ───────────────────────────────────────

    def _goal(self, step: ProofStep) -> None:
        statement = self._correctness()
        _require(step.branch == 'main' and not step.premises, 'goal must open the main branch')
        _require(step.formula == d.goal_of(statement, self._params()), 'goal does not match the postcondition')

    def _precondition(self, step: ProofStep) -> None:
        _require(step.formula == self._correctness().precondition, 'formula is not the precondition')

    def _assumption(self, step: ProofStep) -> None:
        _require(any(a.name == step.justification and a.formula == step.formula
                     for a in self.theorem.assumptions),
                 f"no assumption {step.justification!r} with this formula")

    def _lemma(self, step: ProofStep) -> None:
        if any(lemma.formula == step.formula for lemma in self.theorem.context.lemmas):
            return
        _require(isinstance(self.statement, TransformationEquivalence), 'lemma is not in the theorem context')
        kind = self.statement.spec.kind.name
        _require(step.formula == d.meta('preserves', kind) and kind in RULE_LEMMAS,
                 'formula is not a rule lemma for this transformation')

    def _axiom(self, step: ProofStep) -> None:
        _require(any(step.formula == d.meta(name) for name in BUILTIN_AXIOMS), 'unknown axiom')

    # ── Case analysis and unfolding ──────────────────────────────

    def _case_split(self, step: ProofStep) -> None:
        if isinstance(self.statement, Termination):
            site = step.certificate
            owner = enclosing_functions(self.program).get(site) if isinstance(site, int) else None
            _require(owner is not None, 'case split does not name a call site')
            located = d.path_conditions(self.program, owner, site)
            _require(located is not None, 'path to the call site cannot be followed')
            _require(step.formula == d.conjunction(located[0]), 'formula is not the path condition of the call')
            return
        cases = self.cases()
        k = step.certificate
        _require(isinstance(k, int) and 1 <= k <= len(cases), f"case {k!r} does not exist")
        _require(step.branch == f"main.{k}", f"case {k} must open branch main.{k}")
        _require(step.formula == d.conjunction(cases[k - 1][0]), f"formula is not the condition of case {k}")

    def _unfold(self, step: ProofStep) -> None:
        statement = self._correctness()
        cases = self.cases()
        params = self._params()
        goals = [p for p in step.premises if self.step(p).rule is ProofRule.GOAL]
        _require(len(goals) == 1, 'unfold needs the goal as premise')
        if self._split():
            k = step.certificate
            _require(isinstance(k, int) and 1 <= k <= len(cases), f"case {k!r} does not exist")
            _require(step.branch == f"main.{k}", f"unfolding case {k} outside its branch")
            _require(any(self.step(p).rule is ProofRule.CASE_SPLIT and self.step(p).certificate == k
                         for p in step.premises), f"unfold needs case {k} as premise")
        else:
            k = 1
        expected = d.replace_call(self.step(goals[0]).formula,
                                  d.primary_call(statement.function, params), cases[k - 1][1])
        _require(step.formula == expected, 'formula is not the unfolded goal')

    def _unfolded(self, branch: str) -> Optional[ProofStep]:
        for index in sorted(self.verified):
            step = self.step(index)
            if step.rule is ProofRule.UNFOLD and step.branch == branch:
                return step
        return None

    # ── Induction ────────────────────────────────────────────────

    def _induction(self, step: ProofStep) -> None:
        statement = self._correctness()
        params = self._params()
        certificate = step.certificate
        _require(isinstance(certificate, dict) and {'call', 'measure'} <= set(certificate),
                 'induction needs a call and a measure')
        unfolded = self._unfolded(step.branch)
        _require(unfolded is not None, 'no unfolded goal in this branch')
        recursive_call = certificate['call']
        _require(recursive_call in d.calls_to(unfolded.formula, statement.function),
                 'call does not occur in the unfolded goal')
        args = d.call_arguments(recursive_call)
        position = certificate['measure']
        _require(len(args) == len(params) and isinstance(position, int) and 0 <= position < len(params),
                 'measure does not name a parameter')
        param = params[position]
        bindings = dict(zip(params, args))

        decrease = d.compare('<=', args[position], d.compare('-', identifier(param), d.number(1)))
        _require(self._linear_premise(step, decrease), f"no premise shows the measure {param} decreases")
        _require(self._lower_bounded(step, param), f"no premise bounds {param} below")
        for part in d.conjuncts(substitute(statement.precondition, bindings)):
            _require(self._linear_premise(step, part), 'precondition is not shown at the recursive call')
        _require(step.formula == substitute(d.goal_of(statement, params), bindings),
                 'formula is not the goal at the recursive arguments')

    # ── Arithmetic ───────────────────────────────────────────────

    def _linear(self, step: ProofStep) -> None:
        is_integer = self._integer_predicate(step.branch)
        goals = d.linear_constraints(step.formula, is_integer)
        _require(goals is not None, 'formula is not linear arithmetic')
        hypotheses: List[Constraint] = []
        owners: List[int] = []
        for p in step.premises:
            premise = self.step(p)
            _require(premise.rule in FACT_RULES, f"premise {p} ({premise.rule.name}) is not a fact")
            found = d.hypothesis_constraints(premise.formula, is_integer)
            hypotheses.extend(found)
            owners.extend([p] * len(found))
        certificates = step.certificate
        _require(isinstance(certificates, tuple) and len(certificates) == len(goals),
                 'one certificate per goal constraint is required')
        used: Set[int] = set()
        for goal, certificate in zip(goals, certificates):
            _require(isinstance(certificate, Certificate) and check_certificate(goal, hypotheses, certificate),
                     f"certificate does not establish {goal.form} {'>' if goal.strict else '≥'} 0")
            used.update(owners[j] for j, m in enumerate(certificate.multipliers) if m != Fraction(0))
        for p in sorted(used):
            premise = self.step(p)
            if premise.rule is ProofRule.INTRODUCE_ASSUMPTION and self._is_hypothesis(premise):
                self.warnings.append(f"step {step.index} relies on unproven hypothesis {premise.justification!r}")

    def _is_hypothesis(self, step: ProofStep) -> bool:
        return any(a.name == step.justification and a.strength is AssumptionStrength.HYPOTHESIS
                   for a in self.theorem.assumptions)

    # ── Termination ──────────────────────────────────────────────

    def _decreasing(self, step: ProofStep) -> None:
        _require(isinstance(self.statement, Termination), 'rule applies to termination only')
        c = step.certificate
        _require(isinstance(c, dict) and {'caller', 'callee', 'site', 'measure', 'strict'} <= set(c),
                 'measure certificate is incomplete')
        caller, callee, site, position, strict = c['caller'], c['callee'], c['site'], c['measure'], c['strict']
        _require((callee, site) in call_graph(self.program).get(caller, []),
                 f"no call {caller} → {callee} at node {site}")
        _require(any(self.step(p).rule is ProofRule.CASE_SPLIT and self.step(p).certificate == site
                     for p in step.premises), 'measure needs the path condition of its call')
        located = d.path_conditions(self.program, self.program.function(caller), site)
        _require(located is not None, 'path to the call site cannot be followed')
        params = d.params_of(self.program, caller)
        args = d.call_arguments(located[1])
        _require(isinstance(position, int) and 0 <= position < min(len(params), len(args)),
                 'measure does not name a parameter')
        param, arg = params[position], args[position]
        if strict:
            decrease = d.compare('<=', arg, d.compare('-', identifier(param), d.number(1)))
            _require(self._linear_premise(step, decrease), f"no premise shows {param} decreases")
            _require(self._lower_bounded(step, param), f"no premise bounds {param} below")
        else:
            _require(self._linear_premise(step, d.compare('<=', arg, identifier(param))),
                     f"no premise shows {param} does not grow")
        _require(step.formula == d.meta('decreases', caller, callee, position, strict),
                 'formula does not match the certificate')

    # ── Transformations, memory and complexity ───────────────────

    def _equivalence(self) -> TransformationEquivalence:
        _require(isinstance(self.statement, TransformationEquivalence), 'rule applies to transformations only')
        return self.statement

    def _newly_memoized(self) -> Set[str]:
        statement = self._equivalence()
        return set(memoized_functions(statement.after)) - set(memoized_functions(statement.before))

    def _purity(self, step: ProofStep) -> None:
        statement = self._equivalence()
        names = [n for n in self._newly_memoized() if step.formula == d.meta('pure', n)]
        _require(bool(names), 'formula does not name a newly memoized function')
        _require(is_pure(statement.before, names[0]), f"{names[0]} is not pure")

    def _rewrite_check(self, step: ProofStep) -> None:
        statement = self._equivalence()
        try:
            expected = self.transformer.apply_rule(statement.before, statement.spec)
        except TransformationNotApplicable as exc:
            raise _Reject(f"rule does not apply: {exc.reason}") from exc
        _require(expected == statement.after, 'the rewrite does not reproduce the program')
        _require(step.formula == d.meta('rewrites_to', statement.before.fingerprint(), statement.after.fingerprint()),
                 'formula does not name the two programs')

    def _bounded_allocation(self, step: ProofStep) -> None:
        _require(isinstance(self.statement, MemorySafety), 'rule applies to memory safety only')
        tables = dict(memo_tables(self.program))
        site = step.certificate
        _require(site in tables, f"no memo table at node {site!r}")
        capacity = tables[site]
        _require(type(capacity) is int and 0 < capacity <= self.statement.max_capacity,
                 f"capacity {capacity!r} is not a positive literal within {self.statement.max_capacity}")
        _require(step.formula == d.meta('bounded', site, capacity), 'formula does not match the table')

    def _complexity(self, step: ProofStep) -> None:
        _require(isinstance(self.statement, ComplexityBound), 'rule applies to complexity bounds only')
        derived = d.complexity_class(self.program, self.statement.function)
        _require(derived is not None, f"cost of {self.statement.function} cannot be bounded")
        _require(step.formula == d.meta('complexity', self.statement.function, derived.name),
                 f"derived class is {derived.name}")

    # ── QED ──────────────────────────────────────────────────────

    def _qed(self, step: ProofStep) -> None:
        _require(step.branch == 'main', 'QED must close the main branch')
        premises = [self.step(p) for p in step.premises]
        statement = self.statement
        if isinstance(statement, FunctionalCorrectness):
            goal = next((s for s in self.proof.steps if s.rule is ProofRule.GOAL), None)
            _require(goal is not None and step.formula == goal.formula, 'QED does not restate the goal')
            branches = [f"main.{k}" for k in range(1, len(self.cases()) + 1)] if self._split() else ['main']
            for branch in branches:
                unfolded = self._unfolded(branch)
                _require(unfolded is not None, f"branch {branch} is never unfolded")
                _require(any(p.rule is ProofRule.LINEAR_ARITHMETIC and p.branch == branch
                             and p.formula == unfolded.formula for p in premises),
                         f"branch {branch} is not closed")
        elif isinstance(statement, Termination):
            self._qed_termination(step, premises)
        elif isinstance(statement, TransformationEquivalence):
            rules = {(p.rule, p.formula) for p in premises}
            kind = statement.spec.kind.name
            _require((ProofRule.LEMMA, d.meta('preserves', kind)) in rules, 'rule lemma is not cited')
            _require(any(p.rule is ProofRule.REWRITE_CHECK for p in premises), 'rewrite is not checked')
            for name in self._newly_memoized():
                _require((ProofRule.PURITY, d.meta('pure', name)) in rules, f"purity of {name} is not shown")
            _require(step.formula == d.meta('equivalent', statement.before.fingerprint(),
                                            statement.after.fingerprint()), 'QED does not state equivalence')
        elif isinstance(statement, MemorySafety):
            _require(any(p.rule is ProofRule.AXIOM and p.formula == d.meta('bounded_evaluation')
                         for p in premises), 'bounded evaluation is not cited')
            covered = {p.certificate for p in premises if p.rule is ProofRule.BOUNDED_ALLOCATION}
            missing = [site for site, _ in memo_tables(self.program) if site not in covered]
            _require(not missing, f"memo tables at nodes {missing} are not bounded")
            _require(step.formula == d.meta('memory_safe', statement.max_capacity), 'QED does not state the bound')
        elif isinstance(statement, ComplexityBound):
            derived = d.complexity_class(self.program, statement.function)
            _require(any(p.rule is ProofRule.COMPLEXITY for p in premises), 'complexity is not derived')
            _require(derived is not None and derived <= statement.bound,
                     f"{statement.function} is not within {statement.bound.name}")
            _require(step.formula == d.meta('within', statement.function, statement.bound.name),
                     'QED does not state the bound')
        else:
            raise _Reject(f"unknown statement {type(statement).__name__}")

    def _qed_termination(self, step: ProofStep, premises: Sequence[ProofStep]) -> None:
        statement = self.statement
        roots = [statement.function] if statement.function else list(self.program.functions())
        _require(all(self.program.function(r) is not None for r in roots), 'function is not defined')
        reachable = d.reachable_functions(self.program, roots)
        problems = d.opaque_calls(self.program, reachable)
        _require(not problems, '; '.join(problems))
        measures = {p.certificate['site']: p.certificate for p in premises
                    if p.rule is ProofRule.DECREASING_MEASURE}
        for component in d.recursive_components(self.program, reachable):
            edges = d.component_edges(self.program, component)
            positions = set()
            non_strict = []
            for caller, callee, site in edges:
                _require(site in measures, f"call {caller} → {callee} at node {site} has no measure")
                positions.add(measures[site]['measure'])
                if not measures[site]['strict']:
                    non_strict.append((caller, callee))
            _require(len(positions) == 1, f"{sorted(component)} mixes measures")
            _require(d.acyclic(set(component), non_strict), f"a cycle in {sorted(component)} never decreases")
        _require(step.formula == d.meta('terminates', statement.function or '*'), 'QED does not state termination')


def _below(halted: str, branch: str) -> bool:
    return branch == halted or branch.startswith(halted + '.')
