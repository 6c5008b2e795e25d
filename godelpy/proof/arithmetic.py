"""
Linear Arithmetic over Reified Expressions
==========================================

Normalises comparisons between reified expressions into linear constraints
and searches for *positivity certificates*.

Theoretical Foundation:
    An arithmetic expression is read as a linear form

        c₀ + Σ cᵢ·aᵢ        (cᵢ ∈ ℚ)

    where each atom aᵢ is a maximal non-linear subterm: an identifier, a
    call such as ``f(n - 1)``, or a product of two non-constant terms.
    A comparison becomes one or two constraints ``L > 0`` / ``L ≥ 0``.

    A goal ``g ▷ 0`` follows from hypotheses ``hⱼ ▷ⱼ 0`` when there are
    λⱼ ≥ 0 and a slack c ≥ 0 with

        g = Σ λⱼ·hⱼ + c                                  (identity of forms)

    and, for a strict goal, either c > 0 or some λⱼ > 0 on a strict
    hypothesis. This is the linear Positivstellensatz restricted to
    non-negative combinations; it is sound over the reals.

    The coefficients are *found* numerically (least squares with numpy
    over small hypothesis subsets) and *checked* exactly with
    ``fractions.Fraction``. Only the exact check is trusted.

Integer strengthening:
    When every atom of a strict constraint is known to be an integer and
    every coefficient is integral, ``L > 0`` is replaced by ``L - 1 ≥ 0``.
"""

from dataclasses import dataclass
from fractions import Fraction
from itertools import combinations
from typing import Any, Callable, Dict, FrozenSet, Hashable, List, Optional, Sequence, Tuple

import numpy as np

from godelpy.reflection.nodes import NodeKind, ReifiedProgram

CONSTANT: Hashable = ()
MAX_DENOMINATOR = 1000
MAX_COMBINATION = 4

AtomPredicate = Callable[[Hashable], bool]


def _no_integers(atom: Hashable) -> bool:
    return False


class LinearForm:
    """Immutable map atom → coefficient, with the constant under ``CONSTANT``."""

    __slots__ = ('_terms',)

    def __init__(self, terms: Optional[Dict[Hashable, Fraction]] = None):
        self._terms: Dict[Hashable, Fraction] = {k: v for k, v in (terms or {}).items() if v != 0}

    @classmethod
    def constant(cls, value: Fraction) -> 'LinearForm':
        return cls({CONSTANT: Fraction(value)})

    @classmethod
    def atom(cls, key: Hashable) -> 'LinearForm':
        return cls({key: Fraction(1)})

    @property
    def terms(self) -> Dict[Hashable, Fraction]:
        return dict(self._terms)

    @property
    def constant_term(self) -> Fraction:
        return self._terms.get(CONSTANT, Fraction(0))

    @property
    def atoms(self) -> FrozenSet[Hashable]:
        return frozenset(k for k in self._terms if k != CONSTANT)

    def is_constant(self) -> bool:
        return not self.atoms

    def __add__(self, other: 'LinearForm') -> 'LinearForm':
        merged = dict(self._terms)
        for key, value in other._terms.items():
            merged[key] = merged.get(key, Fraction(0)) + value
        return LinearForm(merged)

    def scale(self, factor: Fraction) -> 'LinearForm':
        return LinearForm({k: v * factor for k, v in self._terms.items()})

    def __neg__(self) -> 'LinearForm':
        return self.scale(Fraction(-1))

    def __sub__(self, other: 'LinearForm') -> 'LinearForm':
        return self + (-other)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LinearForm) and self._terms == other._terms

    def __hash__(self) -> int:
        return hash(frozenset(self._terms.items()))

    def __repr__(self) -> str:
        parts = [str(v) if k == CONSTANT else f"{v}·{_atom_label(k)}" for k, v in self._terms.items()]
        return ' + '.join(parts) or '0'


def _atom_label(key: Hashable) -> str:
    if isinstance(key, tuple) and len(key) == 2 and key[0] == 'id':
        return key[1]
    return 'term'


@dataclass(frozen=True)
class Constraint:
    """``form > 0`` when strict, else ``form ≥ 0``."""
    form: LinearForm
    strict: bool


@dataclass(frozen=True)
class Certificate:
    """Non-negative multipliers (one per hypothesis) and slack for one goal constraint."""
    multipliers: Tuple[Fraction, ...]
    slack: Fraction


# ── Normalisation ────────────────────────────────────────────────────────

def _exact_number(value: Any) -> Optional[Fraction]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, float) and np.isfinite(value):
        return Fraction(value)
    return None


def linearize(program: ReifiedProgram, index: Optional[int] = None) -> Optional[LinearForm]:
    """Linear form of an arithmetic expression, or None for non-numeric terms."""
    i = program.root if index is None else index
    node = program.node(i)
    kind = node.kind
    if kind is NodeKind.LITERAL:
        number = _exact_number(node.attr('value'))
        return None if number is None else LinearForm.constant(number)
    if kind is NodeKind.IDENTIFIER:
        return LinearForm.atom(('id', node.attr('name')))
    if kind is NodeKind.CALL or kind is NodeKind.INDEX:
        return LinearForm.atom(('term', program.canonical(i)))
    if kind is NodeKind.UNARY_OP and node.attr('op') in ('-', '+'):
        inner = linearize(program, node.children[0])
        if inner is None:
            return None
        return -inner if node.attr('op') == '-' else inner
    if kind is NodeKind.BINARY_OP and node.attr('op') in ('+', '-', '*'):
        left = linearize(program, node.children[0])
        right = linearize(program, node.children[1])
        if left is None or right is None:
            return None
        op = node.attr('op')
        if op == '+':
            return left + right
        if op == '-':
            return left - right
        if left.is_constant():
            return right.scale(left.constant_term)
        if right.is_constant():
            return left.scale(right.constant_term)
        return LinearForm.atom(('term', program.canonical(i)))
    return None


def _integral(form: LinearForm, is_integer: AtomPredicate) -> bool:
    return all(is_integer(k) for k in form.atoms) and all(
        v.denominator == 1 for v in form.terms.values()
    )


def constraints_of(program: ReifiedProgram, index: Optional[int] = None,
                   is_integer: AtomPredicate = _no_integers) -> Optional[List[Constraint]]:
    """
    Constraints equivalent to a boolean expression, or None when it is not
    a conjunction of linear comparisons (possibly negated).
    """
    i = program.root if index is None else index
    node = program.node(i)
    if node.kind is NodeKind.LITERAL and node.attr('value') is True:
        return []
    if node.kind is NodeKind.BINARY_OP and node.attr('op') == 'and':
        left = constraints_of(program, node.children[0], is_integer)
        right = constraints_of(program, node.children[1], is_integer)
        if left is None or right is None:
            return None
        return left + right
    negated = False
    if node.kind is NodeKind.UNARY_OP and node.attr('op') == 'not':
        negated = True
        i = node.children[0]
        node = program.node(i)
    if node.kind is not NodeKind.BINARY_OP:
        return None
    op = node.attr('op')
    if negated:
        op = {'<': '>=', '<=': '>', '>': '<=', '>=': '<', '!=': '=='}.get(op)
        if op is None:
            return None
    left = linearize(program, node.children[0])
    right = linearize(program, node.children[1])
    if left is None or right is None:
        return None
    if op == '>':
        raw = [Constraint(left - right, True)]
    elif op == '>=':
        raw = [Constraint(left - right, False)]
    elif op == '<':
        raw = [Constraint(right - left, True)]
    elif op == '<=':
        raw = [Constraint(right - left, False)]
    elif op == '==':
        raw = [Constraint(left - right, False), Constraint(right - left, False)]
    else:
        return None
    return [strengthen(c, is_integer) for c in raw]


def strengthen(constraint: Constraint, is_integer: AtomPredicate) -> Constraint:
    if constraint.strict and _integral(constraint.form, is_integer):
        return Constraint(constraint.form - LinearForm.constant(Fraction(1)), False)
    return constraint


# ── Certificates ─────────────────────────────────────────────────────────

def check_certificate(goal: Constraint, hypotheses: Sequence[Constraint], certificate: Certificate) -> bool:
    """Exact check of ``goal = Σ λ·h + slack`` with the strictness side condition."""
    if len(certificate.multipliers) != len(hypotheses):
        return False
    if certificate.slack < 0 or any(m < 0 for m in certificate.multipliers):
        return False
    combination = LinearForm.constant(certificate.slack)
    for multiplier, hypothesis in zip(certificate.multipliers, hypotheses):
        combination = combination + hypothesis.form.scale(multiplier)
    if combination != goal.form:
        return False
    if not goal.strict:
        return True
    return certificate.slack > 0 or any(
        m > 0 and h.strict for m, h in zip(certificate.multipliers, hypotheses)
    )


def _as_fraction(value: float) -> Fraction:
    fraction = Fraction(float(value)).limit_denominator(MAX_DENOMINATOR)
    return fraction if fraction > 0 else Fraction(0)


def find_certificate(goal: Constraint, hypotheses: Sequence[Constraint]) -> Optional[Certificate]:
    """Search small hypothesis subsets with least squares; return an exactly checked certificate."""
    atoms = sorted({k for c in [goal, *hypotheses] for k in c.form.atoms}, key=repr)
    rows = [CONSTANT] + atoms
    target = np.array([float(goal.form.terms.get(k, 0)) for k in rows])

    for size in range(0, min(len(hypotheses), MAX_COMBINATION) + 1):
        for subset in combinations(range(len(hypotheses)), size):
            columns = [[float(hypotheses[j].form.terms.get(k, 0)) for k in rows] for j in subset]
            columns.append([1.0] + [0.0] * len(atoms))
            matrix = np.array(columns, dtype=float).T
            solution, *_ = np.linalg.lstsq(matrix, target, rcond=None)
            multipliers = [Fraction(0)] * len(hypotheses)
            for position, j in enumerate(subset):
                multipliers[j] = _as_fraction(solution[position])
            certificate = Certificate(tuple(multipliers), _as_fraction(solution[-1]))
            if check_certificate(goal, hypotheses, certificate):
                return certificate
    return None
