# Copyright (C) 2024 Collimator, Inc.
# SPDX-License-Identifier: AGPL-3.0-only
#
# This program is free software: you can redistribute it and/or modify it under
# the terms of the GNU Affero General Public License as published by the Free
# Software Foundation, version 3. This program is distributed in the hope that it
# will be useful, but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU Affero General
# Public License for more details.  You should have received a copy of the GNU
# Affero General Public License along with this program. If not, see
# <https://www.gnu.org/licenses/>.

from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Mapping, NamedTuple, Optional

import sympy as sp

from .symbolic import free_variables, is_variable, substitute

__all__ = [
    "EqnKind",
    "EqnClass",
    "Equation",
    "classify_equation",
    "as_equation",
]


class EqnKind(Enum):
    """Enumeration for the 'kind' of an 'Equation', determined by the shape of
    its left hand side only.

     - 'explicit_algebraic': lhs is a bare variable, x ~ f(...).
     - 'explicit_differential': lhs is the first derivative of a bare variable,
        Derivative(x) ~ f(...).
     - 'implicit_differential': any other lhs containing a derivative,
        e.g. m*Derivative(v) ~ F.
     - 'implicit_algebraic': everything else, e.g. 0 ~ f(...).
    """

    explicit_algebraic = 0
    explicit_differential = 1
    implicit_algebraic = 2
    implicit_differential = 3

    def __str__(self):
        return f"{self.name}"

    @property
    def is_explicit(self):
        return self in (EqnKind.explicit_algebraic, EqnKind.explicit_differential)


class EqnClass(NamedTuple):
    kind: EqnKind
    # the defined variable for explicit kinds, None otherwise
    var: Optional[sp.Basic] = None


def _is_first_derivative_of_variable(expr) -> bool:
    if not isinstance(expr, sp.Derivative):
        return False
    if not is_variable(expr.expr):
        return False
    variable_count = expr.variable_count
    return len(variable_count) == 1 and variable_count[0][1] == 1


def classify_equation(lhs) -> EqnClass:
    """Classify an equation by its left hand side. Never fails: any shape that
    is not recognized ends up in one of the implicit kinds."""
    if isinstance(lhs, Equation):
        lhs = lhs.lhs
    lhs = sp.sympify(lhs)

    if is_variable(lhs):
        return EqnClass(EqnKind.explicit_algebraic, lhs)
    if _is_first_derivative_of_variable(lhs):
        return EqnClass(EqnKind.explicit_differential, lhs.expr)
    if lhs.has(sp.Derivative):
        return EqnClass(EqnKind.implicit_differential)
    return EqnClass(EqnKind.implicit_algebraic)


@dataclass(frozen=True)
class Equation:
    """
    Immutable equation `lhs ~ rhs`.

    Unlike `sympy.Eq` this never evaluates to a boolean, so `x ~ x` or `0 ~ 0`
    survive substitution as ordinary equations.
    """

    lhs: sp.Basic
    rhs: sp.Basic

    def __post_init__(self):
        object.__setattr__(self, "lhs", sp.sympify(self.lhs))
        object.__setattr__(self, "rhs", sp.sympify(self.rhs))

    def __repr__(self):
        return f"{self.lhs} ~ {self.rhs}"

    @cached_property
    def classification(self) -> EqnClass:
        return classify_equation(self.lhs)

    @property
    def kind(self) -> EqnKind:
        return self.classification.kind

    @property
    def var(self):
        return self.classification.var

    @property
    def expr(self):
        """
        Return the equation, re-arranged as an expression equal to zero.
        """
        return self.rhs - self.lhs

    def lhs_variables(self, iv=None) -> set:
        return free_variables(self.lhs, iv)

    def rhs_variables(self, iv=None) -> set:
        return free_variables(self.rhs, iv)

    def subs_rhs(self, mapping: Mapping) -> "Equation":
        return Equation(self.lhs, substitute(self.rhs, mapping))

    def subs(self, mapping: Mapping) -> "Equation":
        """Substitute on both sides, e.g. for renaming variables."""
        return Equation(substitute(self.lhs, mapping), substitute(self.rhs, mapping))

    def zero_form(self) -> "Equation":
        return Equation(sp.S.Zero, self.expr)


def as_equation(eq) -> Equation:
    """Accept an `Equation`, a `sympy.Eq` or a `(lhs, rhs)` pair."""
    if isinstance(eq, Equation):
        return eq
    if isinstance(eq, sp.Equality):
        return Equation(eq.lhs, eq.rhs)
    if isinstance(eq, tuple) and len(eq) == 2:
        return Equation(*eq)
    raise TypeError(f"Cannot interpret {eq!r} as an equation.")
