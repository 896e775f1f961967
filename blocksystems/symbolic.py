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

"""
Thin layer over sympy providing the symbolic primitives used by the block
transformations.

Conventions:
    - the independent variable is a plain `sp.Symbol`, usually `t`.
    - time dependent variables (states, inputs, outputs) are applied undefined
      functions of the independent variable, e.g. `x(t)`.
    - parameters are plain `sp.Symbol` objects.
"""

from typing import Mapping, Optional

import sympy as sp
from sympy.core.function import AppliedUndef

__all__ = [
    "NAMESPACE_SEPARATOR",
    "independent_variable",
    "make_vars",
    "make_params",
    "is_variable",
    "symbol_name",
    "free_variables",
    "substitute",
    "recursive_substitute",
    "expand_derivatives",
    "rhs_derivatives",
    "simplify",
    "rename",
    "namespaced",
]

NAMESPACE_SEPARATOR = "_"


def independent_variable(name: str = "t") -> sp.Symbol:
    return sp.Symbol(name, real=True)


def make_vars(names: str, iv: sp.Symbol):
    """Create time dependent variables, e.g. `x, y = make_vars("x y", t)`.

    Mirrors `sympy.symbols`: a single name returns a single variable.
    """
    fcns = sp.symbols(names, cls=sp.Function, seq=True)
    out = tuple(f(iv) for f in fcns)
    return out[0] if len(out) == 1 else out


def make_params(names: str):
    syms = sp.symbols(names, seq=True)
    return syms[0] if len(syms) == 1 else syms


def is_variable(expr) -> bool:
    """True for a bare variable or parameter, i.e. `x(t)` or `k`."""
    return isinstance(expr, (AppliedUndef, sp.Symbol))


def symbol_name(sym) -> str:
    if isinstance(sym, AppliedUndef):
        return sym.func.__name__
    if isinstance(sym, sp.Symbol):
        return sym.name
    raise TypeError(f"{sym} is not a variable or parameter.")


def free_variables(expr, iv: Optional[sp.Symbol] = None) -> set:
    """
    Return the variables and parameters occurring in `expr`.

    Variables under a derivative count as well: the free variables of
    `Derivative(x(t), t) + k` are `{x(t), k}`. The independent variable is
    never part of the result.
    """
    expr = sp.sympify(expr)
    result = set(expr.atoms(AppliedUndef))
    result.update(s for s in expr.free_symbols if s != iv)
    if iv is None:
        # without an explicit independent variable, drop function arguments
        fcn_args = set()
        for fcn in result:
            if isinstance(fcn, AppliedUndef):
                fcn_args.update(fcn.args)
        result.difference_update(a for a in fcn_args if isinstance(a, sp.Symbol))
    return result


def _sympify_mapping(mapping: Mapping) -> dict:
    return {sp.sympify(k): sp.sympify(v) for k, v in mapping.items()}


def substitute(expr, mapping: Mapping):
    """Single, non-recursive, structural substitution pass."""
    if not mapping:
        return sp.sympify(expr)
    return sp.sympify(expr).xreplace(_sympify_mapping(mapping))


def recursive_substitute(expr, mapping: Mapping, max_iterations: Optional[int] = None):
    """
    Apply `mapping` repeatedly until none of its keys occurs in the result.

    The number of passes is bounded by `max_iterations`, which defaults to
    `len(mapping) + 1`: for an acyclic rule set every chain of substitutions
    is at most `len(mapping)` long.
    """
    expr = sp.sympify(expr)
    if not mapping:
        return expr
    rules = _sympify_mapping(mapping)
    keys = tuple(rules.keys())
    if max_iterations is None:
        max_iterations = len(rules) + 1

    for _ in range(max(max_iterations, 1)):
        if not expr.has(*keys):
            break
        expr = expr.xreplace(rules)
    return expr


def expand_derivatives(expr):
    """Apply chain and product rule to every derivative subterm."""
    expr = sp.sympify(expr)
    return expr.replace(
        lambda e: isinstance(e, sp.Derivative),
        lambda e: e.doit(),
    )


def rhs_derivatives(expr) -> list:
    """Derivative subterms of `expr` in a deterministic order."""
    return sorted(sp.sympify(expr).atoms(sp.Derivative), key=sp.default_sort_key)


def simplify(expr):
    return sp.simplify(expr)


def rename(sym, new_name: str):
    """Return `sym` under a new name, keeping its arguments or assumptions."""
    if isinstance(sym, AppliedUndef):
        return sp.Function(new_name)(*sym.args)
    if isinstance(sym, sp.Symbol):
        return sp.Symbol(new_name, **sym.assumptions0)
    raise TypeError(f"Cannot rename {sym}, it is not a variable or parameter.")


def namespaced(sym, namespace: str):
    return rename(sym, f"{namespace}{NAMESPACE_SEPARATOR}{symbol_name(sym)}")
