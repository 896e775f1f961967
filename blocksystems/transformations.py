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
Transformations turning an `IOSystem` into a reduced `IOBlock`.

The stages of `connect_system` (in order):
- recursively connect all subsystems which are themselves `IOSystem`s.
- collect the namespaced equations and removed equations of all subsystems.
- substitute connected inputs with the outputs driving them.
- apply the namespace promotion rules of the system.
- build the flattened `IOBlock`.
- optionally: remove superfluous states, substitute explicit algebraic states,
  resolve derivatives on the right hand sides, simplify.

Every stage takes a block and returns a new one; blocks are never modified.
"""

import dataclasses
import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import sympy as sp

from .blocks import IOBlock, IOSystem
from .equations import EqnKind, Equation
from .error import ImplicitOutputError, SystemCycleError, UnresolvedDerivativeWarning
from .graph_utils import (
    eq_dependency_graph,
    nodes_with_path_to,
    pairwise_cycle_free,
    symbol_dependency_graph,
)
from .logging import DEBUG, INFO, format_eqs, logdata, logger
from .symbolic import (
    expand_derivatives,
    free_variables,
    recursive_substitute,
    rhs_derivatives,
    simplify,
    substitute,
)

__all__ = [
    "ReductionOptions",
    "connect_system",
    "reduce_block",
    "remove_superfluous_states",
    "algebraic_substitution_rules",
    "substitute_algebraic_states",
    "substitute_derivatives",
    "simplify_eqs",
]


@dataclasses.dataclass(frozen=True)
class ReductionOptions:
    """Options for `connect_system`.

    Each reduction stage can be switched off independently. Skipping a stage is
    always safe, the stages run in the order the fields are listed here.
    """

    # log the intermediate equation sets at INFO level instead of DEBUG
    verbose: bool = False

    # drop equations which do not contribute to any output
    prune_unreachable: bool = False

    # inline explicit algebraic equations which are not outputs
    inline_algebraic: bool = True

    # replace derivatives on the right hand sides where possible
    resolve_derivatives: bool = True

    # run sympy.simplify on all equations at the end
    simplify: bool = True

    # emit soft errors (implicit outputs, unresolved derivatives) through
    # warnings.warn in addition to logging them
    warn_on_inconsistency: bool = True

    # bound for recursive substitution, None means len(rules) + 1
    max_substitution_depth: Optional[int] = None


def _log_eqs(title: str, eqs: Sequence[Equation], verbose: bool, block=None):
    level = INFO if verbose else DEBUG
    if logger.isEnabledFor(level):
        logger.log(level, "%s\n%s", title, format_eqs(eqs), **logdata(block=block))


def _report(err: Warning, warn: bool, verbose: bool):
    logger.log(INFO if verbose else DEBUG, "%s", err)
    if warn:
        warnings.warn(err, stacklevel=3)


def remove_superfluous_states(
    iob: IOBlock, *, verbose: bool = False, warn: bool = True
) -> IOBlock:
    """
    Remove equations which are not needed to compute the outputs.

    An equation is needed if, in the dependency graph of the equations, there
    is a path from it to an equation defining an output. All other equations
    are moved to `removed_eqs`, in their original order. Returns a new IOBlock.

    If an output has no equation with the output on its lhs, the block is
    returned unchanged.

    Edges only start at lhs variables, so an implicit equation `0 ~ f(x, u)`
    feeds nothing. It is pruned even when it is the only equation
    constraining a variable used by an output, e.g. `0 ~ x - u` next to
    `y ~ x`. Write such constraints in explicit form to keep them.
    """
    eqs = iob.eqs
    if not iob.outputs:
        logger.debug("IOBlock %s has no outputs, nothing to anchor the pruning.", iob.name)
        return iob

    # find 'main' eq for each output
    output_idx = []
    missing = []
    for outp in iob.outputs:
        idx = next(
            (i for i, eq in enumerate(eqs) if outp in eq.lhs_variables(iob.iv)), None
        )
        if idx is None:
            missing.append(outp)
        else:
            output_idx.append(idx)

    if missing:
        err = ImplicitOutputError(
            "Can't remove superfluous states if outputs are implicitly defined",
            block_name=iob.name,
            variables=missing,
        )
        _report(err, warn, verbose)
        return iob

    graph = eq_dependency_graph(eqs, iob.iv)
    necessary = nodes_with_path_to(graph, output_idx)
    removable = [i for i in range(len(eqs)) if i not in necessary]
    if not removable:
        return iob

    removed_eqs = [eqs[i] for i in removable]
    _log_eqs("Removed superfluous states with equations", removed_eqs, verbose, iob)

    return iob.replace(
        eqs=[eq for i, eq in enumerate(eqs) if i in necessary],
        removed_eqs=iob.removed_eqs + tuple(removed_eqs),
    )


def algebraic_substitution_rules(
    eqs: Sequence[Equation], iv=None, exclude: Sequence = ()
) -> Tuple[Dict, List[int]]:
    """
    Select explicit algebraic equations which can be inlined without circular
    substitution.

    Candidates are the equations `x ~ f(...)` with `x` not in `exclude` and not
    appearing in its own rhs. Among those, the dependency graph `a->b` (a is
    used in the rhs of b) is reduced with `pairwise_cycle_free`.

    Returns the rules `{x: f(...)}` and the sorted equation indices they came from.
    """
    exclude = set(exclude)
    candidates = []
    for i, eq in enumerate(eqs):
        if eq.kind != EqnKind.explicit_algebraic or eq.var in exclude:
            continue
        if eq.var in eq.rhs_variables(iv):
            logger.debug("%s is self referential and can't be substituted.", eq)
            continue
        candidates.append(i)

    if not candidates:
        return {}, []

    syms = [eqs[i].var for i in candidates]
    rhss = [eqs[i].rhs for i in candidates]
    graph = symbol_dependency_graph(syms, rhss, iv)
    removable = sorted(candidates[k] for k in pairwise_cycle_free(graph))

    rules = {eqs[i].var: eqs[i].rhs for i in removable}
    return rules, removable


def _substitute_eq(eq: Equation, rules, iv, max_depth) -> Equation:
    rhs = recursive_substitute(eq.rhs, rules, max_depth)
    if eq.kind.is_explicit:
        return Equation(eq.lhs, rhs)

    lhs = recursive_substitute(eq.lhs, rules, max_depth)
    new_eq = Equation(lhs, rhs)
    if lhs == eq.lhs:
        return new_eq

    revealed = (
        eq.kind == EqnKind.implicit_algebraic and len(free_variables(lhs, iv)) == 1
    )
    if revealed or new_eq.kind.is_explicit:
        # keep the equation implicit, 0 ~ rhs - lhs
        return new_eq.zero_form()
    return new_eq


def substitute_algebraic_states(
    iob: IOBlock, *, verbose: bool = False, max_depth: Optional[int] = None
) -> IOBlock:
    """
    Reduce the number of equations by substituting explicit algebraic equations.

    Returns a new IOBlock with the reduced equations. The substituted equations
    are appended to the previous `removed_eqs` of the block. Algebraic states
    which are outputs are never substituted.
    """
    rules, removable = algebraic_substitution_rules(iob.eqs, iob.iv, iob.outputs)
    if not rules:
        return iob

    # substitute all the equations, including the ones about to be removed
    substituted = [_substitute_eq(eq, rules, iob.iv, max_depth) for eq in iob.eqs]
    # keep the already removed eqs consistent with the new ones
    removed_eqs = [_substitute_eq(eq, rules, iob.iv, max_depth) for eq in iob.removed_eqs]

    if verbose:
        logger.info("Substituted algebraic states: %s", rules, **logdata(block=iob))

    removable_set = set(removable)
    removed_eqs += [substituted[i] for i in removable]
    reduced_eqs = [eq for i, eq in enumerate(substituted) if i not in removable_set]

    return iob.replace(eqs=reduced_eqs, removed_eqs=removed_eqs)


def substitute_derivatives(
    iob: IOBlock,
    *,
    verbose: bool = False,
    warn: bool = True,
    max_depth: Optional[int] = None,
) -> IOBlock:
    """
    Resolve the derivatives on the right hand sides of the equations.

    For every derivative term `Derivative(expr)` found on a rhs:
    - if an equation `Derivative(expr) ~ f` exists, use `f`.
    - otherwise inline all explicit algebraic states (outputs included) into
      `expr`, expand the derivative with chain and product rule, and replace
      the resulting derivatives of states by their defining equations.

    Terms which still contain derivatives afterwards are kept in this partially
    resolved form and reported as `UnresolvedDerivativeWarning`.
    """
    all_eqs = iob.eqs + iob.removed_eqs
    terms = []
    for eq in all_eqs:
        for term in rhs_derivatives(eq.rhs):
            if term not in terms:
                terms.append(term)

    if not terms:
        return iob

    known = {
        eq.lhs: eq.rhs for eq in iob.eqs if eq.kind == EqnKind.explicit_differential
    }

    rules = None
    replacements = {}
    unresolved = []
    for term in terms:
        if term in known:
            replacements[term] = known[term]
            continue

        if rules is None:
            # computed once, and only if there is a term which needs it
            rules, _ = algebraic_substitution_rules(iob.eqs, iob.iv)
            rules = {
                sym: recursive_substitute(rhs, rules, max_depth)
                for sym, rhs in rules.items()
            }

        expr = recursive_substitute(term, rules, max_depth)
        expr = expand_derivatives(expr)
        expr = substitute(expr, known)
        replacements[term] = expr
        if expr.has(sp.Derivative):
            unresolved.append(term)

    if unresolved:
        err = UnresolvedDerivativeWarning(
            "Could not resolve all derivatives on the right hand sides",
            block_name=iob.name,
            variables=unresolved,
        )
        _report(err, warn, verbose)

    if verbose:
        logger.info("Substituted derivatives: %s", replacements, **logdata(block=iob))

    return iob.replace(
        eqs=[eq.subs_rhs(replacements) for eq in iob.eqs],
        removed_eqs=[eq.subs_rhs(replacements) for eq in iob.removed_eqs],
    )


def _simplify_eq(eq: Equation) -> Equation:
    if eq.kind.is_explicit:
        return Equation(eq.lhs, simplify(eq.rhs))
    return Equation(simplify(eq.lhs), simplify(eq.rhs))


def simplify_eqs(iob: IOBlock, *, verbose: bool = False) -> IOBlock:
    """
    Simplify eqs and removed eqs and return new IOBlock.
    """
    if verbose:
        logger.info("Simplify equations of %s...", iob.name)
    return iob.replace(
        eqs=[_simplify_eq(eq) for eq in iob.eqs],
        removed_eqs=[_simplify_eq(eq) for eq in iob.removed_eqs],
    )


def reduce_block(iob: IOBlock, options: Optional[ReductionOptions] = None) -> IOBlock:
    """Run the reduction stages selected in `options` on a flat block."""
    if options is None:
        options = ReductionOptions()
    verbose = options.verbose
    warn = options.warn_on_inconsistency
    max_depth = options.max_substitution_depth

    if options.prune_unreachable:
        iob = remove_superfluous_states(iob, verbose=verbose, warn=warn)
        _log_eqs("after removing superfluous states", iob.eqs, verbose, iob)

    if options.inline_algebraic:
        iob = substitute_algebraic_states(iob, verbose=verbose, max_depth=max_depth)
        _log_eqs("after substituting algebraic states", iob.eqs, verbose, iob)

    if options.resolve_derivatives:
        iob = substitute_derivatives(
            iob, verbose=verbose, warn=warn, max_depth=max_depth
        )
        _log_eqs("after substituting derivatives", iob.eqs, verbose, iob)

    if options.simplify:
        iob = simplify_eqs(iob, verbose=verbose)

    return iob


def _connect(ios: IOSystem, options: ReductionOptions, ancestors: tuple) -> IOBlock:
    if any(ios is a for a in ancestors):
        raise SystemCycleError(
            "system contains itself as a subsystem", block_name=ios.name
        )
    ancestors = ancestors + (ios,)

    # recursive connect all subsystems, bottom up
    blocks = []
    for sub in ios.subsystems:
        if isinstance(sub, IOSystem):
            sub = _connect(sub, options, ancestors)
        blocks.append(sub)

    eqs = []
    removed_eqs = []
    for iob in blocks:
        rules = iob.namespace_rules()
        eqs.extend(eq.subs(rules) for eq in iob.eqs)
        removed_eqs.extend(eq.subs(rules) for eq in iob.removed_eqs)

    if options.verbose:
        logger.info(
            "Transform IOSystem %s to IOBlock. inputs=%s outputs=%s connections=%s",
            ios.name,
            list(ios.inputs),
            list(ios.outputs),
            list(ios.connections),
        )
    _log_eqs("namespaced equations", eqs, options.verbose, ios)

    # get rid of closed inputs by substituting the outputs driving them
    substitutions = dict(ios.connections)
    eqs = [eq.subs(substitutions) for eq in eqs]
    removed_eqs = [eq.subs(substitutions) for eq in removed_eqs]
    _log_eqs("substitute inputs with outputs", eqs, options.verbose, ios)

    # apply the namespace promotion
    promotion_rules = ios.namespace_map
    eqs = [eq.subs(promotion_rules) for eq in eqs]
    removed_eqs = [eq.subs(promotion_rules) for eq in removed_eqs]

    block = IOBlock(
        ios.name, eqs, ios.inputs, ios.outputs, removed_eqs, iv=ios.iv
    )
    return reduce_block(block, options)


def connect_system(
    ios: Union[IOSystem, IOBlock],
    options: Optional[ReductionOptions] = None,
    **kwargs,
) -> IOBlock:
    """
    Recursively transform an `IOSystem` into an `IOBlock`.

    - substitute inputs with connected outputs.
    - optionally eliminate equations of internal states which are not used to
      calculate the outputs of the system (`prune_unreachable`).
    - eliminate explicit algebraic equations (e.g. outputs of internal blocks)
      by substituting each occurrence with their rhs. Explicit algebraic states
      which are outputs of the system are kept (`inline_algebraic`).
    - expand derivatives on the right hand sides and substitute known
      derivatives (`resolve_derivatives`).
    - simplify all equations at the end (`simplify`).

    Arguments:
        ios: system to connect. An `IOBlock` is only reduced.
        options: `ReductionOptions`, defaults to `ReductionOptions()`.
        **kwargs: overrides for individual fields of `options`,
            e.g. `connect_system(ios, verbose=True)`.

    The same options are used for all nested systems.
    """
    if options is None:
        options = ReductionOptions()
    if kwargs:
        options = dataclasses.replace(options, **kwargs)

    if isinstance(ios, IOBlock):
        return reduce_block(ios, options)
    if not isinstance(ios, IOSystem):
        raise TypeError(f"Expected an IOSystem or IOBlock, got {type(ios)}.")
    return _connect(ios, options, ())
