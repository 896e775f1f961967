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

from typing import Iterable, List, Sequence

import networkx as nx
import sympy as sp

from .equations import Equation
from .symbolic import free_variables

__all__ = [
    "eq_dependency_graph",
    "symbol_dependency_graph",
    "nodes_with_path_to",
    "pairwise_cycle_free",
]


def eq_dependency_graph(eqs: Sequence[Equation], iv=None) -> nx.DiGraph:
    """
    Directed graph over equation indices. There is an edge u->v if a variable
    on the lhs of equation u is used on the rhs of equation v, i.e. v depends
    on u. For `Derivative(x) ~ f` the lhs variable is `x`.

    Nodes are `0..len(eqs)-1` and edges are inserted in equation order, so the
    graph does not depend on set iteration order.
    """
    G = nx.DiGraph()
    G.add_nodes_from(range(len(eqs)))

    # dict{variable: [indices of equations with the variable on the lhs]}
    definers = {}
    for u, eq in enumerate(eqs):
        for sym in eq.lhs_variables(iv):
            definers.setdefault(sym, []).append(u)

    for v, eq in enumerate(eqs):
        for sym in sorted(eq.rhs_variables(iv), key=sp.default_sort_key):
            for u in definers.get(sym, ()):
                G.add_edge(u, v)

    return G


def symbol_dependency_graph(syms: Sequence, rhss: Sequence, iv=None) -> nx.DiGraph:
    """
    Directed graph over candidate indices: a->b if `syms[a]` appears in `rhss[b]`.
    """
    G = nx.DiGraph()
    G.add_nodes_from(range(len(syms)))
    for b, rhs in enumerate(rhss):
        rhs_vars = free_variables(rhs, iv)
        for a, sym in enumerate(syms):
            if sym in rhs_vars:
                G.add_edge(a, b)
    return G


def nodes_with_path_to(G: nx.DiGraph, targets: Iterable) -> set:
    """All nodes with a directed path to any of `targets`, targets included."""
    result = set()
    for target in targets:
        result.add(target)
        result.update(nx.ancestors(G, target))
    return result


def pairwise_cycle_free(G: nx.DiGraph) -> List:
    """
    Returns the vertices of `G` which pairwise do not share any cycle.

    Greedy heuristic, not an exact maximum: start with all vertices and
    repeatedly drop the one that shares a cycle with the most other remaining
    vertices. Only cycles whose vertices are all still present are taken into
    account. Ties go to the vertex that comes first in node order. Self loops
    are ignored, since they never involve a pair of vertices.

    Dropped vertices are then re-admitted in node order when they close no
    cycle with the kept ones, so the result is maximal: every vertex left out
    lies on a cycle with the returned vertices only. The result is in node
    order.
    """
    nodes = list(G.nodes)
    cycles = [frozenset(c) for c in nx.simple_cycles(G) if len(c) > 1]
    idx = _drop_conflicting(nodes, cycles)

    kept = set(idx)
    for node in nodes:
        if node in kept:
            continue
        trial = kept | {node}
        if not any(c <= trial for c in cycles):
            kept = trial

    return [node for node in nodes if node in kept]


def _drop_conflicting(idx: List, cycles: List[frozenset]) -> List:
    idx = list(idx)
    while True:
        present = set(idx)
        live_cycles = [c for c in cycles if c <= present]
        if not live_cycles:
            return idx

        conflicts = [0] * len(idx)
        for i, id1 in enumerate(idx):
            for j in range(i + 1, len(idx)):
                id2 = idx[j]
                if any(id1 in c and id2 in c for c in live_cycles):
                    conflicts[i] += 1
                    conflicts[j] += 1

        # every live cycle has at least two vertices, so some counter is > 0
        worst = conflicts.index(max(conflicts))
        del idx[worst]
