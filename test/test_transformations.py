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

import logging
import warnings

import networkx as nx
import numpy as np
import pytest
import sympy as sp

from blocksystems import (
    Equation,
    EqnKind,
    ImplicitOutputError,
    IOBlock,
    IOSystem,
    ReductionOptions,
    SystemCycleError,
    UnresolvedDerivativeWarning,
    connect_system,
    remove_superfluous_states,
    simplify_eqs,
    substitute_algebraic_states,
    substitute_derivatives,
)
from blocksystems.graph_utils import eq_dependency_graph, symbol_dependency_graph
from blocksystems.symbolic import make_params, make_vars, recursive_substitute
from blocksystems.transformations import algebraic_substitution_rules


def _is_zero(expr):
    return sp.simplify(sp.sympify(expr).doit()) == 0


def _evaluate(eqs, sym, values):
    """Numeric value of `sym` from the explicit algebraic equations in `eqs`."""
    rules = {eq.lhs: eq.rhs for eq in eqs if eq.kind == EqnKind.explicit_algebraic}
    expr = recursive_substitute(sym, rules).subs(values)
    return float(expr)


def _lhs_set(eqs):
    return {eq.lhs for eq in eqs}


@pytest.fixture
def scenario_a(t):
    x, y, out = make_vars("x y out", t)
    a = make_params("a")
    blk = IOBlock(
        "blk",
        [(y, x + a), (sp.Derivative(y, t), sp.Derivative(x, t))],
        inputs=[x],
        outputs=[y],
    )
    src = IOBlock("src", [(out, 1)], inputs=[], outputs=[out])
    return IOSystem([(blk["x"], src["out"])], [blk, src], outputs=[y], name="sys")


@pytest.fixture
def scenario_b(t):
    a, b, c = make_vars("a b c", t)
    return IOBlock("blk", [(a, b + 1), (b, a + 1), (c, a + b)], inputs=[], outputs=[c])


def test_connect_constant_source(t, scenario_a):
    y, out = make_vars("y out", t)
    a = make_params("a")

    res = connect_system(scenario_a)

    assert res.name == "sys"
    assert res.inputs == ()
    assert res.outputs == (y,)
    assert len(res.eqs) == 2
    assert res.eqs[0].lhs == y
    assert _is_zero(res.eqs[0].rhs - (1 + a))
    assert res.eqs[1].lhs == sp.Derivative(y, t)
    assert _is_zero(res.eqs[1].rhs)

    assert len(res.removed_eqs) == 1
    assert res.removed_eqs[0].lhs == out
    assert res.removed_eqs[0].rhs == 1


def test_connect_without_inlining(t, scenario_a):
    y, out = make_vars("y out", t)

    res = connect_system(scenario_a, inline_algebraic=False, resolve_derivatives=False)
    assert _lhs_set(res.eqs) == {y, sp.Derivative(y, t), out}
    assert res.removed_eqs == ()
    # connections are applied on both sides: D(x) became D(out)
    assert res.eqs[1].rhs == sp.Derivative(out, t)


def test_mutual_cycle_is_broken_once(t, scenario_b):
    a, b, c = make_vars("a b c", t)

    rules, removable = algebraic_substitution_rules(
        scenario_b.eqs, scenario_b.iv, scenario_b.outputs
    )
    # a and b can't both be inlined, the tie goes against the first one
    assert not {0, 1} <= set(removable)
    assert removable == [1]
    assert rules == {b: a + 1}

    res = substitute_algebraic_states(scenario_b)
    assert [eq.lhs for eq in res.eqs] == [a, c]
    assert res.eqs[0].rhs == a + 2
    assert res.eqs[1].rhs == 2 * a + 1
    assert res.removed_eqs == (Equation(b, a + 1),)


def test_algebraic_substitution_fixed_point(t, scenario_b):
    res = substitute_algebraic_states(scenario_b)
    # a ~ a + 2 is self referential, c is an output
    assert substitute_algebraic_states(res) is res


def test_algebraic_substitution_fixed_point_after_greedy_drop(t):
    v0, v1, v2, v3 = make_vars("v0 v1 v2 v3", t)
    blk = IOBlock(
        "blk",
        [(v0, v1 + 1), (v1, v2 + 1), (v2, v0 + v1 + 1), (v3, v0 + v1 + v2)],
        inputs=[],
        outputs=[v3],
    )
    res = substitute_algebraic_states(blk)

    # v0 and v2 share no cycle, both are inlined in one pass
    assert [eq.lhs for eq in res.removed_eqs] == [v0, v2]
    assert [eq.lhs for eq in res.eqs] == [v1, v3]
    assert substitute_algebraic_states(res) is res


def _random_block(rng, t):
    n = int(rng.integers(3, 7))
    syms = make_vars(" ".join(f"v{i}" for i in range(n)), t)
    eqs = []
    for i, sym in enumerate(syms):
        deps = [s for j, s in enumerate(syms) if j != i and rng.random() < 0.4]
        eqs.append((sym, sum(deps) + 1))
    return IOBlock("rand", eqs, inputs=[], outputs=[syms[-1]])


def test_algebraic_substitution_fixed_point_random(t):
    rng = np.random.default_rng(5)
    for _ in range(60):
        blk = _random_block(rng, t)
        res = substitute_algebraic_states(blk)
        assert substitute_algebraic_states(res) is res


def test_algebraic_substitution_chain(t):
    u, v, w, y = make_vars("u v w y", t)
    k = make_params("k")
    blk = IOBlock(
        "chain",
        [(v, k * u), (w, v + 1), (y, w**2)],
        inputs=[u],
        outputs=[y],
        removed_eqs=[(0, w - v - 1)],
    )
    res = substitute_algebraic_states(blk)

    assert res.eqs == (Equation(y, (k * u + 1) ** 2),)
    # history first, then the newly removed eqs in index order
    assert res.removed_eqs[0] == Equation(0, (k * u + 1) - k * u - 1)
    assert [eq.lhs for eq in res.removed_eqs[1:]] == [v, w]
    assert res.removed_eqs[2].rhs == k * u + 1


def test_algebraic_substitution_never_inlines_outputs(t):
    u, y, z = make_vars("u y z", t)
    blk = IOBlock("blk", [(y, 2 * u), (z, y + 1)], inputs=[u], outputs=[y, z])
    assert substitute_algebraic_states(blk) is blk


def test_acyclic_selection(t):
    a, b, c, d, e = make_vars("a b c d e", t)
    eqs = [
        Equation(a, b + c),
        Equation(b, a + 1),
        Equation(c, a * b),
        Equation(d, c + e),
        Equation(e, 2 * d),
    ]
    rules, removable = algebraic_substitution_rules(eqs, t)

    syms = [eq.lhs for eq in eqs]
    G = symbol_dependency_graph(syms, [eq.rhs for eq in eqs], t)
    chosen = G.subgraph(removable)
    assert [c for c in nx.simple_cycles(chosen) if len(c) > 1] == []
    assert set(rules) == {syms[i] for i in removable}
    assert removable == sorted(removable)


def test_implicit_lhs_revealed(t):
    u, v, y = make_vars("u v y", t)
    blk = IOBlock("blk", [(v, u + 1), (sp.sin(v), y)], inputs=[u], outputs=[y])

    res = substitute_algebraic_states(blk)
    assert res.eqs == (Equation(0, y - sp.sin(u + 1)),)
    assert res.removed_eqs == (Equation(v, u + 1),)


def test_prune_unreachable(t):
    u, y, z = make_vars("u y z", t)
    p = make_params("p")
    blk = IOBlock("blk", [(y, u + 1), (z, p * 2)], inputs=[u], outputs=[y])

    res = connect_system(blk, prune_unreachable=True)
    assert [eq.lhs for eq in res.eqs] == [y]
    assert res.removed_eqs == (Equation(z, 2 * p),)

    # pruning is off by default
    res = connect_system(blk, inline_algebraic=False)
    assert z in _lhs_set(res.eqs)


def test_reachability_soundness(t):
    u, x1, x2, y, w, s = make_vars("u x1 x2 y w s", t)
    k = make_params("k")
    eqs = [
        (x1, u),
        (sp.Derivative(s, t), -k * s),
        (x2, 2 * x1),
        (y, x2),
        (w, y + 1),
    ]
    blk = IOBlock("blk", eqs, inputs=[u], outputs=[y])
    res = remove_superfluous_states(blk)

    assert [eq.lhs for eq in res.eqs] == [x1, x2, y]
    assert [eq.lhs for eq in res.removed_eqs] == [sp.Derivative(s, t), w]

    G = eq_dependency_graph(blk.eqs, t)
    output_idx = 3
    for eq in res.removed_eqs:
        idx = blk.eqs.index(eq)
        assert not nx.has_path(G, idx, output_idx)


def test_prune_drops_implicit_constraints(t):
    u, x, y = make_vars("u x y", t)
    blk = IOBlock("blk", [(0, x - u), (y, x)], inputs=[u], outputs=[y])

    res = remove_superfluous_states(blk)
    assert res.eqs == (Equation(y, x),)
    assert res.removed_eqs == (Equation(0, x - u),)

    # the explicit form of the same constraint is kept
    blk = IOBlock("blk", [(x, u), (y, x)], inputs=[u], outputs=[y])
    assert remove_superfluous_states(blk) is blk


def test_prune_without_outputs_is_noop(t):
    x = make_vars("x", t)
    blk = IOBlock("blk", [(sp.Derivative(x, t), -x)], inputs=[], outputs=[])
    assert remove_superfluous_states(blk) is blk


def test_prune_implicit_output(t):
    u, y = make_vars("u y", t)
    blk = IOBlock("blk", [(0, y - 2 * u)], inputs=[u], outputs=[y])

    with pytest.warns(ImplicitOutputError) as record:
        res = remove_superfluous_states(blk)
    assert res is blk
    assert y in record[0].message.variables

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert remove_superfluous_states(blk, warn=False) is blk
        res = connect_system(blk, prune_unreachable=True, warn_on_inconsistency=False)
    assert res.eqs == blk.eqs


def test_resolve_derivative_of_algebraic_state(t):
    x, y, z = make_vars("x y z", t)
    k = make_params("k")
    blk = IOBlock(
        "blk",
        [(sp.Derivative(x, t), -k * x), (y, x**2), (z, sp.Derivative(y, t))],
        inputs=[],
        outputs=[z],
    )
    res = substitute_derivatives(blk)

    assert res.eqs[:2] == blk.eqs[:2]
    assert _is_zero(res.eqs[2].rhs - (-2 * k * x**2))

    # the full pipeline inlines y first
    res = connect_system(blk)
    assert [eq.lhs for eq in res.eqs] == [sp.Derivative(x, t), z]
    assert _is_zero(res.eqs[1].rhs + 2 * k * x**2)
    assert res.removed_eqs[0].lhs == y


def test_resolve_known_derivative(t):
    x, y = make_vars("x y", t)
    blk = IOBlock(
        "blk",
        [(sp.Derivative(x, t), -x), (y, 3 * sp.Derivative(x, t))],
        inputs=[],
        outputs=[y],
        removed_eqs=[(0, y - sp.Derivative(x, t))],
    )
    res = substitute_derivatives(blk)
    assert res.eqs[1] == Equation(y, -3 * x)
    assert res.removed_eqs == (Equation(0, y + x),)


def test_resolve_derivatives_noop(t):
    x, y = make_vars("x y", t)
    blk = IOBlock("blk", [(sp.Derivative(x, t), -x), (y, x)], inputs=[], outputs=[y])
    assert substitute_derivatives(blk) is blk


def test_unresolved_derivative(t):
    w, y = make_vars("w y", t)
    blk = IOBlock("blk", [(y, sp.Derivative(w, t))], inputs=[w], outputs=[y])

    with pytest.warns(UnresolvedDerivativeWarning):
        res = substitute_derivatives(blk)
    assert res.eqs == blk.eqs

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        substitute_derivatives(blk, warn=False)


def test_conservation(t, scenario_b):
    u, x, v, y, z = make_vars("u x v y z", t)
    k = make_params("k")
    blk = IOBlock(
        "blk",
        [
            (sp.Derivative(x, t), -k * x + v),
            (v, 2 * u),
            (y, x + v),
            (z, k),
        ],
        inputs=[u],
        outputs=[y],
    )
    for block in (blk, scenario_b):
        res = connect_system(block, prune_unreachable=True)
        assert len(block.eqs) == (
            len(res.eqs) + len(res.removed_eqs) - len(block.removed_eqs)
        )
        final = [eq.lhs for eq in res.eqs + res.removed_eqs]
        for eq in block.eqs:
            assert final.count(eq.lhs) == 1


def test_semantic_preservation(t):
    u1, y1, u2, v, y2 = make_vars("u1 y1 u2 v y2", t)
    k = make_params("k")
    g = IOBlock("g", [(y1, k * u1)], inputs=[u1], outputs=[y1])
    sq = IOBlock("sq", [(v, u2 + 1), (y2, v * v)], inputs=[u2], outputs=[y2])
    ios = IOSystem([(sq["u2"], g["y1"])], [g, sq], name="sys")

    res = connect_system(ios)
    assert res.inputs == (u1,)
    assert res.outputs == (y1, y2)
    assert v not in _lhs_set(res.eqs)

    values = {k: 2.0, u1: 0.5}
    expected = (2.0 * 0.5 + 1) ** 2
    assert _evaluate(res.eqs, y2, values) == pytest.approx(expected)
    assert _evaluate(res.eqs + res.removed_eqs, y2, values) == pytest.approx(expected)


def test_nested_systems(t):
    u, y, out = make_vars("u y out", t)
    k = make_params("k")
    gain = IOBlock("gain", [(y, k * u)], inputs=[u], outputs=[y])
    src = IOBlock("src", [(out, 3)], inputs=[], outputs=[out])
    inner = IOSystem([], [gain], name="inner")
    outer = IOSystem(
        [(inner["u"], src["out"])], [inner, src], outputs=[y], name="outer"
    )

    res = connect_system(outer)
    assert res.eqs == (Equation(y, 3 * k),)
    assert res.removed_eqs == (Equation(out, 3),)


def test_system_cycle(t):
    u, y = make_vars("u y", t)
    k = make_params("k")
    gain = IOBlock("gain", [(y, k * u)], inputs=[u], outputs=[y])
    inner = IOSystem([], [gain], name="inner")
    outer = IOSystem([], [inner], name="outer")
    # IOSystem does not guard its attributes against reassignment
    inner.subsystems = (outer,)

    with pytest.raises(SystemCycleError):
        connect_system(outer)


def test_options(t, scenario_b):
    opts = ReductionOptions(inline_algebraic=False)
    res = connect_system(scenario_b, opts)
    assert res.eqs == scenario_b.eqs

    # keyword overrides win over the options object
    res = connect_system(scenario_b, opts, inline_algebraic=True)
    assert len(res.eqs) == 2

    with pytest.raises(TypeError):
        connect_system(scenario_b, not_an_option=True)
    with pytest.raises(TypeError):
        connect_system("not a system")


def test_simplify_eqs(t):
    x, y = make_vars("x y", t)
    blk = IOBlock(
        "blk",
        [(y, sp.sin(x) ** 2 + sp.cos(x) ** 2), (2 * x + x, y)],
        inputs=[],
        outputs=[y],
    )
    res = simplify_eqs(blk)
    assert res.eqs[0] == Equation(y, 1)
    assert res.eqs[1].lhs == 3 * x


def test_verbose_logging(t, scenario_a, caplog):
    caplog.set_level(logging.INFO, logger="blocksystems")
    connect_system(scenario_a, verbose=True)
    assert "after substituting algebraic states" in caplog.text
    assert "Transform IOSystem sys" in caplog.text
