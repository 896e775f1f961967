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
Value objects describing equation blocks and their composition.

An `IOBlock` holds a flat, ordered list of equations together with declared
inputs and outputs. An `IOSystem` composes blocks (or other systems) and
describes how inputs are driven by outputs of siblings. Systems are turned
into blocks by `blocksystems.transformations.connect_system`.

Neither object is ever modified after construction; transformations build
new objects.
"""

import dataclasses
from collections import Counter
from dataclasses import dataclass
from functools import cached_property
from typing import Iterable, Mapping, Optional, Sequence, Union

import sympy as sp
from sympy.core.function import AppliedUndef

from .equations import Equation, as_equation
from .error import InvalidConnectionError, SymbolCollisionError
from .logging import format_eqs
from .symbolic import (
    free_variables,
    independent_variable,
    is_variable,
    namespaced,
    rename,
    symbol_name,
)

__all__ = ["IOBlock", "IOSystem"]


def _ordered_unique(items: Iterable) -> tuple:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return tuple(out)


def _infer_iv(exprs: Iterable) -> sp.Symbol:
    candidates = set()
    for expr in exprs:
        for fcn in sp.sympify(expr).atoms(AppliedUndef):
            candidates.update(a for a in fcn.args if isinstance(a, sp.Symbol))
    if len(candidates) > 1:
        raise ValueError(
            f"Cannot infer the independent variable, found {sorted(map(str, candidates))}. "
            "Please pass 'iv' explicitly."
        )
    if candidates:
        return candidates.pop()
    return independent_variable()


def _check_variables(syms, what: str, block_name: str) -> tuple:
    syms = tuple(sp.sympify(s) for s in syms)
    for sym in syms:
        if not is_variable(sym):
            raise TypeError(
                f"{what} of block {block_name} must be variables or parameters, got {sym}."
            )
    dupes = [s for s, n in Counter(syms).items() if n > 1]
    if dupes:
        raise SymbolCollisionError(
            f"{what} declared more than once", block_name=block_name, variables=dupes
        )
    return syms


@dataclass(frozen=True)
class IOBlock:
    """
    A flat block of equations with declared inputs and outputs.

    Attributes:
        name (str):
            Block name, used as namespace when the block is part of a system.
        eqs (tuple[Equation]):
            The equations. Their order is significant and preserved by every
            transformation.
        inputs (tuple):
            Variables driven from outside the block.
        outputs (tuple):
            Variables exposed by the block. Transformations never eliminate
            the equations defining outputs.
        removed_eqs (tuple[Equation]):
            Equations eliminated by earlier transformations, kept for
            traceability. They do not take part in further computations.
        iv (sympy.Symbol):
            The independent variable. Inferred from the equations if omitted.
    """

    name: str
    eqs: Sequence[Equation]
    inputs: Sequence
    outputs: Sequence
    removed_eqs: Sequence[Equation] = ()
    iv: Optional[sp.Symbol] = None

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ValueError(f"IOBlock name must be a non-empty string, got {self.name!r}.")

        eqs = tuple(as_equation(eq) for eq in self.eqs)
        removed_eqs = tuple(as_equation(eq) for eq in self.removed_eqs)
        inputs = _check_variables(self.inputs, "inputs", self.name)
        outputs = _check_variables(self.outputs, "outputs", self.name)

        iv = self.iv
        if iv is None:
            sides = [e for eq in eqs + removed_eqs for e in (eq.lhs, eq.rhs)]
            iv = _infer_iv([*sides, *inputs, *outputs])

        object.__setattr__(self, "eqs", eqs)
        object.__setattr__(self, "removed_eqs", removed_eqs)
        object.__setattr__(self, "inputs", inputs)
        object.__setattr__(self, "outputs", outputs)
        object.__setattr__(self, "iv", iv)

        self._validate()

    def _validate(self):
        both = set(self.inputs) & set(self.outputs)
        if both:
            raise SymbolCollisionError(
                "symbols are declared as input and output",
                block_name=self.name,
                variables=both,
            )

        # 0 ~ f(...) may appear any number of times, explicit lhs only once.
        explicit_lhs = [eq.lhs for eq in self.eqs if eq.kind.is_explicit]
        dupes = [lhs for lhs, n in Counter(explicit_lhs).items() if n > 1]
        if dupes:
            raise SymbolCollisionError(
                "several equations share the same left hand side",
                block_name=self.name,
                variables=dupes,
            )

        defined_inputs = [eq.var for eq in self.eqs if eq.var in set(self.inputs)]
        if defined_inputs:
            raise SymbolCollisionError(
                "inputs must not be defined by an equation",
                block_name=self.name,
                variables=defined_inputs,
            )

        all_vars = set(self.variables) | set(self.removed_variables)
        missing = [s for s in self.inputs + self.outputs if s not in all_vars]
        if missing:
            raise SymbolCollisionError(
                "declared inputs/outputs do not appear in any equation",
                block_name=self.name,
                variables=missing,
            )

    def __repr__(self):
        return (
            f"IOBlock '{self.name}' with {len(self.eqs)} eqs "
            f"(inputs={list(self.inputs)}, outputs={list(self.outputs)}, "
            f"removed_eqs={len(self.removed_eqs)})"
        )

    def pp(self) -> str:
        lines = [repr(self), "equations:", format_eqs(self.eqs)]
        if self.removed_eqs:
            lines += ["removed equations:", format_eqs(self.removed_eqs)]
        return "\n".join(lines)

    def replace(self, **changes) -> "IOBlock":
        """Return a new block with some fields replaced, validated again."""
        return dataclasses.replace(self, **changes)

    @staticmethod
    def _collect(eqs, iv) -> tuple:
        out = []
        for eq in eqs:
            vars_ = free_variables(eq.lhs, iv) | free_variables(eq.rhs, iv)
            out.extend(sorted(vars_, key=sp.default_sort_key))
        return _ordered_unique(out)

    @cached_property
    def variables(self) -> tuple:
        """All variables and parameters of the equations, in order of appearance."""
        return self._collect(self.eqs, self.iv)

    @cached_property
    def removed_variables(self) -> tuple:
        return self._collect(self.removed_eqs, self.iv)

    @property
    def states(self) -> tuple:
        """Variables explicitly defined by an equation."""
        return _ordered_unique(eq.var for eq in self.eqs if eq.kind.is_explicit)

    @property
    def system_variables(self) -> tuple:
        return tuple(v for v in self.variables if isinstance(v, AppliedUndef))

    @property
    def parameters(self) -> tuple:
        return tuple(v for v in self.variables if isinstance(v, sp.Symbol))

    def rhs_differentials(self) -> set:
        out = set()
        for eq in self.eqs:
            out.update(eq.rhs.atoms(sp.Derivative))
        return out

    def namespace_rules(self) -> dict:
        """Map every local symbol to its namespaced form, e.g. x(t) -> blk_x(t)."""
        syms = _ordered_unique(
            self.variables + self.removed_variables + self.inputs + self.outputs
        )
        return {s: namespaced(s, self.name) for s in syms}

    def __getitem__(self, name: str):
        """The namespaced variable for a local name, `blk["x"]` -> blk_x(t)."""
        for sym, ns_sym in self.namespace_rules().items():
            if symbol_name(sym) == name:
                return ns_sym
        raise KeyError(f"IOBlock {self.name} has no variable named '{name}'.")


class IOSystem:
    """
    Composition of `IOBlock` and `IOSystem` objects.

    Parameters:
        connections:
            Iterable of `(input, output)` pairs, or a mapping input -> output,
            in namespaced form (`blk["u"]`). The input is driven by the output.
        subsystems:
            The blocks and systems to compose. Names must be unique.
        namespace_map:
            Mapping from namespaced symbols to the names they get in the
            flattened block.
        inputs, outputs:
            Inputs and outputs of the system in promoted form. Default to all
            unconnected subsystem inputs and all subsystem outputs.
        name:
            Name of the system and of the block it is flattened into.
        autopromote:
            Promote every namespaced symbol whose local name is unique among
            the subsystems to that local name, unless `namespace_map` says
            otherwise.
    """

    def __init__(
        self,
        connections: Union[Iterable, Mapping],
        subsystems: Sequence[Union[IOBlock, "IOSystem"]],
        namespace_map: Optional[Mapping] = None,
        inputs: Optional[Sequence] = None,
        outputs: Optional[Sequence] = None,
        name: str = "iosystem",
        autopromote: bool = True,
    ):
        if not isinstance(name, str) or not name:
            raise ValueError(f"IOSystem name must be a non-empty string, got {name!r}.")
        self.name = name

        subsystems = tuple(subsystems)
        if not subsystems:
            raise ValueError(f"IOSystem {name} needs at least one subsystem.")
        for sub in subsystems:
            if not isinstance(sub, (IOBlock, IOSystem)):
                raise TypeError(
                    f"subsystems of {name} must be IOBlock or IOSystem, got {type(sub)}."
                )
        dupes = [n for n, c in Counter(s.name for s in subsystems).items() if c > 1]
        if dupes:
            raise SymbolCollisionError(
                f"subsystem names must be unique, got duplicates {dupes}",
                block_name=name,
            )
        ivs = {sub.iv for sub in subsystems}
        if len(ivs) > 1:
            raise ValueError(
                f"subsystems of {name} use different independent variables {ivs}."
            )
        self.subsystems = subsystems
        self.iv = ivs.pop()

        if isinstance(connections, Mapping):
            connections = connections.items()
        self.connections = tuple(
            (sp.sympify(i), sp.sympify(o)) for i, o in connections
        )
        self._validate_connections()

        self.namespace_map = self._promotion_rules(namespace_map or {}, autopromote)
        self.inputs = self._declared(inputs, self.open_inputs, "inputs")
        self.outputs = self._declared(outputs, self.promoted_outputs, "outputs")

    def __repr__(self):
        return (
            f"IOSystem '{self.name}' with subsystems {[s.name for s in self.subsystems]} "
            f"(inputs={list(self.inputs)}, outputs={list(self.outputs)})"
        )

    @staticmethod
    def _namespaced_list(sub, syms) -> tuple:
        return tuple(namespaced(s, sub.name) for s in syms)

    @cached_property
    def namespaced_inputs(self) -> tuple:
        out = []
        for sub in self.subsystems:
            out.extend(self._namespaced_list(sub, sub.inputs))
        return tuple(out)

    @cached_property
    def namespaced_outputs(self) -> tuple:
        out = []
        for sub in self.subsystems:
            out.extend(self._namespaced_list(sub, sub.outputs))
        return tuple(out)

    @cached_property
    def connected_inputs(self) -> frozenset:
        return frozenset(i for i, _ in self.connections)

    @cached_property
    def namespaced_variables(self) -> tuple:
        """Namespaced symbols which survive connecting: connected inputs vanish."""
        out = []
        for sub in self.subsystems:
            syms = self._subsystem_variables(sub)
            out.extend(self._namespaced_list(sub, syms))
        return _ordered_unique(s for s in out if s not in self.connected_inputs)

    @staticmethod
    def _subsystem_variables(sub) -> tuple:
        if isinstance(sub, IOBlock):
            return _ordered_unique(
                sub.variables + sub.removed_variables + sub.inputs + sub.outputs
            )
        return sub.variables

    @property
    def variables(self) -> tuple:
        """The symbols of the flattened block, in promoted form."""
        return tuple(self.namespace_map.get(s, s) for s in self.namespaced_variables)

    @property
    def open_inputs(self) -> tuple:
        return tuple(
            self.namespace_map.get(i, i)
            for i in self.namespaced_inputs
            if i not in self.connected_inputs
        )

    @property
    def promoted_outputs(self) -> tuple:
        return tuple(self.namespace_map.get(o, o) for o in self.namespaced_outputs)

    def _validate_connections(self):
        inputs = set(self.namespaced_inputs)
        outputs = set(self.namespaced_outputs)
        for inp, outp in self.connections:
            if inp not in inputs:
                raise InvalidConnectionError(
                    f"{inp} is not an input of any subsystem",
                    block_name=self.name,
                    variables=[inp],
                )
            if outp not in outputs:
                raise InvalidConnectionError(
                    f"{outp} is not an output of any subsystem",
                    block_name=self.name,
                    variables=[outp],
                )
        dupes = [i for i, n in Counter(i for i, _ in self.connections).items() if n > 1]
        if dupes:
            raise InvalidConnectionError(
                "inputs may only be connected once",
                block_name=self.name,
                variables=dupes,
            )

    def _promotion_rules(self, namespace_map: Mapping, autopromote: bool) -> dict:
        known = set(self.namespaced_variables) | set(self.namespaced_outputs)
        rules = {}
        for key, value in namespace_map.items():
            key, value = sp.sympify(key), sp.sympify(value)
            if key not in known:
                raise ValueError(
                    f"namespace_map key {key} is not a variable of the subsystems of {self.name}."
                )
            if not is_variable(value):
                raise TypeError(f"namespace_map value {value} must be a variable.")
            rules[key] = value

        if autopromote:
            local_names = {}
            for sub in self.subsystems:
                for sym in self._subsystem_variables(sub):
                    local_names.setdefault(symbol_name(sym), set()).add(sub.name)
            for sub in self.subsystems:
                for sym in self._subsystem_variables(sub):
                    ns_sym = namespaced(sym, sub.name)
                    if ns_sym in rules or ns_sym in self.connected_inputs:
                        continue
                    if len(local_names[symbol_name(sym)]) == 1:
                        rules[ns_sym] = rename(ns_sym, symbol_name(sym))

        images = [rules.get(s, s) for s in self.namespaced_variables]
        dupes = [s for s, n in Counter(images).items() if n > 1]
        if dupes:
            raise SymbolCollisionError(
                "namespace promotion maps several symbols to the same name",
                block_name=self.name,
                variables=dupes,
            )
        return rules

    def _declared(self, declared, available: tuple, what: str) -> tuple:
        if declared is None:
            return available
        declared = _check_variables(declared, what, self.name)
        unknown = [s for s in declared if s not in set(available)]
        if unknown:
            raise SymbolCollisionError(
                f"declared {what} are not {what} of the subsystems",
                block_name=self.name,
                variables=unknown,
            )
        return declared

    def __getitem__(self, name: str):
        """The namespaced form of a system level variable, for use in a parent."""
        for sym in self.variables:
            if symbol_name(sym) == name:
                return namespaced(sym, self.name)
        raise KeyError(f"IOSystem {self.name} has no variable named '{name}'.")
