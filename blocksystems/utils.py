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

"""Syntactic rewrites of IOBlocks: parameter values and renaming."""

import numbers
from typing import Mapping, Optional

import numpy as np
import sympy as sp

from .blocks import IOBlock
from .error import SymbolCollisionError
from .logging import logger
from .symbolic import rename, symbol_name

__all__ = ["set_p", "rename_vars"]


def _is_numeric(value) -> bool:
    return isinstance(value, (numbers.Number, np.number, sp.Number))


def _all_symbols(blk: IOBlock) -> tuple:
    syms = blk.variables + blk.removed_variables + blk.inputs + blk.outputs
    return tuple(dict.fromkeys(syms))


def _lookup(blk: IOBlock, key, candidates: tuple):
    if isinstance(key, str):
        for sym in candidates:
            if symbol_name(sym) == key:
                return sym
        raise ValueError(f"IOBlock {blk.name} has no symbol named '{key}'.")
    key = sp.sympify(key)
    if key not in candidates:
        raise ValueError(f"{key} is not a symbol of IOBlock {blk.name}.")
    return key


def set_p(blk: IOBlock, values: Mapping) -> IOBlock:
    """
    Substitute numeric values for parameters.

    Keys of `values` are parameters (`sp.Symbol`) or their names, values must be
    numbers. Substitution applies to the equations and the removed equations.
    """
    rules = {}
    for key, value in values.items():
        if not _is_numeric(value):
            raise TypeError(
                f"Value for parameter {key} must be a number, got {type(value).__name__}."
            )
        param = _lookup(blk, key, blk.parameters + blk.removed_variables)
        if not isinstance(param, sp.Symbol):
            raise ValueError(f"{param} is not a parameter of IOBlock {blk.name}.")
        rules[param] = sp.sympify(value)

    logger.debug("Set parameters of %s: %s", blk.name, rules)
    return blk.replace(
        eqs=[eq.subs(rules) for eq in blk.eqs],
        removed_eqs=[eq.subs(rules) for eq in blk.removed_eqs],
    )


def rename_vars(blk: IOBlock, mapping: Optional[Mapping] = None, **names) -> IOBlock:
    """
    Rename variables and parameters of a block.

    `mapping` maps symbols (or their names) to new symbols or new names, the
    keyword form `rename_vars(blk, x="y")` maps names to names. Variables keep
    their arguments, so `x(t)` renamed to "y" becomes `y(t)`.

    Raises SymbolCollisionError if a new name is already used in the block.
    """
    requested = dict(mapping or {})
    requested.update(names)
    if not requested:
        return blk

    candidates = _all_symbols(blk)
    rules = {}
    for key, new in requested.items():
        old = _lookup(blk, key, candidates)
        rules[old] = rename(old, new) if isinstance(new, str) else sp.sympify(new)

    kept = set(candidates) - set(rules)
    collisions = [new for new in rules.values() if new in kept]
    images = list(rules.values())
    collisions += [new for new in set(images) if images.count(new) > 1]
    if collisions:
        raise SymbolCollisionError(
            "renamed symbols collide with existing symbols",
            block_name=blk.name,
            variables=collisions,
        )

    return blk.replace(
        eqs=[eq.subs(rules) for eq in blk.eqs],
        removed_eqs=[eq.subs(rules) for eq in blk.removed_eqs],
        inputs=[rules.get(s, s) for s in blk.inputs],
        outputs=[rules.get(s, s) for s in blk.outputs],
    )
