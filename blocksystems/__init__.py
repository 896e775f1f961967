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

from . import _init  # noqa: F401
from .blocks import IOBlock, IOSystem
from .equations import Equation, EqnKind, classify_equation
from .error import (
    BlockSystemsError,
    ImplicitOutputError,
    InvalidConnectionError,
    SymbolCollisionError,
    SystemCycleError,
    UnresolvedDerivativeWarning,
)
from .symbolic import independent_variable, make_params, make_vars
from .transformations import (
    ReductionOptions,
    connect_system,
    reduce_block,
    remove_superfluous_states,
    simplify_eqs,
    substitute_algebraic_states,
    substitute_derivatives,
)
from .utils import rename_vars, set_p
from .version import __version__

__all__ = [
    "__version__",
    "IOBlock",
    "IOSystem",
    "Equation",
    "EqnKind",
    "classify_equation",
    "independent_variable",
    "make_vars",
    "make_params",
    "ReductionOptions",
    "connect_system",
    "reduce_block",
    "remove_superfluous_states",
    "substitute_algebraic_states",
    "substitute_derivatives",
    "simplify_eqs",
    "set_p",
    "rename_vars",
    "BlockSystemsError",
    "SymbolCollisionError",
    "InvalidConnectionError",
    "SystemCycleError",
    "ImplicitOutputError",
    "UnresolvedDerivativeWarning",
]
