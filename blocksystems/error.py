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

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    import sympy as sp

__all__ = [
    "BlockSystemsError",
    "SymbolCollisionError",
    "InvalidConnectionError",
    "SystemCycleError",
    "ImplicitOutputError",
    "UnresolvedDerivativeWarning",
]


class BlockSystemsError(Exception):
    """Base class for all custom blocksystems errors."""

    def __init__(
        self,
        message=None,
        *,
        block_name: Optional[str] = None,
        variables: Optional[Iterable["sp.Basic"]] = None,
    ):
        """Create a new BlockSystemsError.

        Only `message` is a positional argument, all others are keyword arguments.

        Args:
            message: A custom error message, defaults to the error class name.
            block_name: The name of the block or system the error occurred in.
            variables: The symbols related to the error, if any.
        """
        super().__init__(message)
        self.message = message
        self.block_name = block_name
        self.variables = list(variables) if variables is not None else None

    def __str__(self):
        message = self.message or self.default_message
        return f"{message}{self._context_info()}"

    def _context_info(self) -> str:
        strbuf = []
        if self.block_name:
            strbuf.append(f" in block {self.block_name}")
        if self.variables:
            vars_str = ", ".join(str(v) for v in self.variables)
            strbuf.append(f" (related variables: {vars_str})")
        return "".join(strbuf)

    @property
    def default_message(self):
        return type(self).__name__


class SymbolCollisionError(BlockSystemsError):
    """Two equations define the same left hand side, or a declared input/output
    is inconsistent with the equations of the block. Raised at construction."""


class InvalidConnectionError(BlockSystemsError):
    """A connection references something that is not a subsystem input/output,
    or an input is connected more than once."""


class SystemCycleError(BlockSystemsError):
    """A system contains itself, directly or through its subsystems."""


class ImplicitOutputError(BlockSystemsError, UserWarning):
    """An output has no explicit defining equation.

    This is a soft error: the pass that needs explicit outputs is skipped and
    the block is returned unchanged. It is logged, and emitted through
    `warnings.warn` when requested, but never raised out of a pass.
    """


class UnresolvedDerivativeWarning(BlockSystemsError, UserWarning):
    """A derivative term on a right hand side could not be fully resolved."""
