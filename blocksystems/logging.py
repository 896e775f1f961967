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
from logging import CRITICAL, DEBUG, ERROR, INFO, WARNING

__all__ = [
    "logger",
    "set_log_level",
    "set_file_handler",
    "unset_file_handler",
    "set_stream_handler",
    "unset_stream_handler",
    "logdata",
    "format_eqs",
    "DEBUG",
    "INFO",
    "WARNING",
    "ERROR",
    "CRITICAL",
]

packages = [__package__]

__fmt = "%(name)s:%(levelname)s %(message)s"
__formatter = logging.Formatter(fmt=__fmt)
__stream_handler = logging.StreamHandler()
__stream_handler.setFormatter(__formatter)


def set_file_handler(file, formatter=None) -> logging.FileHandler:
    """Write the logs of all packages to `file`, e.g. to keep the verbose
    equation dumps of `connect_system`. Returns the handler so that it can be
    removed and closed again."""
    if formatter is None:
        formatter = __formatter
    fh = logging.FileHandler(file, mode="w")
    fh.setFormatter(formatter)
    for package in packages:
        logger_ = logging.getLogger(package)
        logger_.addHandler(fh)
    return fh


def unset_file_handler(fh: logging.FileHandler):
    """Detach and close a handler returned by `set_file_handler`."""
    for package in packages:
        logger_ = logging.getLogger(package)
        logger_.removeHandler(fh)
    fh.close()


def set_stream_handler(handler=None):
    """Set the stream handler to all packages."""
    for package in packages:
        logger_ = logging.getLogger(package)
        logger_.addHandler(handler if handler else __stream_handler)


def unset_stream_handler():
    """Remove the stream handler from all packages."""
    for package in packages:
        logger_ = logging.getLogger(package)
        logger_.removeHandler(__stream_handler)


def set_log_level(level, pkg: str | None = None):
    """Set the log level for the specified or all packages.

    Args:
        level: The log level to set.
        pkg: If set, apply the log level only to the specified package.
    """
    if pkg is not None:
        logger_ = logging.getLogger(pkg)
        logger_.setLevel(level)
        return

    for package in packages:
        logger_ = logging.getLogger(package)
        logger_.setLevel(level)


def logdata(*, block=None, **kwargs):
    """Use this in log.info() and other logging functions to attach block info:

    logger.info("message", **logdata(block=iob))
    """
    extras = kwargs or {}
    if block is not None and getattr(block, "name", None):
        extras["block"] = block.name

    if len(extras) == 0:
        return {}

    return {"extra": {"extras": extras}}


def format_eqs(eqs, tabs="\t") -> str:
    """One equation per line, prefixed with its index."""
    return "\n".join(f"{tabs}{idx}: {eq}" for idx, eq in enumerate(eqs))


logger = logging.getLogger(__package__)
