# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""Exception types raised by the incremental solver."""

from __future__ import annotations


class ISAM2Error(RuntimeError):
    """Base class for every failure that aborts an ``update`` call."""


class ISAM2UsageError(ISAM2Error, ValueError):
    """The caller violated the update contract (missing or extra initial values)."""


class StructuralInconsistencyError(ISAM2Error):
    """The clique tree no longer satisfies its structural invariants."""


class IndeterminantLinearSystemError(ISAM2Error):
    """
    Elimination hit a pivot that is not positive definite.

    The variable index is kept so callers can tell which variable is
    under-constrained (for example a new variable with too few factors).
    """

    def __init__(self, index: int, message: str = "") -> None:
        self.index = index
        super().__init__(message or f"Linear system is indeterminant at variable index {index}")
