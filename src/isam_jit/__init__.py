# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
ISAM-JIT: incremental smoothing and mapping on top of JAX.

Typical use::

    from isam_jit import ISAM2, ISAM2Params, NonlinearFactorGraph, Values

    isam = ISAM2(ISAM2Params())
    result = isam.update(new_factors, new_values)
    estimate = isam.calculate_estimate()
"""

from isam_jit.core.factor_graph import NonlinearFactorGraph
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import NonlinearFactor, Values
from isam_jit.errors import (
    IndeterminantLinearSystemError,
    ISAM2Error,
    ISAM2UsageError,
    StructuralInconsistencyError,
)
from isam_jit.isam2 import ISAM2, ISAM2Params, ISAM2Result

__version__ = "0.1.0"

__all__ = [
    "ISAM2",
    "ISAM2Params",
    "ISAM2Result",
    "NonlinearFactor",
    "NonlinearFactorGraph",
    "Ordering",
    "Values",
    "ISAM2Error",
    "ISAM2UsageError",
    "StructuralInconsistencyError",
    "IndeterminantLinearSystemError",
]
