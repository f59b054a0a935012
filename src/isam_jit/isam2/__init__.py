# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""Incremental update engine: relinearization, affected region, re-elimination, wildfire."""

from .isam2 import ISAM2
from .params import ISAM2Params, ISAM2Result

__all__ = ["ISAM2", "ISAM2Params", "ISAM2Result"]
