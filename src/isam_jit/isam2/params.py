# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Configuration and per-call result record of the incremental solver.

ISAM2Params
    Dataclass of solver settings with defaults:
    - wildfire_threshold: stop back-substitution along a branch once every
      frontal change falls below this value
    - relinearize_threshold: per-variable delta magnitude (infinity norm)
      above which a variable is relinearized
    - relinearize_skip: only every N-th update call considers relinearization
    - enable_relinearization: master switch for relinearization
    - evaluate_nonlinear_error: compute the nonlinear error before and after
      each update (costs two passes over the affected factors)

ISAM2Result
    What happened in one `ISAM2.update` call. The camelCase properties mirror
    the names used in the iSAM2 literature.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional


_CAMEL_NAMES = {
    "wildfireThreshold": "wildfire_threshold",
    "relinearizeThreshold": "relinearize_threshold",
    "relinearizeSkip": "relinearize_skip",
    "enableRelinearization": "enable_relinearization",
    "evaluateNonlinearError": "evaluate_nonlinear_error",
}


@dataclass
class ISAM2Params:
    wildfire_threshold: float = 0.001
    relinearize_threshold: float = 0.1
    relinearize_skip: int = 10
    enable_relinearization: bool = True
    evaluate_nonlinear_error: bool = False

    def __post_init__(self) -> None:
        if int(self.relinearize_skip) != self.relinearize_skip or self.relinearize_skip < 1:
            raise ValueError(f"relinearize_skip must be an integer >= 1, got {self.relinearize_skip}")
        self.relinearize_skip = int(self.relinearize_skip)
        if self.wildfire_threshold < 0.0:
            raise ValueError(f"wildfire_threshold must be non-negative, got {self.wildfire_threshold}")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "ISAM2Params":
        """Build params from a dict using snake_case or camelCase option names."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for name, value in options.items():
            field_name = _CAMEL_NAMES.get(name, name)
            if field_name not in known:
                raise ValueError(f"Unknown ISAM2 option '{name}'")
            if field_name in kwargs:
                raise ValueError(f"ISAM2 option '{field_name}' given twice")
            kwargs[field_name] = value
        return cls(**kwargs)


@dataclass
class ISAM2Result:
    error_before: Optional[float] = None
    error_after: Optional[float] = None
    variables_relinearized: int = 0
    variables_reeliminated: int = 0

    @property
    def errorBefore(self) -> Optional[float]:
        return self.error_before

    @property
    def errorAfter(self) -> Optional[float]:
        return self.error_after

    @property
    def variablesRelinearized(self) -> int:
        return self.variables_relinearized

    @property
    def variablesReeliminated(self) -> int:
        return self.variables_reeliminated
