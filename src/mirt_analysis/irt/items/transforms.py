"""
Reported-scale to internal-scale parameter transforms.

Parameters restricted to (0, 1) (lower and upper asymptotes) are stored
and optimised on the logit scale; everything else is stored as reported.

Transforms are stateless module-level singletons. Copying or pickling an
item returns the same singleton, so identity checks against IDENTITY and
LOGIT hold for copied items too.
"""

from abc import ABC, abstractmethod
from typing import Any, Self

import numpy as np
from scipy.special import expit, logit


class ParameterTransform(ABC):
    name: str

    @abstractmethod
    def to_internal(self, value: float) -> float: ...

    @abstractmethod
    def to_reported(self, value: float) -> float: ...

    @property
    def is_identity(self) -> bool:
        return False

    def __copy__(self) -> Self:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> Self:
        return self

    def __reduce__(self) -> str:
        return self.name.upper()


class IdentityTransform(ParameterTransform):
    name = "identity"

    def to_internal(self, value: float) -> float:
        return float(value)

    def to_reported(self, value: float) -> float:
        return float(value)

    @property
    def is_identity(self) -> bool:
        return True


class LogitTransform(ParameterTransform):
    name = "logit"

    def to_internal(self, value: float) -> float:
        return float(logit(np.clip(value, 0.0, 1.0)))

    def to_reported(self, value: float) -> float:
        return float(expit(value))


IDENTITY = IdentityTransform()
LOGIT = LogitTransform()
