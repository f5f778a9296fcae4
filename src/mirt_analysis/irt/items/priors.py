"""
Parameter priors for penalised (MAP) item estimation.

Normal and log-normal priors act on the internal parameter value. Beta
priors act on the probability scale, so for logit-stored asymptotes the
density is evaluated at expit(value).
"""

from typing import Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, model_validator
from scipy.special import expit

from mirt_analysis.irt.items.transforms import ParameterTransform


class ParameterPrior(BaseModel):
    """
    Prior density attached to one free parameter.

    Attributes:
        kind: 'norm' (mean, sd), 'lnorm' (log-mean, log-sd) or
            'beta' (alpha, beta).
        p1: First hyperparameter.
        p2: Second hyperparameter.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["norm", "lnorm", "beta"]
    p1: float
    p2: float

    @model_validator(mode="after")
    def validate_hyperparameters(self) -> "ParameterPrior":
        if self.kind in ("norm", "lnorm") and self.p2 <= 0:
            raise ValueError(f"{self.kind} prior needs sd > 0, got {self.p2}")
        if self.kind == "beta" and (self.p1 <= 0 or self.p2 <= 0):
            raise ValueError(
                f"beta prior needs positive shapes, got ({self.p1}, {self.p2})"
            )
        return self

    def log_density(self, value: float, transform: ParameterTransform) -> float:
        """Unnormalised log density at an internal-scale value."""
        if self.kind == "norm":
            return float(-0.5 * ((value - self.p1) / self.p2) ** 2)
        if self.kind == "lnorm":
            if value <= 0:
                return -np.inf
            log_value = np.log(value)
            return float(
                -log_value - 0.5 * ((log_value - self.p1) / self.p2) ** 2
            )
        prob = value if transform.is_identity else expit(value)
        if prob <= 0 or prob >= 1:
            return -np.inf
        return float(
            (self.p1 - 1) * np.log(prob) + (self.p2 - 1) * np.log1p(-prob)
        )

    def gradient(self, value: float, transform: ParameterTransform) -> float:
        """Derivative of log_density with respect to the internal value."""
        if self.kind == "norm":
            return float(-(value - self.p1) / self.p2**2)
        if self.kind == "lnorm":
            if value <= 0:
                return 0.0
            log_value = np.log(value)
            return float(
                -1.0 / value - (log_value - self.p1) / (self.p2**2 * value)
            )
        if not transform.is_identity:
            prob = expit(value)
            return float((self.p1 - 1) * (1 - prob) - (self.p2 - 1) * prob)
        if value <= 0 or value >= 1:
            return 0.0
        return float((self.p1 - 1) / value - (self.p2 - 1) / (1 - value))
