"""
Rectangular quadrature grids for latent variable integration.

This module builds the discretised latent-trait space used by the E-step and
by EAP scoring: the Cartesian product of equally spaced points over
theta_lim in every dimension, weighted by a multivariate normal (or custom)
prior density normalised to sum to 1.
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.stats import multivariate_normal

from mirt_analysis.core.errors import ConfigurationError
from mirt_analysis.irt.estimation.config import (
    QuadratureConfig,
    default_quadpts,
)


def normal_prior_weights(
    theta: NDArray[np.float64],
    mean: NDArray[np.float64],
    cov: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Multivariate normal density at each node, normalised to sum to 1."""
    density = np.atleast_1d(
        multivariate_normal.pdf(theta, mean=mean, cov=cov)
    ).astype(np.float64)
    total = density.sum()
    if not np.isfinite(total) or total <= 0:
        raise ConfigurationError(
            "Prior density vanishes on every quadrature node"
        )
    result: NDArray[np.float64] = density / total
    return result


@dataclass(frozen=True)
class QuadratureGrid:
    """
    Quadrature nodes and prior weights.

    Attributes:
        theta: Nodes, shape (n_nodes, n_factors).
        weights: Prior weights, shape (n_nodes,). Weights sum to 1.
        points_per_dimension: Points per dimension for rectangular grids,
            None for custom grids.
    """

    theta: NDArray[np.float64]
    weights: NDArray[np.float64]
    points_per_dimension: int | None = None

    @property
    def n_points(self) -> int:
        """Number of quadrature nodes."""
        return self.theta.shape[0]

    @property
    def n_factors(self) -> int:
        return self.theta.shape[1]

    def prior_weights(
        self, mean: NDArray[np.float64], cov: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """Normalised normal weights for a group's mean and covariance."""
        return normal_prior_weights(self.theta, mean, cov)

    def with_weights(self, weights: NDArray[np.float64]) -> "QuadratureGrid":
        """Same nodes with new (normalised) weights."""
        weights = np.asarray(weights, dtype=np.float64)
        return QuadratureGrid(
            theta=self.theta,
            weights=weights / weights.sum(),
            points_per_dimension=self.points_per_dimension,
        )


def build_quadrature_grid(
    n_factors: int,
    config: QuadratureConfig,
    mean: NDArray[np.float64] | None = None,
    cov: NDArray[np.float64] | None = None,
    n_points: int | None = None,
) -> QuadratureGrid:
    """
    Build the quadrature grid.

    The node count is checked against config.max_quad before any nodes are
    allocated.

    Args:
        n_factors: Dimensionality D of the latent space.
        config: Quadrature configuration.
        mean: Prior mean, defaults to zeros.
        cov: Prior covariance, defaults to identity.
        n_points: Points per dimension; overrides config.n_points.

    Returns:
        QuadratureGrid with normalised weights.

    Raises:
        ConfigurationError: If the point count is not a positive odd
            integer, the grid would exceed max_quad nodes, or a custom grid
            or prior is malformed.
    """
    mean = np.zeros(n_factors) if mean is None else np.asarray(mean, float)
    cov = np.eye(n_factors) if cov is None else np.asarray(cov, float)

    points_per_dimension: int | None
    if config.custom_theta is not None:
        theta = np.atleast_2d(np.asarray(config.custom_theta, dtype=float))
        if theta.shape[1] != n_factors:
            raise ConfigurationError(
                f"custom_theta has {theta.shape[1]} columns for "
                f"{n_factors} factors"
            )
        if theta.shape[0] > config.max_quad:
            raise ConfigurationError(
                f"custom_theta has {theta.shape[0]} nodes, exceeding "
                f"max_quad={config.max_quad}"
            )
        points_per_dimension = None
    else:
        quadpts = n_points or config.n_points or default_quadpts(n_factors)
        if quadpts < 1 or quadpts % 2 == 0:
            raise ConfigurationError(
                f"quadpts must be a positive odd integer, got {quadpts}"
            )
        n_nodes = quadpts**n_factors
        if n_nodes > config.max_quad:
            raise ConfigurationError(
                f"Quadrature grid of {quadpts}^{n_factors} = {n_nodes} "
                f"nodes exceeds max_quad={config.max_quad}; reduce quadpts "
                "or use method='MHRM'"
            )
        lower, upper = config.theta_lim
        nodes = np.linspace(lower, upper, quadpts)
        mesh = np.meshgrid(*([nodes] * n_factors), indexing="ij")
        theta = np.column_stack([m.reshape(-1) for m in mesh])
        points_per_dimension = quadpts

    if config.custom_prior is not None:
        density = np.asarray(config.custom_prior(theta), dtype=np.float64)
        density = density.reshape(-1)
        if density.shape != (theta.shape[0],):
            raise ConfigurationError(
                f"custom_prior returned shape {density.shape} for "
                f"{theta.shape[0]} nodes"
            )
        if np.any(density < 0) or not np.isfinite(density).all():
            raise ConfigurationError(
                "custom_prior must return finite non-negative densities"
            )
        if density.sum() <= 0:
            raise ConfigurationError("custom_prior density sums to zero")
        weights = density / density.sum()
    else:
        weights = normal_prior_weights(theta, mean, cov)

    return QuadratureGrid(
        theta=theta,
        weights=weights,
        points_per_dimension=points_per_dimension,
    )
