"""
Configuration dataclasses for IRT model estimation.

This module defines the configuration parameters for:
- Quadrature grid construction
- Convergence criteria for the EM and MH-RM loops
- MH-RM stage lengths, gain sequence and sampler settings
- Technical options (seed, SE tolerances, symmetrisation)
- Overall estimation settings, including YAML loading via OmegaConf

Defaults that depend on the estimation mode (tolerance, cycle limit,
quadrature points) are left as None and resolved by EstimationConfig.
"""

import importlib.metadata
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import toml
from numpy.typing import NDArray
from omegaconf import OmegaConf

from mirt_analysis.core.errors import ConfigurationError
from mirt_analysis.core.paths import ProjectRootNotFound, get_project_root_dir
from mirt_analysis.irt.estimation.enums import (
    EstimationMethod,
    Optimizer,
    SEType,
)

PACKAGE_NAME = "mirt-analysis"

# Default quadrature settings
DEFAULT_THETA_LIM = (-4.0, 4.0)
DEFAULT_MAX_QUAD = 10000
DEFAULT_QUADPTS_BY_DIMENSION = {1: 41, 2: 21, 3: 11, 4: 7, 5: 5}
DEFAULT_QUADPTS_HIGH_DIMENSION = 3
DEFAULT_EMPIRICAL_HIST_QUADPTS = 199

# Default convergence settings
DEFAULT_EM_TOLERANCE = 1e-4
DEFAULT_MHRM_TOLERANCE = 1e-3
DEFAULT_SEM_TOLERANCE = 1e-5
DEFAULT_EMPIRICAL_HIST_TOLERANCE = 3e-5
DEFAULT_EM_CYCLES = 500
DEFAULT_MHRM_CYCLES = 2000
DEFAULT_EMPIRICAL_HIST_CYCLES = 2000
DEFAULT_MAX_OPTIMIZER_ITERATIONS = 200
DEFAULT_OPTIMIZER_TOLERANCE = 1e-7

# Default MH-RM settings
DEFAULT_BURNIN = 150
DEFAULT_SEMCYCLES = 50
DEFAULT_GAIN = (0.15, 0.65)
DEFAULT_DRAWS = 5000
DEFAULT_MIN_SE_CYCLES = 400
DEFAULT_CONVERGENCE_WINDOW = 3
DEFAULT_WARNING_WINDOW = 20

# Default technical settings
DEFAULT_SEED = 12345
DEFAULT_SE_TOLERANCE = 1e-3
DEFAULT_FISHER_MAX_PATTERNS = 200000


def _get_package_version() -> str:
    try:
        root_dir = get_project_root_dir()
        with open(root_dir / "pyproject.toml") as f:
            data = toml.load(f)
        project = data.get("project", {})
        if project.get("name") == PACKAGE_NAME and project.get("version"):
            version = project["version"]
            assert isinstance(version, str)
            return version
    except ProjectRootNotFound:
        pass
    return importlib.metadata.version(PACKAGE_NAME)


def default_quadpts(n_factors: int, empirical_hist: bool = False) -> int:
    """Points per dimension, decreasing as dimensionality grows."""
    if empirical_hist:
        return DEFAULT_EMPIRICAL_HIST_QUADPTS
    return DEFAULT_QUADPTS_BY_DIMENSION.get(
        n_factors, DEFAULT_QUADPTS_HIGH_DIMENSION
    )


@dataclass(frozen=True)
class QuadratureConfig:
    """
    Configuration for the quadrature grid.

    Attributes:
        n_points: Points per dimension (odd). None picks the default for
            the model's dimensionality.
        theta_lim: (lower, upper) range of every dimension.
        max_quad: Ceiling on the total number of grid nodes.
        custom_theta: Explicit grid nodes, shape (n_nodes, n_factors).
        custom_prior: Function mapping grid nodes to unnormalised prior
            density values, used instead of the multivariate normal.
    """

    n_points: int | None = None
    theta_lim: tuple[float, float] = DEFAULT_THETA_LIM
    max_quad: int = DEFAULT_MAX_QUAD
    custom_theta: NDArray[np.float64] | None = field(
        default=None, compare=False
    )
    custom_prior: (
        Callable[[NDArray[np.float64]], NDArray[np.float64]] | None
    ) = field(default=None, compare=False)


@dataclass(frozen=True)
class ConvergenceConfig:
    """
    Configuration for estimation convergence.

    Attributes:
        tolerance: TOL. EM stops when |LL_new - LL_old| < tolerance (max
            absolute parameter change when SEM standard errors are
            requested); MH-RM stops when the max parameter change stays
            below it for a window of cycles. None picks the mode default.
        max_cycles: NCYCLES. None picks the mode default.
        max_optimizer_iterations: Iteration cap for each M-step block.
        optimizer_tolerance: Gradient tolerance for each M-step block.
        optimizer: Force a specific M-step optimizer. None selects L-BFGS-B
            for blocks with bounded free parameters and BFGS otherwise.
    """

    tolerance: float | None = None
    max_cycles: int | None = None
    max_optimizer_iterations: int = DEFAULT_MAX_OPTIMIZER_ITERATIONS
    optimizer_tolerance: float = DEFAULT_OPTIMIZER_TOLERANCE
    optimizer: Optimizer | None = None


@dataclass(frozen=True)
class MHRMConfig:
    """
    Configuration for the Metropolis-Hastings Robbins-Monro estimator.

    Attributes:
        burnin: Stage 1 cycles (fixed gain, widths auto-tuned).
        semcycles: Stage 2 cycles whose iterates are averaged.
        gain: (g0, g1) of the stage 3 gain sequence (g0 / k) ** g1.
        candidate_widths: Per-dimension proposal standard deviations.
            None enables auto-tuning toward 0.1-0.4 acceptance.
        draws: Monte Carlo draws for the final log-likelihood.
        min_se_cycles: Minimum total cycles when information is
            accumulated for standard errors.
        convergence_window: Consecutive stage 3 cycles below tolerance
            required to stop.
        warning_window: Number of trailing stage 3 cycles inspected for
            persistent large parameter changes.
        n_chunks: Respondent chunks per imputation step, each with its
            own RNG stream. None uses 8 chunks whatever the executor.
    """

    burnin: int = DEFAULT_BURNIN
    semcycles: int = DEFAULT_SEMCYCLES
    gain: tuple[float, float] = DEFAULT_GAIN
    candidate_widths: tuple[float, ...] | None = None
    draws: int = DEFAULT_DRAWS
    min_se_cycles: int = DEFAULT_MIN_SE_CYCLES
    convergence_window: int = DEFAULT_CONVERGENCE_WINDOW
    warning_window: int = DEFAULT_WARNING_WINDOW
    n_chunks: int | None = None


@dataclass(frozen=True)
class TechnicalConfig:
    """
    Technical options.

    Attributes:
        seed: Seed for every stochastic step (MH-RM, Monte Carlo
            log-likelihood, multiple-imputation scoring).
        se_tolerance: Convergence tolerance of the SEM DM-matrix rows.
        symmetric: Symmetrise information matrices.
        fisher_max_patterns: Ceiling on enumerated patterns for Fisher
            information.
        custom_k: Declared number of categories per item. Responses are
            then taken as category indices 0..K-1 without recoding, so
            categories nobody chose still belong to the model.
    """

    seed: int = DEFAULT_SEED
    se_tolerance: float = DEFAULT_SE_TOLERANCE
    symmetric: bool = True
    fisher_max_patterns: int = DEFAULT_FISHER_MAX_PATTERNS
    custom_k: tuple[int, ...] | None = None


@dataclass(frozen=True)
class EstimationConfig:
    """
    Master configuration for IRT model estimation.

    Attributes:
        method: EM or MHRM.
        se: Compute an information matrix after the fit.
        se_type: Strategy used when se is True.
        accelerate: Ramsay acceleration of EM (ignored for SEM).
        empirical_hist: Estimate the latent density as an empirical
            histogram (unidimensional EM only).
        calc_null: Fit the null (independence) model for fit statistics.
        random_starts: Draw random starting values instead of the
            data-driven ones (seeded by technical.seed).
        quadrature: Grid settings.
        convergence: Convergence settings.
        mhrm: MH-RM settings.
        technical: Technical options.
        model_version: Version string for reproducibility tracking.
    """

    method: EstimationMethod = EstimationMethod.EM
    se: bool = False
    se_type: SEType = SEType.CROSSPROD
    accelerate: bool = True
    empirical_hist: bool = False
    calc_null: bool = True
    random_starts: bool = False
    quadrature: QuadratureConfig = QuadratureConfig()
    convergence: ConvergenceConfig = ConvergenceConfig()
    mhrm: MHRMConfig = MHRMConfig()
    technical: TechnicalConfig = TechnicalConfig()
    model_version: str = field(default_factory=_get_package_version)

    @property
    def uses_parameter_change_criterion(self) -> bool:
        """EM tracks parameter change instead of LL change for SEM."""
        return self.se and self.se_type == SEType.SEM

    @property
    def uses_acceleration(self) -> bool:
        return self.accelerate and not self.uses_parameter_change_criterion

    def resolved_tolerance(self) -> float:
        if self.convergence.tolerance is not None:
            return self.convergence.tolerance
        if self.method == EstimationMethod.MHRM:
            return DEFAULT_MHRM_TOLERANCE
        if self.uses_parameter_change_criterion:
            return DEFAULT_SEM_TOLERANCE
        if self.empirical_hist:
            return DEFAULT_EMPIRICAL_HIST_TOLERANCE
        return DEFAULT_EM_TOLERANCE

    def resolved_max_cycles(self) -> int:
        if self.convergence.max_cycles is not None:
            return self.convergence.max_cycles
        if self.method == EstimationMethod.MHRM:
            return DEFAULT_MHRM_CYCLES
        if self.empirical_hist:
            return DEFAULT_EMPIRICAL_HIST_CYCLES
        return DEFAULT_EM_CYCLES

    def resolved_quadpts(self, n_factors: int) -> int:
        if self.quadrature.n_points is not None:
            return self.quadrature.n_points
        return default_quadpts(n_factors, self.empirical_hist)

    def validate(self, n_factors: int) -> None:
        """
        Reject incompatible option combinations before any computation.

        Raises:
            ConfigurationError: If any option is out of range or options
                cannot be combined.
        """
        if n_factors < 1:
            raise ConfigurationError(
                f"n_factors must be >= 1, got {n_factors}"
            )
        if self.method == EstimationMethod.MHRM and self.se_type in (
            SEType.SEM,
            SEType.COMPLETE,
        ):
            raise ConfigurationError(
                f"SE type '{self.se_type.value}' requires method='EM'"
            )
        if self.empirical_hist:
            if self.method != EstimationMethod.EM:
                raise ConfigurationError(
                    "empirical_hist requires method='EM'"
                )
            if n_factors != 1:
                raise ConfigurationError(
                    "empirical_hist is only available for unidimensional "
                    f"models, got {n_factors} factors"
                )

        n_points = self.quadrature.n_points
        if n_points is not None and (n_points < 1 or n_points % 2 == 0):
            raise ConfigurationError(
                f"quadpts must be a positive odd integer, got {n_points}"
            )
        lower, upper = self.quadrature.theta_lim
        if not lower < upper:
            raise ConfigurationError(
                f"theta_lim must be increasing, got {self.quadrature.theta_lim}"
            )
        if self.quadrature.max_quad < 1:
            raise ConfigurationError("max_quad must be >= 1")

        tolerance = self.convergence.tolerance
        if tolerance is not None and tolerance <= 0:
            raise ConfigurationError(f"TOL must be > 0, got {tolerance}")
        max_cycles = self.convergence.max_cycles
        if max_cycles is not None and max_cycles < 1:
            raise ConfigurationError(
                f"NCYCLES must be >= 1, got {max_cycles}"
            )

        mhrm = self.mhrm
        if len(mhrm.gain) != 2:
            raise ConfigurationError(
                f"gain must be a pair (g0, g1), got {mhrm.gain}"
            )
        g0, g1 = mhrm.gain
        if g0 <= 0 or not 0.5 < g1 <= 1.0:
            raise ConfigurationError(
                f"gain must satisfy g0 > 0 and 0.5 < g1 <= 1, got {mhrm.gain}"
            )
        if mhrm.burnin < 0 or mhrm.semcycles < 0:
            raise ConfigurationError("BURNIN and SEMCYCLES must be >= 0")
        if mhrm.draws < 1:
            raise ConfigurationError(f"draws must be >= 1, got {mhrm.draws}")
        if mhrm.candidate_widths is not None:
            if len(mhrm.candidate_widths) != n_factors:
                raise ConfigurationError(
                    f"candidate_widths needs {n_factors} entries, got "
                    f"{len(mhrm.candidate_widths)}"
                )
            if min(mhrm.candidate_widths) <= 0:
                raise ConfigurationError("candidate_widths must be > 0")

        if self.technical.se_tolerance <= 0:
            raise ConfigurationError("se_tolerance must be > 0")
        custom_k = self.technical.custom_k
        if custom_k is not None and any(k < 2 for k in custom_k):
            raise ConfigurationError(
                f"custom_k needs at least 2 categories per item, got {custom_k}"
            )


def default_config() -> EstimationConfig:
    """Create a default estimation configuration."""
    return EstimationConfig()


@dataclass
class EstimationSettings:
    """Flat YAML schema for estimation configs (see load_estimation_config)."""

    method: str = EstimationMethod.EM.value
    se: bool = False
    se_type: str = SEType.CROSSPROD.value
    accelerate: bool = True
    empirical_hist: bool = False
    calc_null: bool = True
    random_starts: bool = False
    quadpts: int | None = None
    theta_lim: list[float] = field(
        default_factory=lambda: list(DEFAULT_THETA_LIM)
    )
    max_quad: int = DEFAULT_MAX_QUAD
    tol: float | None = None
    ncycles: int | None = None
    optimizer: str | None = None
    burnin: int = DEFAULT_BURNIN
    semcycles: int = DEFAULT_SEMCYCLES
    gain: list[float] = field(default_factory=lambda: list(DEFAULT_GAIN))
    candidate_widths: list[float] | None = None
    draws: int = DEFAULT_DRAWS
    seed: int = DEFAULT_SEED
    se_tolerance: float = DEFAULT_SE_TOLERANCE
    symmetric: bool = True
    custom_k: list[int] | None = None

    def to_estimation_config(self) -> EstimationConfig:
        try:
            method = EstimationMethod(self.method)
            se_type = SEType(self.se_type)
            optimizer = (
                None if self.optimizer is None else Optimizer(self.optimizer)
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if len(self.theta_lim) != 2 or len(self.gain) != 2:
            raise ConfigurationError("theta_lim and gain must be pairs")
        return EstimationConfig(
            method=method,
            se=self.se,
            se_type=se_type,
            accelerate=self.accelerate,
            empirical_hist=self.empirical_hist,
            calc_null=self.calc_null,
            random_starts=self.random_starts,
            quadrature=QuadratureConfig(
                n_points=self.quadpts,
                theta_lim=(self.theta_lim[0], self.theta_lim[1]),
                max_quad=self.max_quad,
            ),
            convergence=ConvergenceConfig(
                tolerance=self.tol,
                max_cycles=self.ncycles,
                optimizer=optimizer,
            ),
            mhrm=MHRMConfig(
                burnin=self.burnin,
                semcycles=self.semcycles,
                gain=(self.gain[0], self.gain[1]),
                candidate_widths=(
                    None
                    if self.candidate_widths is None
                    else tuple(self.candidate_widths)
                ),
                draws=self.draws,
            ),
            technical=TechnicalConfig(
                seed=self.seed,
                se_tolerance=self.se_tolerance,
                symmetric=self.symmetric,
                custom_k=(
                    None if self.custom_k is None else tuple(self.custom_k)
                ),
            ),
        )


def load_estimation_config(yaml_path: Path | None) -> EstimationConfig:
    """Load estimation settings from YAML.

    Args:
        yaml_path: Path to YAML config file, or None for defaults.

    Returns:
        EstimationConfig built from the merged settings.

    Raises:
        FileNotFoundError: If yaml_path doesn't exist
        ConfigurationError: If a named method, SE type or optimizer is
            unknown
    """
    schema = OmegaConf.structured(EstimationSettings)

    if yaml_path is not None:
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        user_config = OmegaConf.load(yaml_path)
        config = OmegaConf.merge(schema, user_config)
    else:
        config = schema

    result = OmegaConf.to_object(config)
    assert isinstance(result, EstimationSettings)

    return result.to_estimation_config()
