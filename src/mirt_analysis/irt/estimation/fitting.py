"""
Model fitting entry point.

fit_mirt validates the configuration against the specification, builds the
item set with data-driven starting values, runs the EM or MH-RM estimator,
optionally computes an information matrix, fits the independence model for
fit indices and packages everything into a ConvergedModel.
"""

import dataclasses
import logging
import warnings

import numpy as np
import pandas as pd
from numpy.typing import ArrayLike

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import (
    ConfigurationError,
    NumericDegeneracyWarning,
)
from mirt_analysis.core.parallel import CancellationToken, ParallelExecutor
from mirt_analysis.core.utils import get_rng
from mirt_analysis.irt.diagnostics import compute_fit_statistics
from mirt_analysis.irt.estimation.base import EstimationOutcome
from mirt_analysis.irt.estimation.config import (
    EstimationConfig,
    QuadratureConfig,
)
from mirt_analysis.irt.estimation.data_models import (
    ConvergedModel,
    InformationMatrix,
)
from mirt_analysis.irt.estimation.em import EMEstimator
from mirt_analysis.irt.estimation.enums import EstimationMethod, SEType
from mirt_analysis.irt.estimation.mhrm import MHRMEstimator
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.estimation.quadrature import (
    QuadratureGrid,
    build_quadrature_grid,
)
from mirt_analysis.irt.estimation.specification import (
    ModelSpecification,
    build_item_set,
    null_item_set,
)
from mirt_analysis.irt.estimation.standard_errors import (
    compute_information,
    finalize_information,
)
from mirt_analysis.irt.estimation.starting_values import (
    apply_starting_values,
    random_starting_values,
)

logger = logging.getLogger(__name__)

# Free internal values beyond this magnitude are reported as degenerate
DEGENERATE_VALUE = 30.0


def _as_response_matrix(
    data: ResponseMatrix | pd.DataFrame | ArrayLike,
    custom_k: tuple[int, ...] | None = None,
) -> ResponseMatrix:
    if custom_k is not None:
        # Declared categories: codes are used as given, no recoding.
        if isinstance(data, ResponseMatrix):
            return dataclasses.replace(
                data, n_categories=custom_k, category_levels=()
            )
        if isinstance(data, pd.DataFrame):
            return ResponseMatrix(
                data.to_numpy(dtype=np.float64),
                n_categories=custom_k,
                item_names=tuple(str(c) for c in data.columns),
            )
        return ResponseMatrix(
            np.asarray(data, dtype=np.float64), n_categories=custom_k
        )
    if isinstance(data, ResponseMatrix):
        return data
    if isinstance(data, pd.DataFrame):
        return ResponseMatrix.from_array(
            data.to_numpy(dtype=np.float64),
            item_names=tuple(str(c) for c in data.columns),
        )
    return ResponseMatrix.from_array(data)


def _check_fisher_patterns(
    config: EstimationConfig, data: ResponseMatrix
) -> None:
    if not (config.se and config.se_type == SEType.FISHER):
        return
    n_patterns = 1
    for n_categories in data.n_categories:
        n_patterns *= n_categories
    if n_patterns > config.technical.fisher_max_patterns:
        raise ConfigurationError(
            f"Fisher information needs all {n_patterns} response patterns, "
            f"more than fisher_max_patterns="
            f"{config.technical.fisher_max_patterns}"
        )


def _build_grid(
    config: EstimationConfig, n_factors: int
) -> QuadratureGrid | None:
    """Grid for EM (required) or MH-RM (optional, for SEs and scoring)."""
    try:
        return build_quadrature_grid(
            n_factors,
            config.quadrature,
            n_points=config.resolved_quadpts(n_factors),
        )
    except ConfigurationError:
        if config.method == EstimationMethod.EM:
            raise
        logger.info(
            f"No quadrature grid for {n_factors} factors; grid-based SEs "
            "and scoring are unavailable"
        )
        return None


def _flag_degenerate(
    item_set: ItemParameterSet, outcome: EstimationOutcome
) -> None:
    x = item_set.pack()
    labels = item_set.free_parameter_labels
    degenerate = [
        labels[i] for i in np.flatnonzero(np.abs(x) > DEGENERATE_VALUE)
    ]
    if degenerate:
        message = (
            f"Parameters escaped a sane range (|value| > "
            f"{DEGENERATE_VALUE:g}): {degenerate}"
        )
        logger.warning(message)
        warnings.warn(message, NumericDegeneracyWarning, stacklevel=3)
        outcome.warnings.append(message)


def fit_null_model(
    data: ResponseMatrix,
    item_set: ItemParameterSet,
    config: EstimationConfig,
    patterns: PatternTable | None = None,
    executor: ParallelExecutor | None = None,
) -> tuple[float, int]:
    """
    Fit the independence model: every item intercept free, every slope and
    latent parameter fixed, a single node at the origin.

    Returns:
        (log-likelihood, number of free parameters).
    """
    null = null_item_set(item_set)
    grid = QuadratureGrid(
        theta=np.zeros((1, item_set.n_factors)), weights=np.ones(1)
    )
    null_config = dataclasses.replace(
        config,
        method=EstimationMethod.EM,
        se=False,
        accelerate=False,
        empirical_hist=False,
        quadrature=QuadratureConfig(),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        outcome = EMEstimator(null_config, grid, executor).fit(
            data, null, patterns
        )
    logger.info(f"Null model: LL = {outcome.log_likelihood:.4f}")
    return outcome.log_likelihood, null.n_free_parameters


def fit_mirt(
    data: ResponseMatrix | pd.DataFrame | ArrayLike,
    spec: ModelSpecification | None = None,
    config: EstimationConfig | None = None,
    *,
    pars: pd.DataFrame | None = None,
    executor: ParallelExecutor | None = None,
    cancel: CancellationToken | None = None,
) -> ConvergedModel:
    """
    Fit a MIRT model by marginal maximum likelihood.

    Args:
        data: Responses as a ResponseMatrix, DataFrame or 2D array (NaN
            for missing; arbitrary codes are recoded to 0..K-1 unless
            technical.custom_k declares the categories).
        spec: Model structure. Defaults to a unidimensional model with
            default itemtypes.
        config: Estimation options. Defaults to EM with default settings.
        pars: Edited parameter table (from ConvergedModel.parameter_table
            or a previous fit) supplying starting values, free flags,
            bounds and priors.
        executor: Runs independent per-item, per-respondent and
            per-parameter tasks. Serial when None.
        cancel: Token checked between cycles; a cancelled fit returns its
            best iterate.

    Returns:
        ConvergedModel.

    Raises:
        InputError: If the data or specification is malformed.
        ConfigurationError: If options cannot be combined.
    """
    spec = spec or ModelSpecification()
    config = config or EstimationConfig()
    config.validate(spec.n_factors)
    response_matrix = _as_response_matrix(data, config.technical.custom_k)
    _check_fisher_patterns(config, response_matrix)

    item_set = build_item_set(spec, response_matrix)
    apply_starting_values(item_set, response_matrix)
    if config.random_starts:
        random_starting_values(item_set, get_rng(config.technical.seed))
    if pars is not None:
        item_set = item_set.with_frame(pars)
    patterns = response_matrix.tabulate()
    grid = _build_grid(config, spec.n_factors)

    logger.info(
        f"Fitting {response_matrix.n_items} items, "
        f"{response_matrix.n_respondents} respondents, "
        f"{spec.n_factors} factor(s) with {config.method.value}"
    )
    outcome: EstimationOutcome
    if config.method == EstimationMethod.EM:
        outcome = EMEstimator(config, grid, executor, cancel).fit(
            response_matrix, item_set, patterns
        )
    else:
        outcome = MHRMEstimator(config, executor, cancel).fit(
            response_matrix,
            item_set,
            collect_information=config.se and config.se_type == SEType.MHRM,
        )
    _flag_degenerate(outcome.item_set, outcome)

    null_ll: float | None = None
    null_k: int | None = None
    if config.calc_null and not response_matrix.has_missing:
        null_ll, null_k = fit_null_model(
            response_matrix, outcome.item_set, config, patterns, executor
        )

    model = ConvergedModel(
        item_set=outcome.item_set,
        data=response_matrix,
        patterns=patterns,
        grid=grid,
        config=config,
        status=outcome.status,
        log_likelihood=outcome.log_likelihood,
        n_iterations=outcome.n_iterations,
        log_likelihood_trace=tuple(outcome.log_likelihood_trace),
        empirical_weights=outcome.empirical_weights,
        fit_statistics=compute_fit_statistics(
            outcome.log_likelihood,
            outcome.item_set.n_free_parameters,
            patterns,
            null_ll,
            null_k,
        ),
        null_log_likelihood=null_ll,
        failed_items=frozenset(outcome.failed_items),
        warnings=tuple(outcome.warnings),
        history=tuple(outcome.history),
    )

    if config.se:
        information: InformationMatrix
        if outcome.information is not None:
            information = finalize_information(
                outcome.information,
                SEType.MHRM,
                model.item_set.free_parameter_labels,
                config.technical.symmetric,
            )
        else:
            information = compute_information(
                model, se_type=config.se_type, executor=executor
            )
        model = model.with_information(information)
        if not information.is_positive_definite:
            model = dataclasses.replace(
                model,
                warnings=model.warnings
                + (
                    f"{information.se_type.value} information matrix is not "
                    "positive definite",
                ),
            )
    return model
