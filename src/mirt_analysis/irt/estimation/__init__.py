"""
IRT model estimation module.

This module provides infrastructure for estimating multidimensional Item
Response Theory models by marginal maximum likelihood.

Key components:
- EstimationConfig: Configuration for estimation
- ModelSpecification: Model structure (factors, itemtypes, constraints)
- fit_mirt: Fit a model with the EM or MH-RM estimator
- ConvergedModel: Output from estimation
- compute_information: Standard-error information matrices
- fscores: EAP, MAP, ML, WLE and EAPsum trait scoring
"""

from mirt_analysis.irt.estimation.abilities import FactorScores, fscores
from mirt_analysis.irt.estimation.config import (
    ConvergenceConfig,
    EstimationConfig,
    MHRMConfig,
    QuadratureConfig,
    TechnicalConfig,
    load_estimation_config,
)
from mirt_analysis.irt.estimation.data_models import (
    ConvergedModel,
    FitSummary,
    InformationMatrix,
)
from mirt_analysis.irt.estimation.em import EMEstimator
from mirt_analysis.irt.estimation.enums import (
    ConvergenceStatus,
    EstimationMethod,
    Optimizer,
    ScoringMethod,
    SEType,
)
from mirt_analysis.irt.estimation.fitting import fit_mirt
from mirt_analysis.irt.estimation.mhrm import MHRMEstimator
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
)
from mirt_analysis.irt.estimation.quadrature import (
    QuadratureGrid,
    build_quadrature_grid,
)
from mirt_analysis.irt.estimation.specification import (
    ModelSpecification,
    ParameterReference,
    PriorSpecification,
)
from mirt_analysis.irt.estimation.standard_errors import compute_information

__all__ = [
    "ConvergedModel",
    "ConvergenceConfig",
    "ConvergenceStatus",
    "EMEstimator",
    "EstimationConfig",
    "EstimationMethod",
    "FactorScores",
    "FitSummary",
    "GroupDistribution",
    "InformationMatrix",
    "ItemParameterSet",
    "MHRMConfig",
    "MHRMEstimator",
    "ModelSpecification",
    "Optimizer",
    "ParameterReference",
    "PriorSpecification",
    "QuadratureConfig",
    "QuadratureGrid",
    "SEType",
    "ScoringMethod",
    "TechnicalConfig",
    "build_quadrature_grid",
    "compute_information",
    "fit_mirt",
    "fscores",
    "load_estimation_config",
]
