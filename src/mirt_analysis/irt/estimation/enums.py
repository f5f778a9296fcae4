from enum import Enum


class ConvergenceStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EstimationMethod(str, Enum):
    EM = "EM"
    MHRM = "MHRM"


class SEType(str, Enum):
    FISHER = "Fisher"
    BL = "BL"
    COMPLETE = "complete"
    SEM = "SEM"
    MHRM = "MHRM"
    CROSSPROD = "crossprod"
    LOUIS = "Louis"
    SANDWICH = "sandwich"


class ScoringMethod(str, Enum):
    EAP = "EAP"
    MAP = "MAP"
    ML = "ML"
    WLE = "WLE"
    EAPSUM = "EAPsum"


class Optimizer(str, Enum):
    BFGS = "BFGS"
    LBFGSB = "L-BFGS-B"
    NELDER_MEAD = "Nelder-Mead"


class EMState(str, Enum):
    INIT = "init"
    E_STEP = "e_step"
    M_STEP = "m_step"
    CONVERGENCE_CHECK = "convergence_check"
    DONE = "done"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"


class MHRMStage(str, Enum):
    BURNIN = "burnin"
    STOCHASTIC_IMPUTATION = "stochastic_imputation"
    ROBBINS_MONRO_UPDATE = "robbins_monro_update"
    SE_ACCUMULATION = "se_accumulation"
    DONE = "done"
