"""
County Poverty Small-Area Estimation with COVID-19 Covariates.

Prepares county-level poverty survey estimates and COVID-19 case counts for
an area-level Fay-Herriot model, then fits the model with:

1. Maximum likelihood (ML)
2. Adjusted maximum residual likelihood (AMRL)
3. Robust EBLUP with a Huber influence function (REBLUP)
"""

__version__ = "1.0.0"
__author__ = "GenZ Small-Area Estimation Team"

from .config import SAEConfig
from .preparation import DataPreparationPipeline
from .adapter import ModelFittingAdapter, build_method
from .fay_herriot import FayHerriotEstimator
from .models import AMRLMethod, FittedModel, MLMethod, PreparationResult, REBLUPMethod

__all__ = [
    'SAEConfig',
    'DataPreparationPipeline',
    'ModelFittingAdapter',
    'build_method',
    'FayHerriotEstimator',
    'MLMethod',
    'AMRLMethod',
    'REBLUPMethod',
    'FittedModel',
    'PreparationResult',
]
