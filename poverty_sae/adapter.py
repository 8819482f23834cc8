"""
Model fitting adapter.

Checks that a modeling subset and a method selection are usable and then
delegates to the Fay-Herriot estimator. No statistics are computed here.
"""

from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from .config import SAEConfig
from .exceptions import ConfigError, DomainError
from .fay_herriot import FayHerriotEstimator
from .models import FitMethod, FittedModel

_METHOD_ADAPTER = TypeAdapter(FitMethod)


def build_method(name: str, **params: Any) -> FitMethod:
    """
    Turn a method name and parameters into a validated method variant.

    >>> build_method("reblup", k=1.345, c=1.0, mse_type="boot")

    Raises:
        ConfigError: for an unknown method or missing/invalid parameters
    """
    if name not in ("ml", "amrl", "reblup"):
        raise ConfigError(f"Unknown estimation method: {name!r}")
    params = {key: value for key, value in params.items() if not (value is None and key != "mse_type")}
    if params.get("mse_type") == "none":
        params["mse_type"] = None
    try:
        return _METHOD_ADAPTER.validate_python({"method": name, **params})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or name}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid parameters for method '{name}': {problems}") from None


def methods_from_config() -> List[FitMethod]:
    """Method variants for every method named in SAEConfig.METHODS."""
    methods = []
    for name in SAEConfig.METHODS:
        params: Dict[str, Any] = {
            "bootstrap_reps": SAEConfig.BOOTSTRAP_REPS,
            "seed": SAEConfig.RANDOM_SEED,
            "max_iter": SAEConfig.MAX_ITERATIONS,
            "tol": SAEConfig.TOLERANCE,
        }
        if name == "reblup":
            params.update(k=SAEConfig.HUBER_K, c=SAEConfig.BIAS_CORRECTION_C, mse_type=SAEConfig.REBLUP_MSE_TYPE)
        else:
            params["mse_type"] = SAEConfig.MSE_TYPE
        methods.append(build_method(name, **params))
    return methods


class ModelFittingAdapter:
    """
    Thin wrapper that validates inputs before calling the estimator.

    Example:
        >>> adapter = ModelFittingAdapter(result.subset)
        >>> fitted = adapter.fit("poverty_pct", ["caserate", "deathrate"], "var_dir", "fips", MLMethod())
    """

    def __init__(self, data: pd.DataFrame):
        self.data = data

    def validate_fields(self, response: str, covariates: List[str], vardir: str, domain: str):
        if not covariates:
            raise ConfigError("At least one covariate is required")

        fields = [response, *covariates, vardir, domain]
        missing = [f for f in fields if f not in self.data.columns]
        if missing:
            raise ConfigError(f"Fields not present in modeling data: {missing}")

        if self.data.empty:
            raise DomainError("Modeling data is empty")

        if self.data[domain].duplicated().any():
            raise DomainError(f"Domain identifiers in '{domain}' are not unique")

        numeric = self.data[[response, *covariates, vardir]].apply(pd.to_numeric, errors="coerce")
        if not np.isfinite(numeric.to_numpy(dtype=float)).all():
            raise DomainError("Response, covariates and variances must be finite numbers")

        if (numeric[vardir] <= 0).any():
            raise DomainError(f"Sampling variances in '{vardir}' must be positive")

    @staticmethod
    def build_formula(response: str, covariates: List[str]) -> str:
        return f"{response} ~ " + " + ".join(covariates)

    def fit(
        self,
        response: str,
        covariates: List[str],
        vardir: str,
        domain: str,
        method: Union[FitMethod, Dict[str, Any]],
    ) -> FittedModel:
        """
        Fit a Fay-Herriot model on the modeling subset.

        Args:
            response: Direct estimate column
            covariates: Auxiliary covariate columns
            vardir: Known sampling variance column
            domain: Domain identifier column
            method: Method variant, or a mapping with a ``method`` key

        Returns:
            FittedModel from the estimator

        Raises:
            ConfigError: missing fields or method parameters
            DomainError: duplicated domains or unusable values
        """
        if isinstance(method, dict):
            params = dict(method)
            method = build_method(params.pop("method", None), **params)

        self.validate_fields(response, covariates, vardir, domain)
        formula = self.build_formula(response, covariates)
        logger.info(f"Delegating {method.method} fit for {len(self.data)} domains")
        return FayHerriotEstimator(method).fit(formula, self.data, vardir, domain)

    def fit_all(
        self,
        methods: Optional[List[FitMethod]] = None,
        response: Optional[str] = None,
        covariates: Optional[List[str]] = None,
        vardir: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> Dict[str, FittedModel]:
        """Fit every method with the configured field names."""
        methods = methods if methods is not None else methods_from_config()
        return {
            method.method: self.fit(
                response or SAEConfig.RESPONSE,
                covariates or SAEConfig.COVARIATES,
                vardir or SAEConfig.VARDIR,
                domain or SAEConfig.DOMAIN,
                method,
            )
            for method in methods
        }
