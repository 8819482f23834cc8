"""
Fay-Herriot Area-Level Model.

This module fits the area-level small-area model

    y_i = x_i' beta + u_i + e_i,   u_i ~ N(0, A),   e_i ~ N(0, D_i)

where y_i is the direct survey estimate for domain i and D_i its known
sampling variance. The random-effect variance A is estimated by one of:

1. Maximum likelihood (ML)
2. Adjusted maximum residual likelihood (AMRL), which keeps A > 0
3. Robust estimating equations with a Huber influence function (REBLUP)

Predictions are EBLUPs with analytic (Prasad-Rao) or parametric bootstrap MSE.

Reference:
- Fay & Herriot (1979). "Estimates of Income for Small Places"
- Prasad & Rao (1990); Datta & Lahiri (2000) for MSE approximations
- Li & Lahiri (2010). "An adjusted maximum likelihood method..."
- Sinha & Rao (2009). "Robust small area estimation"
- Lahiri & Suntornchost (2015) for the adjusted R²
"""

from typing import NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from loguru import logger
from scipy import optimize, stats

from .exceptions import DomainError
from .models import FitMethod, FittedModel, MLMethod, MSEType, REBLUPMethod


class _Estimates(NamedTuple):
    beta: np.ndarray
    cov_beta: np.ndarray
    A: float
    synthetic: np.ndarray
    theta: np.ndarray
    u: np.ndarray
    iterations: int
    converged: bool
    theta_bc: Optional[np.ndarray] = None


# ============================================================================
# Likelihoods and helpers
# ============================================================================

def gls_beta(y: np.ndarray, X: np.ndarray, V: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Weighted least squares coefficients and their covariance for variances V."""
    w = 1.0 / V
    cov = np.linalg.inv(X.T @ (X * w[:, None]))
    beta = cov @ (X.T @ (w * y))
    return beta, cov


def ml_loglik(A: float, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> float:
    """Profile log-likelihood of A with beta at its GLS value."""
    V = A + D
    beta, _ = gls_beta(y, X, V)
    r = y - X @ beta
    return float(-0.5 * (np.sum(np.log(2 * np.pi * V)) + np.sum(r ** 2 / V)))


def reml_loglik(A: float, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> float:
    """Residual (restricted) log-likelihood of A."""
    m, p = X.shape
    V = A + D
    beta, _ = gls_beta(y, X, V)
    r = y - X @ beta
    _, logdet = np.linalg.slogdet(X.T @ (X / V[:, None]))
    return float(-0.5 * (
        (m - p) * np.log(2 * np.pi) + np.sum(np.log(V)) + logdet + np.sum(r ** 2 / V)
    ))


def adjusted_reml_loglik(A: float, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> float:
    """Li-Lahiri adjusted residual likelihood: log A + REML log-likelihood."""
    if A <= 0:
        return -np.inf
    return float(np.log(A) + reml_loglik(A, y, X, D))


def huber_psi(x: np.ndarray, k: float) -> np.ndarray:
    return np.clip(x, -k, k)


def huber_consistency(k: float) -> float:
    """E[psi_k(Z)^2] for standard normal Z."""
    Phi, phi = stats.norm.cdf(k), stats.norm.pdf(k)
    return float(2 * Phi - 1 - 2 * k * phi + 2 * k ** 2 * (1 - Phi))


def _safe_ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.asarray(num, dtype=float) / np.abs(np.asarray(den, dtype=float))
    out[~np.isfinite(out)] = np.nan
    return out


def _significance(p: float) -> str:
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    if p < 0.1:
        return "."
    return ""


# ============================================================================
# Estimator
# ============================================================================

class FayHerriotEstimator:
    """
    Fay-Herriot model fitted with a fixed estimation method.

    Example:
        >>> estimator = FayHerriotEstimator(MLMethod())
        >>> fitted = estimator.fit("poverty_pct ~ caserate + deathrate", df, "var_dir", "fips")
        >>> fitted.estimates[["domain", "Direct", "FH", "FH_CV"]]
    """

    def __init__(self, method: FitMethod):
        self.method = method

    # ------------------------------------------------------------------
    # Variance component and coefficients
    # ------------------------------------------------------------------

    def _variance_upper_bound(self, y: np.ndarray, D: np.ndarray) -> float:
        return float(max(10.0 * np.var(y), 10.0 * np.max(D), 1.0))

    def _fit_likelihood(self, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> _Estimates:
        if self.method.method == "ml":
            objective = ml_loglik
        else:
            objective = adjusted_reml_loglik

        upper = self._variance_upper_bound(y, D)
        result = optimize.minimize_scalar(
            lambda a: -objective(a, y, X, D),
            bounds=(0.0, upper),
            method="bounded",
            options={"xatol": self.method.tol, "maxiter": self.method.max_iter},
        )
        A = float(result.x)

        # the bounded search never lands exactly on the boundary
        if self.method.method == "ml" and ml_loglik(0.0, y, X, D) >= -result.fun:
            A = 0.0

        V = A + D
        beta, cov = gls_beta(y, X, V)
        synthetic = X @ beta
        gamma = A / V
        theta = synthetic + gamma * (y - synthetic)
        return _Estimates(
            beta=beta,
            cov_beta=cov,
            A=A,
            synthetic=synthetic,
            theta=theta,
            u=theta - synthetic,
            iterations=int(result.nfev),
            converged=bool(result.success),
        )

    @staticmethod
    def _robust_variance(e: np.ndarray, D: np.ndarray, k: float, K: float, upper: float) -> float:
        def equation(A: float) -> float:
            V = A + D
            psi = huber_psi(e / np.sqrt(V), k)
            return float(np.sum((psi ** 2 - K) / V))

        if equation(0.0) <= 0:
            return 0.0
        hi = upper
        for _ in range(60):
            if equation(hi) < 0:
                break
            hi *= 2.0
        return float(optimize.brentq(equation, 0.0, hi))

    @staticmethod
    def _robust_random_effect(e: float, d: float, A: float, k: float) -> float:
        if A <= 0 or e == 0:
            return 0.0
        sd, sa = np.sqrt(d), np.sqrt(A)

        def equation(u: float) -> float:
            return float(huber_psi((e - u) / sd, k) / sd - huber_psi(u / sa, k) / sa)

        lo, hi = sorted((0.0, float(e)))
        return float(optimize.brentq(equation, lo, hi))

    def _fit_robust(self, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> _Estimates:
        method: REBLUPMethod = self.method
        k = method.k
        K = huber_consistency(k)
        upper = self._variance_upper_bound(y, D)

        # start from the ML solution
        start = FayHerriotEstimator(
            MLMethod(mse_type=None, tol=method.tol, max_iter=method.max_iter)
        )._fit_likelihood(y, X, D)
        beta, A = start.beta, start.A

        converged = False
        iteration = 0
        for iteration in range(1, method.max_iter + 1):
            V = A + D
            sv = np.sqrt(V)
            r = (y - X @ beta) / sv
            psi = huber_psi(r, k)
            dpsi = (np.abs(r) <= k).astype(float)

            H = X.T @ (X * (dpsi / V)[:, None])
            g = X.T @ (psi / sv)
            step = np.linalg.lstsq(H, g, rcond=None)[0]
            beta_new = beta + step
            A_new = self._robust_variance(y - X @ beta_new, D, k, K, upper)

            delta = max(float(np.max(np.abs(beta_new - beta))), abs(A_new - A))
            beta, A = beta_new, A_new
            if delta < method.tol:
                converged = True
                break

        if not converged:
            logger.warning(f"Robust estimating equations did not converge in {method.max_iter} iterations")

        V = A + D
        _, cov = gls_beta(y, X, V)
        synthetic = X @ beta
        residual = y - synthetic
        u = np.array([
            self._robust_random_effect(e, d, A, k) for e, d in zip(residual, D)
        ])
        theta = synthetic + u
        sd = np.sqrt(D)
        theta_bc = theta + sd * huber_psi((y - theta) / sd, method.c)

        return _Estimates(
            beta=beta,
            cov_beta=cov,
            A=float(A),
            synthetic=synthetic,
            theta=theta,
            u=u,
            iterations=iteration,
            converged=converged,
            theta_bc=theta_bc,
        )

    def estimate(self, y: np.ndarray, X: np.ndarray, D: np.ndarray) -> _Estimates:
        """Estimate beta, A and the EBLUPs for arrays y, X, D."""
        m, p = X.shape
        if m <= p:
            raise DomainError(f"Need more domains than coefficients (domains={m}, coefficients={p})")
        if np.any(D <= 0):
            raise DomainError("Sampling variances must be positive")

        if self.method.method == "reblup":
            return self._fit_robust(y, X, D)
        return self._fit_likelihood(y, X, D)

    # ------------------------------------------------------------------
    # MSE
    # ------------------------------------------------------------------

    def analytic_mse(self, X: np.ndarray, D: np.ndarray, A: float) -> np.ndarray:
        """
        Second-order MSE approximation g1 + g2 + 2*g3.

        For ML the Datta-Lahiri bias correction of A is added.
        """
        V = A + D
        gamma = A / V
        inv_info = np.linalg.inv(X.T @ (X / V[:, None]))
        g1 = gamma * D
        g2 = (1 - gamma) ** 2 * np.einsum("ij,jk,ik->i", X, inv_info, X)
        var_A = 2.0 / np.sum(1.0 / V ** 2)
        g3 = D ** 2 / V ** 3 * var_A
        mse = g1 + g2 + 2 * g3

        if self.method.method == "ml":
            bias_A = -np.trace(inv_info @ (X.T @ (X / (V ** 2)[:, None]))) / np.sum(1.0 / V ** 2)
            mse = mse - bias_A * (D / V) ** 2

        return mse

    def bootstrap_mse(self, X: np.ndarray, D: np.ndarray, fit: _Estimates) -> np.ndarray:
        """
        Parametric bootstrap MSE (Gonzalez-Manteiga et al.).

        Replicates draw u* ~ N(0, A), e* ~ N(0, D), refit with the same method,
        and average the squared prediction errors.
        """
        rng = np.random.default_rng(self.method.seed)
        reps = self.method.bootstrap_reps
        squared_error = np.zeros(len(D))
        completed = 0

        logger.info(f"Bootstrapping MSE with {reps} replicates ({self.method.method})")
        for b in range(reps):
            theta_star = fit.synthetic + rng.normal(0.0, np.sqrt(fit.A), len(D))
            y_star = theta_star + rng.normal(0.0, np.sqrt(D))
            try:
                replicate = self.estimate(y_star, X, D)
            except (np.linalg.LinAlgError, ValueError, RuntimeError) as e:
                logger.warning(f"Bootstrap replicate {b} failed: {e}")
                continue
            squared_error += (replicate.theta - theta_star) ** 2
            completed += 1

        if completed == 0:
            raise DomainError("All bootstrap replicates failed")
        if completed < reps:
            logger.warning(f"{reps - completed} of {reps} bootstrap replicates failed")

        return squared_error / completed

    # ------------------------------------------------------------------
    # Fit
    # ------------------------------------------------------------------

    def fit(self, formula: str, data: pd.DataFrame, vardir: str, domain: str) -> FittedModel:
        """
        Fit the model.

        Args:
            formula: Patsy formula, e.g. ``"poverty_pct ~ caserate + deathrate"``
            data: One row per domain
            vardir: Column with the known sampling variances
            domain: Column with the domain identifiers

        Returns:
            FittedModel with coefficients, estimates, MSE and diagnostics
        """
        design = smf.ols(formula, data=data)
        y = np.asarray(design.endog, dtype=float)
        X = np.asarray(design.exog, dtype=float)
        names = list(design.exog_names)
        if len(y) != len(data):
            raise DomainError(f"Formula dropped {len(data) - len(y)} rows with missing values")

        D = data[vardir].to_numpy(dtype=float)
        domains = data[domain].to_numpy()
        m, p = X.shape

        logger.info(f"Fitting Fay-Herriot model ({self.method.method}) on {m} domains: {formula}")
        fit = self.estimate(y, X, D)
        if not fit.converged:
            logger.warning(f"Fay-Herriot fit ({self.method.method}) did not converge")

        # Coefficients
        se = np.sqrt(np.diag(fit.cov_beta))
        z = fit.beta / se
        pvalues = 2 * stats.norm.sf(np.abs(z))
        coefficients = pd.DataFrame({
            "coefficient": fit.beta,
            "std_error": se,
            "z_value": z,
            "p_value": pvalues,
            "significance": [_significance(pv) for pv in pvalues],
        }, index=pd.Index(names, name="term"))

        # MSE
        mse_type = self.method.mse_type
        if mse_type == MSEType.ANALYTIC:
            mse = self.analytic_mse(X, D, fit.A)
        elif mse_type == MSEType.BOOT:
            mse = self.bootstrap_mse(X, D, fit)
        else:
            mse = np.full(m, np.nan)

        gamma = fit.A / (fit.A + D)
        estimates = pd.DataFrame({
            "domain": domains,
            "Direct": y,
            "Direct_MSE": D,
            "Direct_CV": _safe_ratio(np.sqrt(D), y),
            "FH": fit.theta,
            "FH_MSE": mse,
            "FH_CV": _safe_ratio(np.sqrt(mse), fit.theta),
            "synthetic": fit.synthetic,
            "gamma": gamma,
            "random_effect": fit.u,
        })
        if fit.theta_bc is not None:
            estimates["FH_bias_corrected"] = fit.theta_bc

        # Diagnostics
        residuals = self._standardize((y - fit.theta) / np.sqrt(D))
        random_effects = self._standardize(fit.u, center=False)
        normality = pd.DataFrame(
            [self._normality(residuals), self._normality(random_effects)],
            index=pd.Index(["standardized_residuals", "random_effects"], name="series"),
        )

        loglik = float(-0.5 * (
            np.sum(np.log(2 * np.pi * (fit.A + D))) + np.sum((y - fit.synthetic) ** 2 / (fit.A + D))
        ))
        n_params = p + 1
        goodness_of_fit = {
            "loglik": loglik,
            "aic": -2 * loglik + 2 * n_params,
            "bic": -2 * loglik + np.log(m) * n_params,
            "adjusted_r2": self._adjusted_r2(y, X, D),
            "ols_adjusted_r2": float(sm.OLS(y, X).fit().rsquared_adj),
            "mean_shrinkage": float(np.mean(gamma)),
        }

        metadata = {}
        if isinstance(self.method, REBLUPMethod):
            metadata.update({"k": self.method.k, "c": self.method.c})
        if mse_type == MSEType.BOOT:
            metadata["bootstrap_reps"] = self.method.bootstrap_reps

        return FittedModel(
            method=self.method.method,
            formula=formula,
            coefficients=coefficients,
            random_effect_variance=fit.A,
            estimates=estimates,
            residuals=residuals,
            random_effects=random_effects,
            normality=normality,
            goodness_of_fit=goodness_of_fit,
            n_domains=m,
            iterations=fit.iterations,
            converged=fit.converged,
            mse_type=mse_type.value if mse_type is not None else None,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def _standardize(values: np.ndarray, center: bool = True) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if center:
            values = values - values.mean()
        sd = values.std(ddof=1) if len(values) > 1 else 0.0
        if sd == 0 or not np.isfinite(sd):
            return np.zeros_like(values)
        return values / sd

    @staticmethod
    def _normality(values: np.ndarray) -> dict:
        if len(values) < 3 or np.allclose(values, values[0]):
            return {"skewness": np.nan, "kurtosis": np.nan, "shapiro_w": np.nan, "shapiro_p": np.nan}
        w, p = stats.shapiro(values)
        return {
            "skewness": float(stats.skew(values)),
            "kurtosis": float(stats.kurtosis(values, fisher=False)),
            "shapiro_w": float(w),
            "shapiro_p": float(p),
        }

    @staticmethod
    def _adjusted_r2(y: np.ndarray, X: np.ndarray, D: np.ndarray) -> float:
        """Lahiri-Suntornchost R² that removes the sampling variance from both sums of squares."""
        m, p = X.shape
        ols = sm.OLS(y, X).fit()
        residual_ms = ols.ssr / (m - p) - np.mean(D)
        total_ms = np.sum((y - y.mean()) ** 2) / (m - 1) - np.mean(D)
        if total_ms <= 0:
            return float("nan")
        return float(1 - residual_ms / total_ms)
