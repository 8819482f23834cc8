"""
Tests for the Fay-Herriot estimator
"""

import numpy as np
import pytest

from poverty_sae.exceptions import DomainError
from poverty_sae.fay_herriot import (
    FayHerriotEstimator,
    adjusted_reml_loglik,
    huber_consistency,
    huber_psi,
    ml_loglik,
)
from poverty_sae.models import AMRLMethod, MLMethod, REBLUPMethod

FORMULA = "poverty_pct ~ caserate + deathrate"


def _arrays(data):
    y = data["poverty_pct"].to_numpy(dtype=float, copy=True)
    X = np.column_stack([np.ones(len(data)), data["caserate"], data["deathrate"]])
    D = data["var_dir"].to_numpy(dtype=float, copy=True)
    return y, X, D


class TestHelpers:
    """Test likelihood and influence function helpers"""

    def test_huber_psi(self):
        np.testing.assert_allclose(huber_psi(np.array([-3.0, 0.5, 2.0]), 1.0), [-1.0, 0.5, 1.0])

    def test_huber_consistency(self):
        """Test E[psi^2] under the standard normal"""
        assert 0.6 < huber_consistency(1.345) < 0.8
        assert huber_consistency(50.0) == pytest.approx(1.0)

    def test_adjusted_likelihood_excludes_zero(self, modeling_data):
        y, X, D = _arrays(modeling_data)
        assert adjusted_reml_loglik(0.0, y, X, D) == -np.inf
        assert np.isfinite(adjusted_reml_loglik(1.0, y, X, D))

    def test_ml_likelihood_finite_at_zero(self, modeling_data):
        y, X, D = _arrays(modeling_data)
        assert np.isfinite(ml_loglik(0.0, y, X, D))


class TestMLFit:
    """Test maximum likelihood fits"""

    @pytest.fixture
    def fitted(self, modeling_data):
        return FayHerriotEstimator(MLMethod()).fit(FORMULA, modeling_data, "var_dir", "fips")

    def test_coefficients(self, fitted):
        assert list(fitted.coefficients.index) == ["Intercept", "caserate", "deathrate"]
        assert list(fitted.coefficients.columns) == [
            "coefficient", "std_error", "z_value", "p_value", "significance",
        ]
        assert (fitted.coefficients["std_error"] > 0).all()

    def test_variance_component(self, fitted):
        assert fitted.random_effect_variance >= 0
        assert fitted.method == "ml"
        assert fitted.n_domains == 60

    def test_estimates_are_shrunk(self, fitted, modeling_data):
        """Test that each EBLUP lies between its direct and synthetic estimate"""
        est = fitted.estimates
        low = np.minimum(est["Direct"], est["synthetic"]) - 1e-9
        high = np.maximum(est["Direct"], est["synthetic"]) + 1e-9

        assert ((est["FH"] >= low) & (est["FH"] <= high)).all()
        assert est["gamma"].between(0, 1).all()
        assert est["domain"].tolist() == modeling_data["fips"].tolist()

    def test_analytic_mse(self, fitted):
        """Test that MSE is positive and at least the leading term"""
        est = fitted.estimates
        assert (est["FH_MSE"] > 0).all()
        assert (est["FH_MSE"] >= est["gamma"] * est["Direct_MSE"] - 1e-12).all()
        assert fitted.mse_type == "analytic"

    def test_goodness_of_fit(self, fitted):
        gof = fitted.goodness_of_fit
        assert gof["aic"] == pytest.approx(-2 * gof["loglik"] + 2 * 4)
        assert gof["bic"] > gof["aic"]
        assert 0 <= gof["mean_shrinkage"] <= 1

    def test_normality_table(self, fitted):
        assert list(fitted.normality.index) == ["standardized_residuals", "random_effects"]
        assert set(fitted.normality.columns) == {"skewness", "kurtosis", "shapiro_w", "shapiro_p"}
        assert len(fitted.residuals) == 60

    def test_no_mse(self, modeling_data):
        fitted = FayHerriotEstimator(MLMethod(mse_type=None)).fit(FORMULA, modeling_data, "var_dir", "fips")

        assert fitted.estimates["FH_MSE"].isna().all()
        assert fitted.mse_type is None


class TestAMRLFit:
    """Test adjusted residual likelihood fits"""

    def test_positive_variance(self, modeling_data):
        fitted = FayHerriotEstimator(AMRLMethod()).fit(FORMULA, modeling_data, "var_dir", "fips")

        assert fitted.random_effect_variance > 0
        assert (fitted.estimates["FH_MSE"] > 0).all()

    def test_bootstrap_reproducible(self, modeling_data):
        """Test that a seeded bootstrap gives the same MSE twice"""
        method = AMRLMethod(mse_type="boot", bootstrap_reps=5, seed=11)

        first = FayHerriotEstimator(method).fit(FORMULA, modeling_data, "var_dir", "fips")
        second = FayHerriotEstimator(method).fit(FORMULA, modeling_data, "var_dir", "fips")

        np.testing.assert_allclose(first.estimates["FH_MSE"], second.estimates["FH_MSE"])
        assert first.metadata["bootstrap_reps"] == 5


class TestREBLUPFit:
    """Test robust EBLUP fits"""

    def test_bootstrap_fit(self, modeling_data):
        method = REBLUPMethod(k=1.345, c=1.0, mse_type="boot", bootstrap_reps=4, seed=3)

        fitted = FayHerriotEstimator(method).fit(FORMULA, modeling_data, "var_dir", "fips")

        assert fitted.method == "reblup"
        assert fitted.random_effect_variance >= 0
        assert "FH_bias_corrected" in fitted.estimates.columns
        assert np.isfinite(fitted.estimates["FH_MSE"]).all()
        assert (fitted.estimates["FH_MSE"] > 0).all()
        assert fitted.metadata["k"] == 1.345

    def test_zero_correction_constant(self, modeling_data):
        """Test that c = 0 leaves the robust predictor unchanged"""
        method = REBLUPMethod(k=1.345, c=0.0, mse_type="analytic")

        fitted = FayHerriotEstimator(method).fit(FORMULA, modeling_data, "var_dir", "fips")

        np.testing.assert_allclose(fitted.estimates["FH_bias_corrected"], fitted.estimates["FH"])

    def test_large_k_matches_ml(self, modeling_data):
        """Test that an unbounded influence function recovers the ML fit"""
        robust = FayHerriotEstimator(REBLUPMethod(k=100.0, c=1.0, mse_type="analytic")).fit(
            FORMULA, modeling_data, "var_dir", "fips"
        )
        ml = FayHerriotEstimator(MLMethod()).fit(FORMULA, modeling_data, "var_dir", "fips")

        assert robust.converged
        assert robust.random_effect_variance == pytest.approx(ml.random_effect_variance, rel=1e-2)
        np.testing.assert_allclose(
            robust.estimates["FH"], ml.estimates["FH"], rtol=1e-2
        )

    def test_robust_to_outlier(self, modeling_data):
        """Test that one gross outlier inflates A less than under ML"""
        data = modeling_data.copy()
        data.loc[0, "poverty_pct"] += 80.0

        robust = FayHerriotEstimator(REBLUPMethod(k=1.345, c=1.0, mse_type="analytic")).fit(
            FORMULA, data, "var_dir", "fips"
        )
        ml = FayHerriotEstimator(MLMethod()).fit(FORMULA, data, "var_dir", "fips")

        assert robust.random_effect_variance < ml.random_effect_variance


class TestEstimatorErrors:
    """Test degenerate inputs"""

    def test_too_few_domains(self, modeling_data):
        with pytest.raises(DomainError):
            FayHerriotEstimator(MLMethod()).fit(FORMULA, modeling_data.head(3), "var_dir", "fips")

    def test_non_positive_variance(self, modeling_data):
        y, X, D = _arrays(modeling_data)
        D[0] = 0.0

        with pytest.raises(DomainError):
            FayHerriotEstimator(MLMethod()).estimate(y, X, D)
