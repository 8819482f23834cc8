"""
Tests for report generation
"""

import pytest

from poverty_sae.fay_herriot import FayHerriotEstimator
from poverty_sae.models import MLMethod, REBLUPMethod
from poverty_sae.preparation import DataPreparationPipeline
from poverty_sae.reporting import (
    format_summary,
    generate_markdown,
    save_diagnostic_plots,
    save_tables,
    stage_table,
    write_report,
)

FORMULA = "poverty_pct ~ caserate + deathrate"


@pytest.fixture
def ml_fit(modeling_data):
    return FayHerriotEstimator(MLMethod()).fit(FORMULA, modeling_data, "var_dir", "fips")


@pytest.fixture
def preparation(covid_records, poverty_records):
    return DataPreparationPipeline().run_frames(covid_records, poverty_records)


class TestFormatSummary:
    """Test the text summary"""

    def test_sections(self, ml_fit):
        text = format_summary(ml_fit)

        assert "Fay-Herriot model (ml)" in text
        assert "Intercept" in text
        assert "Random effect variance" in text
        assert "AIC" in text
        assert "standardized_residuals" in text

    def test_reblup_parameters(self, modeling_data):
        fitted = FayHerriotEstimator(REBLUPMethod(k=1.5, c=2.0, mse_type="analytic")).fit(
            FORMULA, modeling_data, "var_dir", "fips"
        )

        assert "k=1.5" in format_summary(fitted)


class TestOutputs:
    """Test files written to the output directory"""

    def test_diagnostic_plots(self, ml_fit, tmp_path):
        paths = save_diagnostic_plots(ml_fit, tmp_path)

        assert [p.name for p in paths] == ["qq_ml.png", "density_ml.png", "comparison_ml.png"]
        assert all(p.stat().st_size > 0 for p in paths)

    def test_tables(self, ml_fit, tmp_path):
        estimates_path, coefficients_path = save_tables(ml_fit, tmp_path)

        assert estimates_path.name == "estimates_ml.csv"
        assert "FH_MSE" in estimates_path.read_text().splitlines()[0]
        assert "Intercept" in coefficients_path.read_text()

    def test_stage_table(self, preparation):
        table = stage_table(preparation)

        assert list(table.columns) == ["stage", "rows_in", "rows_out", "dropped"]
        assert table.set_index("stage").loc["aggregate_covid", "dropped"] == 0

    def test_markdown_report(self, preparation, ml_fit, tmp_path):
        path = write_report(preparation, {"ml": ml_fit}, tmp_path / "reports" / "report.md")
        text = path.read_text()

        assert text.startswith("# County Poverty Small-Area Estimation Report")
        assert "| join | 4 | 3 | 1 |" in text
        assert "**join_mismatch**: 1" in text
        assert "## Method: ml" in text

    def test_markdown_without_issues(self, preparation):
        preparation.issues.clear()

        assert "No issues recorded." in generate_markdown(preparation, {})
