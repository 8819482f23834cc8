"""
End-to-end tests for the estimation pipeline and command line entry point
"""

import pandas as pd
import pytest

from poverty_sae.exceptions import PipelineStageError
from poverty_sae.main import PovertyEstimationPipeline, main
from poverty_sae.models import MLMethod, REBLUPMethod


class TestPovertyEstimationPipeline:
    """Test preparation followed by fitting"""

    def test_demo_frames(self, demo_frames, tmp_path):
        covid, poverty = demo_frames
        pipeline = PovertyEstimationPipeline(
            output_dir=tmp_path,
            methods=[MLMethod(), REBLUPMethod(k=1.345, c=1.0, mse_type="boot", bootstrap_reps=3, seed=1)],
            generate_plots=False,
        )

        fits = pipeline.run_frames(covid, poverty)

        assert set(fits) == {"ml", "reblup"}
        assert fits["ml"].n_domains == pipeline.preparation_result.n_domains
        assert (tmp_path / "report.md").exists()
        estimates = pd.read_csv(tmp_path / "estimates_reblup.csv", dtype={"domain": str})
        assert set(estimates["domain"]) == set(pipeline.preparation_result.subset["fips"])

    def test_fit_failure_names_stage(self, covid_csv, poverty_csv, tmp_path):
        """Test that two modeling domains cannot support three coefficients"""
        pipeline = PovertyEstimationPipeline(output_dir=tmp_path, methods=[MLMethod()], generate_plots=False)

        with pytest.raises(PipelineStageError) as exc_info:
            pipeline.run(covid_csv, poverty_csv)

        assert exc_info.value.stage == "fit_ml"


class TestMain:
    """Test the command line entry point"""

    def test_demo_run(self, tmp_path, restore_config):
        exit_code = main([
            "--demo",
            "--output", str(tmp_path),
            "--methods", "ml,amrl",
            "--mse", "analytic",
            "--no-plots",
        ])

        assert exit_code == 0
        assert (tmp_path / "estimates_ml.csv").exists()
        assert (tmp_path / "coefficients_amrl.csv").exists()
        assert "## Method: amrl" in (tmp_path / "report.md").read_text()

    def test_demo_run_with_plots(self, tmp_path, restore_config):
        exit_code = main(["--demo", "--output", str(tmp_path), "--methods", "ml"])

        assert exit_code == 0
        assert (tmp_path / "qq_ml.png").exists()

    def test_missing_inputs(self, tmp_path, restore_config):
        restore_config.COVID_DATA_PATH = None
        restore_config.POVERTY_DATA_PATH = None

        assert main(["--output", str(tmp_path)]) == 2

    def test_missing_file(self, tmp_path, poverty_csv, restore_config):
        exit_code = main([
            "--covid", str(tmp_path / "absent.csv"),
            "--poverty", str(poverty_csv),
            "--output", str(tmp_path),
        ])

        assert exit_code == 1

    def test_invalid_method(self, tmp_path, restore_config):
        assert main(["--demo", "--output", str(tmp_path), "--methods", "bayes"]) == 1
