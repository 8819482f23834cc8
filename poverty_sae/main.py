"""
County Poverty Small-Area Estimation - Main Entry Point.

This module runs the two pipeline halves:
1. Data preparation (COVID-19 aggregation, poverty extract, join, filters)
2. Fay-Herriot fitting with ML, AMRL and robust EBLUP

Usage:
    python -m poverty_sae.main --covid data/us-counties.csv --poverty data/poverty.csv
    python -m poverty_sae.main --demo
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from loguru import logger

from .adapter import ModelFittingAdapter, methods_from_config
from .config import SAEConfig, configure_logging
from .exceptions import PipelineStageError, SAEError
from .models import FitMethod, FittedModel, PreparationResult
from .preparation import DataPreparationPipeline
from .reporting import format_summary, save_diagnostic_plots, save_tables, write_report
from .utils import create_sample_covid_data, create_sample_fips, create_sample_poverty_data


class PovertyEstimationPipeline:
    """
    End-to-end pipeline from raw files to small-area estimates.

    Prepares the modeling subset, fits each configured method and writes
    tables, plots and a markdown report.
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        methods: Optional[List[FitMethod]] = None,
        generate_plots: Optional[bool] = None,
        preparation: Optional[DataPreparationPipeline] = None,
    ):
        """
        Initialize pipeline.

        Args:
            output_dir: Directory for output files
            methods: Method variants to fit (default: from SAEConfig)
            generate_plots: Whether to write diagnostic plots
            preparation: Preparation pipeline (default: configured from SAEConfig)
        """
        self.output_dir = Path(output_dir) if output_dir else SAEConfig.OUTPUT_DIR
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.methods = methods if methods is not None else methods_from_config()
        self.generate_plots = SAEConfig.GENERATE_PLOTS if generate_plots is None else generate_plots
        self.preparation = preparation or DataPreparationPipeline()

        self.preparation_result: Optional[PreparationResult] = None
        self.fits: Dict[str, FittedModel] = {}

        logger.info(f"Initialized pipeline (output: {self.output_dir})")

    def run(self, covid_path: Path, poverty_path: Path) -> Dict[str, FittedModel]:
        """Prepare data from files and fit every method."""
        self.preparation_result = self.preparation.run(covid_path, poverty_path)
        return self._fit_and_report()

    def run_frames(self, covid_data: pd.DataFrame, poverty_data: pd.DataFrame) -> Dict[str, FittedModel]:
        """Prepare data from loaded tables and fit every method."""
        self.preparation_result = self.preparation.run_frames(covid_data, poverty_data)
        return self._fit_and_report()

    def _fit_and_report(self) -> Dict[str, FittedModel]:
        start_time = datetime.now()
        logger.info("=" * 80)
        logger.info("FAY-HERRIOT SMALL-AREA ESTIMATION")
        logger.info("=" * 80)

        adapter = ModelFittingAdapter(self.preparation_result.subset)
        for i, method in enumerate(self.methods, start=1):
            logger.info(f"\n[{i}/{len(self.methods)}] Method: {method.method}")
            stage = f"fit_{method.method}"
            try:
                fitted = adapter.fit(
                    SAEConfig.RESPONSE,
                    SAEConfig.COVARIATES,
                    SAEConfig.VARDIR,
                    SAEConfig.DOMAIN,
                    method,
                )
            except (SAEError, np.linalg.LinAlgError) as e:
                logger.error(f"Stage '{stage}' failed: {type(e).__name__}: {e}")
                raise PipelineStageError(stage, e) from e
            self.fits[method.method] = fitted
            logger.info("\n" + format_summary(fitted))

            save_tables(fitted, self.output_dir)
            if self.generate_plots:
                save_diagnostic_plots(fitted, self.output_dir)

        write_report(self.preparation_result, self.fits, self.output_dir / "report.md")

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.success(f"Fitted {len(self.fits)} methods in {elapsed:.1f}s")
        return self.fits


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Fay-Herriot estimation of county poverty with COVID-19 covariates"
    )
    parser.add_argument("--covid", type=str, help="COVID-19 county time series CSV (county, fips, cases, deaths)")
    parser.add_argument("--poverty", type=str, help="County poverty extract CSV")
    parser.add_argument(
        "--output",
        type=str,
        default=str(SAEConfig.OUTPUT_DIR),
        help=f"Output directory (default: {SAEConfig.OUTPUT_DIR})",
    )
    parser.add_argument("--config", type=str, help="YAML file with configuration overrides")
    parser.add_argument("--methods", type=str, help="Comma-separated methods: ml,amrl,reblup")
    parser.add_argument("--mse", choices=["analytic", "boot", "none"], help="MSE estimation for ml/amrl")
    parser.add_argument("--bootstrap-reps", type=int, help="Bootstrap replicates")
    parser.add_argument("--demo", action="store_true", help="Run on synthetic data")
    parser.add_argument("--no-plots", action="store_true", help="Do not write diagnostic plots")

    args = parser.parse_args(argv)

    if args.config:
        SAEConfig.load_from_yaml(args.config)
    if args.methods:
        SAEConfig.METHODS = [m.strip() for m in args.methods.split(",") if m.strip()]
    if args.mse:
        SAEConfig.MSE_TYPE = args.mse
    if args.bootstrap_reps:
        SAEConfig.BOOTSTRAP_REPS = args.bootstrap_reps

    output_dir = Path(args.output)
    configure_logging(log_file=output_dir / "poverty_sae.log")

    try:
        SAEConfig.validate()
        pipeline = PovertyEstimationPipeline(
            output_dir=output_dir,
            generate_plots=False if args.no_plots else None,
        )

        if args.demo:
            logger.info("Generating synthetic demo data...")
            covid_data = create_sample_covid_data(n_counties=150, seed=SAEConfig.RANDOM_SEED)
            poverty_data = create_sample_poverty_data(
                create_sample_fips(150), covid_data=covid_data, seed=SAEConfig.RANDOM_SEED
            )
            pipeline.run_frames(covid_data, poverty_data)
        else:
            covid_path = args.covid or SAEConfig.COVID_DATA_PATH
            poverty_path = args.poverty or SAEConfig.POVERTY_DATA_PATH
            if not (covid_path and poverty_path):
                logger.error("Must provide --covid and --poverty, or use --demo")
                return 2
            pipeline.run(Path(covid_path), Path(poverty_path))

    except SAEError as e:
        logger.error(f"Run failed: {e}")
        return 1

    logger.info(f"All outputs saved to: {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
