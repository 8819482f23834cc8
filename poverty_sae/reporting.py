"""
Report Generation for Fay-Herriot fits.

This module generates:
- Text summaries (coefficients, variance component, fit, normality)
- Diagnostic plots (Q-Q, kernel density, direct vs model comparisons)
- A markdown report with the preparation stage accounting
- CSV tables of estimates and coefficients
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Union

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
import statsmodels.api as sm
from loguru import logger

from .config import SAEConfig
from .models import FittedModel, PreparationResult

sns.set_style("whitegrid")


def format_summary(fitted: FittedModel) -> str:
    """Plain-text summary of a fitted model."""
    lines = [
        f"Fay-Herriot model ({fitted.method})",
        "=" * 72,
        f"Formula: {fitted.formula}",
        f"Domains: {fitted.n_domains}    Iterations: {fitted.iterations}    "
        f"Converged: {fitted.converged}",
    ]
    if fitted.metadata:
        lines.append("Parameters: " + ", ".join(f"{k}={v}" for k, v in fitted.metadata.items()))

    coefs = fitted.coefficients.copy()
    lines += ["", "Coefficients:", coefs.to_string(float_format=lambda v: f"{v:.6g}")]
    lines.append("Signif. codes: 0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")

    gof = fitted.goodness_of_fit
    lines += [
        "",
        f"Random effect variance: {fitted.random_effect_variance:.6g}",
        f"Log-likelihood: {gof['loglik']:.4f}    AIC: {gof['aic']:.4f}    BIC: {gof['bic']:.4f}",
        f"Adjusted R2 (FH): {gof['adjusted_r2']:.4f}    Adjusted R2 (OLS): {gof['ols_adjusted_r2']:.4f}",
        f"Mean shrinkage factor: {gof['mean_shrinkage']:.4f}",
        "",
        "Normality of residuals and random effects:",
        fitted.normality.to_string(float_format=lambda v: f"{v:.4f}"),
        "",
        f"Estimates (MSE: {fitted.mse_type or 'not estimated'}):",
        fitted.estimates[["Direct", "FH", "Direct_CV", "FH_CV"]]
        .describe()
        .loc[["mean", "min", "50%", "max"]]
        .to_string(float_format=lambda v: f"{v:.4f}"),
    ]
    return "\n".join(lines)


# ============================================================================
# Plots
# ============================================================================

def plot_qq(fitted: FittedModel, save_path: Path) -> Path:
    """Q-Q plots of standardized residuals and random effects."""
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    for ax, values, title in zip(
        axes,
        (fitted.residuals, fitted.random_effects),
        ("Standardized residuals", "Random effects"),
    ):
        sm.qqplot(np.asarray(values), line="45", ax=ax)
        ax.set_title(f"{title} ({fitted.method})")
    fig.tight_layout()
    fig.savefig(save_path, dpi=SAEConfig.PLOT_DPI)
    plt.close(fig)
    return save_path


def plot_density(fitted: FittedModel, save_path: Path) -> Path:
    """Kernel densities of residuals and random effects against N(0, 1)."""
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    grid = np.linspace(-4, 4, 200)
    for ax, values, title in zip(
        axes,
        (fitted.residuals, fitted.random_effects),
        ("Standardized residuals", "Random effects"),
    ):
        values = np.asarray(values)
        if len(values) > 1 and np.std(values) > 0:
            sns.kdeplot(x=values, ax=ax, fill=True, label="Kernel density")
        ax.plot(grid, np.exp(-grid ** 2 / 2) / np.sqrt(2 * np.pi), "k--", label="Standard normal")
        ax.set_title(f"{title} ({fitted.method})")
        ax.legend()
    fig.tight_layout()
    fig.savefig(save_path, dpi=SAEConfig.PLOT_DPI)
    plt.close(fig)
    return save_path


def plot_comparison(fitted: FittedModel, save_path: Path) -> Path:
    """Direct vs model estimates, and CV by domain ordered by sampling variance."""
    est = fitted.estimates.sort_values("Direct_MSE").reset_index(drop=True)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    ax = axes[0]
    ax.scatter(est["Direct"], est["FH"], alpha=0.7)
    lims = [
        float(np.nanmin([est["Direct"].min(), est["FH"].min()])),
        float(np.nanmax([est["Direct"].max(), est["FH"].max()])),
    ]
    ax.plot(lims, lims, "r--", linewidth=1)
    ax.set_xlabel("Direct estimate")
    ax.set_ylabel("Model estimate")
    ax.set_title(f"Direct vs {fitted.method} estimates")

    ax = axes[1]
    ax.plot(est.index, est["Direct_CV"], marker="o", linestyle="-", label="Direct")
    if est["FH_CV"].notna().any():
        ax.plot(est.index, est["FH_CV"], marker="s", linestyle="-", label="Model")
    ax.set_xlabel("Domain (ordered by sampling variance)")
    ax.set_ylabel("Coefficient of variation")
    ax.set_title("CV comparison")
    ax.legend()

    fig.tight_layout()
    fig.savefig(save_path, dpi=SAEConfig.PLOT_DPI)
    plt.close(fig)
    return save_path


def save_diagnostic_plots(fitted: FittedModel, output_dir: Union[str, Path]) -> List[Path]:
    """Write Q-Q, density and comparison plots; returns their paths."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = [
        plot_qq(fitted, output_dir / f"qq_{fitted.method}.png"),
        plot_density(fitted, output_dir / f"density_{fitted.method}.png"),
        plot_comparison(fitted, output_dir / f"comparison_{fitted.method}.png"),
    ]
    logger.info(f"Saved {len(paths)} plots for {fitted.method} to {output_dir}")
    return paths


# ============================================================================
# Tables and report
# ============================================================================

def save_tables(fitted: FittedModel, output_dir: Union[str, Path]) -> List[Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    estimates_path = output_dir / f"estimates_{fitted.method}.csv"
    coefficients_path = output_dir / f"coefficients_{fitted.method}.csv"
    fitted.estimates.to_csv(estimates_path, index=False)
    fitted.coefficients.to_csv(coefficients_path)
    return [estimates_path, coefficients_path]


def stage_table(preparation: PreparationResult) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "stage": report.stage,
            "rows_in": report.rows_in,
            "rows_out": report.rows_out,
            "dropped": 0 if report.aggregation else report.dropped,
        }
        for report in preparation.stages
    ])


def generate_markdown(preparation: PreparationResult, fits: Dict[str, FittedModel]) -> str:
    md = f"""# County Poverty Small-Area Estimation Report

**Generated**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
**Modeling domains**: {preparation.n_domains}

## Data Preparation

| Stage | Rows in | Rows out | Dropped |
|---|---:|---:|---:|
"""
    for _, row in stage_table(preparation).iterrows():
        md += f"| {row['stage']} | {row['rows_in']} | {row['rows_out']} | {row['dropped']} |\n"

    md += "\n## Data Quality Issues\n\n"
    counts = preparation.issue_counts()
    if counts:
        for issue_type, count in sorted(counts.items()):
            md += f"- **{issue_type}**: {count}\n"
    else:
        md += "No issues recorded.\n"

    for method, fitted in fits.items():
        md += f"\n## Method: {method}\n\n```\n{format_summary(fitted)}\n```\n"

    return md


def write_report(
    preparation: PreparationResult,
    fits: Dict[str, FittedModel],
    output_path: Union[str, Path],
) -> Path:
    """Write the markdown report to ``output_path``."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(generate_markdown(preparation, fits))
    logger.info(f"Report saved to: {output_path}")
    return output_path
