"""
Data preparation stages for county poverty small-area estimation.

Each stage takes a DataFrame and returns a new one; inputs are never modified.
Stages that can flag individual counties append RowIssue records to an
optional ``issues`` list instead of aborting the run.

Order matters: later stages read columns produced by earlier ones.

    aggregate_covid -> select_and_rename -> derive_variance -> join_tables
    -> normalize_population -> derive_rates -> drop_missing -> filter_tails
"""

import math
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from loguru import logger

from .config import SAEConfig
from .data_ingestion import CovidTimeSeriesIngester, PovertyExtractIngester, load_sources
from .exceptions import (
    DomainError,
    JoinMismatch,
    ParseError,
    PipelineStageError,
    SAEError,
    SchemaError,
)
from .models import (
    COVID_SUMMARY_COLUMNS,
    POVERTY_COLUMNS,
    IssueType,
    PreparationResult,
    RowIssue,
    StageReport,
)


def _is_missing(value) -> bool:
    if value is None or value is pd.NA:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


# ============================================================================
# Scalar helpers
# ============================================================================

def compute_direct_variance(poverty_pct: float, ub90: float, z: float = 1.645) -> float:
    """
    Sampling variance of the direct estimate from its published upper bound.

    ``var_dir = ((ub90 - poverty_pct) / z) ** 2``, assuming a symmetric normal
    interval with two-sided critical value ``z``. Missing inputs give NaN.

    Raises:
        DomainError: if the variance is zero or not finite
    """
    if z <= 0:
        raise DomainError(f"Critical value must be positive, got {z}")
    if _is_missing(poverty_pct) or _is_missing(ub90):
        return float("nan")

    var_dir = ((float(ub90) - float(poverty_pct)) / z) ** 2
    if not math.isfinite(var_dir) or var_dir <= 0:
        raise DomainError(
            f"Non-positive sampling variance {var_dir} (poverty_pct={poverty_pct}, ub90={ub90})"
        )
    return var_dir


def parse_population(text) -> float:
    """
    Parse a population count that may carry thousands separators.

    >>> parse_population("12,345")
    12345.0

    Raises:
        ParseError: if the text is not a finite number once commas are removed
    """
    if _is_missing(text):
        return float("nan")

    cleaned = str(text).replace(",", "").strip()
    if cleaned == "":
        return float("nan")

    try:
        value = float(cleaned)
    except ValueError:
        raise ParseError(f"Population value is not numeric: {text!r}") from None

    if not math.isfinite(value):
        raise ParseError(f"Population value is not finite: {text!r}")
    return value


def compute_caserate(cases: float, population: float) -> float:
    if _is_missing(cases) or _is_missing(population):
        return float("nan")
    if population == 0:
        raise DomainError("caserate undefined: population is zero")
    return float(cases) / float(population)


def compute_deathrate(deaths: float, cases: float) -> float:
    if _is_missing(deaths) or _is_missing(cases):
        return float("nan")
    if cases == 0:
        raise DomainError("deathrate undefined: cases is zero")
    return float(deaths) / float(cases)


def compute_rates(cases: float, deaths: float, population: float) -> Tuple[float, float]:
    """
    Case rate (cases per person) and death rate (deaths per case).

    Raises:
        DomainError: if cases or population is zero
    """
    deathrate = compute_deathrate(deaths, cases)
    caserate = compute_caserate(cases, population)
    return caserate, deathrate


# ============================================================================
# Table stages
# ============================================================================

STAGE_LOAD = "load"
STAGE_AGGREGATE = "aggregate_covid"
STAGE_SELECT = "select_and_rename"
STAGE_VARIANCE = "derive_variance"
STAGE_JOIN = "join"
STAGE_POPULATION = "normalize_population"
STAGE_RATES = "derive_rates"
STAGE_MISSING = "drop_missing"
STAGE_TAILS = "filter_tails"


def _record(issues: Optional[List[RowIssue]], **kwargs):
    if issues is not None:
        issues.append(RowIssue(**kwargs))


def aggregate_covid(records: pd.DataFrame, issues: Optional[List[RowIssue]] = None) -> pd.DataFrame:
    """
    Collapse the cumulative time series to one row per county.

    ``cases_max`` and ``deaths_max`` are independent maxima and may come from
    different dates. Rows without a FIPS code cannot be joined and are left out.
    """
    missing_cols = [c for c in ("fips", "county", "cases", "deaths") if c not in records.columns]
    if missing_cols:
        raise SchemaError(f"COVID-19 records missing columns: {missing_cols}")

    no_fips = records["fips"].isna()
    if no_fips.any():
        for county in records.loc[no_fips, "county"].astype(str).unique():
            _record(
                issues,
                fips=None,
                stage=STAGE_AGGREGATE,
                issue_type=IssueType.MISSING_FIPS,
                message=f"County '{county}' has no FIPS code",
                excluded=True,
            )

    summary = (
        records.loc[~no_fips]
        .groupby("fips", sort=True)
        .agg(
            county=("county", "first"),
            cases_max=("cases", "max"),
            deaths_max=("deaths", "max"),
        )
        .reset_index()
    )

    violations = summary[summary["deaths_max"] > summary["cases_max"]]
    for _, row in violations.iterrows():
        _record(
            issues,
            fips=row["fips"],
            stage=STAGE_AGGREGATE,
            issue_type=IssueType.DEATHS_EXCEED_CASES,
            message=f"deaths_max={row['deaths_max']} exceeds cases_max={row['cases_max']}",
        )
    if len(violations):
        logger.warning(f"{len(violations)} counties report more deaths than cases")

    return summary[COVID_SUMMARY_COLUMNS]


def select_and_rename(
    poverty_records: pd.DataFrame,
    source_columns: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Project the poverty extract to its six working columns.

    Raises:
        SchemaError: if a source column is absent or a FIPS code repeats
    """
    source_columns = source_columns or SAEConfig.poverty_source_columns()

    missing = [col for col in source_columns if col not in poverty_records.columns]
    if missing:
        raise SchemaError(f"Poverty extract missing columns: {missing}")

    df = poverty_records[list(source_columns)].rename(columns=source_columns)

    duplicated = df["fips"].dropna()
    duplicated = duplicated[duplicated.duplicated()].unique().tolist()
    if duplicated:
        raise SchemaError(f"Poverty extract has duplicate FIPS codes: {duplicated[:10]}")

    return df[POVERTY_COLUMNS].reset_index(drop=True)


def derive_variance(
    records: pd.DataFrame,
    z: Optional[float] = None,
    issues: Optional[List[RowIssue]] = None,
) -> pd.DataFrame:
    """Add ``var_dir``; rows whose variance is not positive get NaN and an issue."""
    z = SAEConfig.CONFIDENCE_Z if z is None else z
    df = records.copy()

    variances = []
    for fips, pct, lb, ub in zip(
        df["fips"], df["poverty_pct"], df["poverty_pct_lb90"], df["poverty_pct_ub90"]
    ):
        if not (_is_missing(pct) or _is_missing(lb) or _is_missing(ub)) and not (lb <= pct <= ub):
            _record(
                issues,
                fips=fips,
                stage=STAGE_VARIANCE,
                issue_type=IssueType.INTERVAL_INCONSISTENT,
                message=f"interval [{lb}, {ub}] does not contain {pct}",
            )
        try:
            variances.append(compute_direct_variance(pct, ub, z))
        except DomainError as e:
            variances.append(float("nan"))
            _record(
                issues,
                fips=fips,
                stage=STAGE_VARIANCE,
                issue_type=IssueType.NON_POSITIVE_VARIANCE,
                message=str(e),
                excluded=True,
            )

    df["var_dir"] = np.asarray(variances, dtype=float)
    return df


def join_tables(
    covid_summaries: pd.DataFrame,
    poverty_records: pd.DataFrame,
    issues: Optional[List[RowIssue]] = None,
    strict: Optional[bool] = None,
) -> pd.DataFrame:
    """
    Inner-join county summaries with poverty records on ``fips``.

    Counties present in only one source are dropped and recorded.

    Raises:
        JoinMismatch: only when strict joining is enabled
    """
    strict = SAEConfig.STRICT_JOIN if strict is None else strict

    covid_keys = set(covid_summaries["fips"].dropna())
    poverty_keys = set(poverty_records["fips"].dropna())
    covid_only = sorted(covid_keys - poverty_keys)
    poverty_only = sorted(poverty_keys - covid_keys)

    if strict and (covid_only or poverty_only):
        raise JoinMismatch(
            f"{len(covid_only)} counties only in COVID-19 data, "
            f"{len(poverty_only)} only in poverty data"
        )

    for side, keys in (("covid", covid_only), ("poverty", poverty_only)):
        for fips in keys:
            _record(
                issues,
                fips=fips,
                stage=STAGE_JOIN,
                issue_type=IssueType.JOIN_MISMATCH,
                message=f"only present in {side} data",
                source=side,
                excluded=True,
            )

    summaries = covid_summaries.rename(columns={"cases_max": "cases", "deaths_max": "deaths"})
    merged = poverty_records.dropna(subset=["fips"]).merge(
        summaries, on="fips", how="inner", validate="one_to_one"
    )
    return merged.reset_index(drop=True)


def normalize_population(records: pd.DataFrame) -> pd.DataFrame:
    """
    Parse ``total_population`` text into a float ``population`` column.

    Raises:
        ParseError: listing every county whose value is not numeric
    """
    df = records.copy()
    parsed = []
    failures = []
    for fips, text in zip(df["fips"], df["total_population"]):
        try:
            parsed.append(parse_population(text))
        except ParseError:
            parsed.append(float("nan"))
            failures.append(f"{fips}={text!r}")

    if failures:
        raise ParseError(f"Non-numeric population for {len(failures)} counties: {failures[:10]}")

    df["population"] = np.asarray(parsed, dtype=float)
    return df


def derive_rates(records: pd.DataFrame, issues: Optional[List[RowIssue]] = None) -> pd.DataFrame:
    """
    Add ``caserate = cases / population`` and ``deathrate = deaths / cases``.

    Undefined rates are set to NaN and recorded per county; those rows are
    removed by ``drop_missing``.
    """
    df = records.copy()
    caserates = []
    deathrates = []

    for fips, cases, deaths, population in zip(df["fips"], df["cases"], df["deaths"], df["population"]):
        try:
            caserates.append(compute_caserate(cases, population))
        except DomainError as e:
            caserates.append(float("nan"))
            _record(issues, fips=fips, stage=STAGE_RATES,
                    issue_type=IssueType.ZERO_POPULATION, message=str(e), excluded=True)
        try:
            deathrates.append(compute_deathrate(deaths, cases))
        except DomainError as e:
            deathrates.append(float("nan"))
            _record(issues, fips=fips, stage=STAGE_RATES,
                    issue_type=IssueType.ZERO_CASES, message=str(e), excluded=True)

    df["caserate"] = np.asarray(caserates, dtype=float)
    df["deathrate"] = np.asarray(deathrates, dtype=float)
    return df


def drop_missing(records: pd.DataFrame, fields: Optional[List[str]] = None) -> pd.DataFrame:
    """Remove rows with a missing or non-finite value in any working field."""
    fields = fields or SAEConfig.WORKING_FIELDS
    absent = [f for f in fields if f not in records.columns]
    if absent:
        raise SchemaError(f"Working fields not present: {absent}")

    values = records[fields].apply(pd.to_numeric, errors="coerce").to_numpy(dtype=float)
    keep = np.isfinite(values).all(axis=1)
    return records.loc[keep].reset_index(drop=True)


def filter_tails(records: pd.DataFrame, lower: float = 5.5, upper: float = 31.0) -> pd.DataFrame:
    """Keep counties with ``poverty_pct < lower`` or ``poverty_pct > upper``."""
    pct = records["poverty_pct"]
    keep = (pct < lower) | (pct > upper)
    logger.info(f"Tail filter kept {int(keep.sum())} counties, removed {int((~keep).sum())}")
    return records.loc[keep].reset_index(drop=True)


# ============================================================================
# Pipeline
# ============================================================================

class DataPreparationPipeline:
    """
    Runs the preparation stages in order and keeps per-stage row accounting.

    Workflow:
    1. Load both sources (schema/parse errors are fatal)
    2. Aggregate COVID-19 series to county maxima
    3. Select and rename poverty columns, derive direct variances
    4. Join on FIPS, parse population, derive rates
    5. Drop incomplete rows, keep the poverty tails
    """

    def __init__(
        self,
        confidence_z: Optional[float] = None,
        tail_lower: Optional[float] = None,
        tail_upper: Optional[float] = None,
        strict_join: Optional[bool] = None,
        source_columns: Optional[Dict[str, str]] = None,
    ):
        self.confidence_z = SAEConfig.CONFIDENCE_Z if confidence_z is None else confidence_z
        self.tail_lower = SAEConfig.TAIL_LOWER if tail_lower is None else tail_lower
        self.tail_upper = SAEConfig.TAIL_UPPER if tail_upper is None else tail_upper
        self.strict_join = SAEConfig.STRICT_JOIN if strict_join is None else strict_join
        self.source_columns = source_columns

    def _stage(self, name: str, func: Callable, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (SAEError, FileNotFoundError, KeyError) as e:
            logger.error(f"Stage '{name}' failed: {type(e).__name__}: {e}")
            raise PipelineStageError(name, e) from e

    def run(
        self,
        covid_path: Union[str, Path],
        poverty_path: Union[str, Path],
    ) -> PreparationResult:
        """
        Load both files and prepare the modeling subset.

        Args:
            covid_path: COVID-19 county time series CSV
            poverty_path: County poverty extract CSV

        Returns:
            PreparationResult with the subset, stage reports and row issues
        """
        logger.info(f"[{STAGE_LOAD}] Loading {covid_path} and {poverty_path}")
        covid_raw, poverty_raw = self._stage(
            STAGE_LOAD, load_sources, covid_path, poverty_path, self.source_columns
        )
        return self._prepare(covid_raw, poverty_raw)

    def run_frames(self, covid_raw: pd.DataFrame, poverty_raw: pd.DataFrame) -> PreparationResult:
        """Prepare the modeling subset from already-loaded raw tables."""
        covid_raw = self._stage(STAGE_LOAD, CovidTimeSeriesIngester().prepare, covid_raw)
        poverty_raw = self._stage(
            STAGE_LOAD, PovertyExtractIngester(self.source_columns).prepare, poverty_raw
        )
        return self._prepare(covid_raw, poverty_raw)

    def _prepare(self, covid_raw: pd.DataFrame, poverty_raw: pd.DataFrame) -> PreparationResult:
        issues: List[RowIssue] = []
        stages: List[StageReport] = []

        summary = self._stage(STAGE_AGGREGATE, aggregate_covid, covid_raw, issues)
        stages.append(StageReport(
            stage=STAGE_AGGREGATE,
            rows_in=len(covid_raw),
            rows_out=len(summary),
            aggregation=True,
            details={"rows_without_fips": int(covid_raw["fips"].isna().sum())},
        ))

        poverty = self._stage(STAGE_SELECT, select_and_rename, poverty_raw, self.source_columns)
        stages.append(StageReport(stage=STAGE_SELECT, rows_in=len(poverty_raw), rows_out=len(poverty)))

        poverty = self._stage(STAGE_VARIANCE, derive_variance, poverty, self.confidence_z, issues)
        stages.append(StageReport(
            stage=STAGE_VARIANCE,
            rows_in=len(poverty),
            rows_out=len(poverty),
            details={"non_positive_variance": int(poverty["var_dir"].isna().sum())},
        ))

        derived = self._stage(STAGE_JOIN, join_tables, summary, poverty, issues, self.strict_join)
        mismatches = [i for i in issues if i.issue_type == IssueType.JOIN_MISMATCH]
        covid_only = sum(1 for i in mismatches if i.source == "covid")
        poverty_only = sum(1 for i in mismatches if i.source == "poverty")
        # counties from either side that could not be matched count as dropped
        stages.append(StageReport(
            stage=STAGE_JOIN,
            rows_in=len(poverty) + covid_only,
            rows_out=len(derived),
            details={"covid_only": covid_only, "poverty_only": poverty_only},
        ))
        if mismatches:
            logger.warning(
                f"Join dropped {len(mismatches)} unmatched counties "
                f"({covid_only} COVID-19 only, {poverty_only} poverty only)"
            )

        derived = self._stage(STAGE_POPULATION, normalize_population, derived)
        stages.append(StageReport(stage=STAGE_POPULATION, rows_in=len(derived), rows_out=len(derived)))

        n_before = len(issues)
        derived = self._stage(STAGE_RATES, derive_rates, derived, issues)
        rate_issues = len(issues) - n_before
        stages.append(StageReport(
            stage=STAGE_RATES,
            rows_in=len(derived),
            rows_out=len(derived),
            details={"undefined_rates": rate_issues},
        ))
        if rate_issues:
            logger.warning(f"{rate_issues} undefined rates recorded; affected counties will be excluded")

        complete = self._stage(STAGE_MISSING, drop_missing, derived)
        stages.append(StageReport(stage=STAGE_MISSING, rows_in=len(derived), rows_out=len(complete)))

        subset = self._stage(STAGE_TAILS, filter_tails, complete, self.tail_lower, self.tail_upper)
        stages.append(StageReport(
            stage=STAGE_TAILS,
            rows_in=len(complete),
            rows_out=len(subset),
            details={"lower": self.tail_lower, "upper": self.tail_upper},
        ))

        for report in stages:
            logger.info(
                f"  {report.stage:<22} in={report.rows_in:>7} out={report.rows_out:>7} "
                f"dropped={report.dropped:>7}"
            )
        logger.info(f"Modeling subset: {len(subset)} counties in the poverty tails")

        return PreparationResult(subset=subset, stages=stages, issues=issues)
