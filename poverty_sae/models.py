"""
Data models for the poverty small-area estimation pipeline.

Pydantic models describe issues, stage reports and the estimation method
variants; dataclasses hold the DataFrame-backed results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field


# Column layout of the intermediate tables
COVID_SUMMARY_COLUMNS = ["fips", "county", "cases_max", "deaths_max"]
POVERTY_COLUMNS = [
    "fips",
    "county_state_name",
    "total_population",
    "poverty_pct",
    "poverty_pct_lb90",
    "poverty_pct_ub90",
]


class IssueType(str, Enum):
    """Kinds of row-level data quality issues"""
    DEATHS_EXCEED_CASES = "deaths_exceed_cases"
    INTERVAL_INCONSISTENT = "interval_inconsistent"
    NON_POSITIVE_VARIANCE = "non_positive_variance"
    JOIN_MISMATCH = "join_mismatch"
    ZERO_POPULATION = "zero_population"
    ZERO_CASES = "zero_cases"
    MISSING_FIPS = "missing_fips"


class MSEType(str, Enum):
    """How per-domain MSE is estimated"""
    ANALYTIC = "analytic"
    BOOT = "boot"


class RowIssue(BaseModel):
    """A data quality issue attached to one county"""

    fips: Optional[str] = Field(None, description="County identifier, if known")
    stage: str = Field(..., description="Pipeline stage that raised the issue")
    issue_type: IssueType
    message: str = Field("", description="Human-readable detail")
    excluded: bool = Field(False, description="Whether the row is removed from the modeling subset")
    source: Optional[str] = Field(None, description="Only table holding the county, for join mismatches")


class StageReport(BaseModel):
    """Row accounting for one preparation stage"""

    stage: str
    rows_in: int = Field(..., ge=0)
    rows_out: int = Field(..., ge=0)
    aggregation: bool = Field(False, description="Rows were collapsed by grouping, not dropped")
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def dropped(self) -> int:
        return self.rows_in - self.rows_out


# ============================================================================
# Estimation method variants
# ============================================================================

class _MethodBase(BaseModel):
    mse_type: Optional[MSEType] = Field(MSEType.ANALYTIC, description="MSE estimation, None to skip")
    bootstrap_reps: int = Field(50, ge=1, description="Bootstrap replicates when mse_type is boot")
    seed: Optional[int] = Field(None, description="Random seed for the bootstrap")
    max_iter: int = Field(100, ge=1)
    tol: float = Field(1e-6, gt=0)

    model_config = {"frozen": True}


class MLMethod(_MethodBase):
    """Maximum likelihood estimation of the random-effect variance"""
    method: Literal["ml"] = "ml"


class AMRLMethod(_MethodBase):
    """Adjusted maximum residual likelihood (Li & Lahiri)"""
    method: Literal["amrl"] = "amrl"


class REBLUPMethod(_MethodBase):
    """Robust EBLUP (Sinha & Rao) with Huber influence function"""
    method: Literal["reblup"] = "reblup"
    k: float = Field(..., gt=0, description="Huber tuning constant for the robust equations")
    c: float = Field(..., ge=0, description="Huber constant of the bias-corrected predictor")
    mse_type: MSEType = Field(..., description="MSE estimation mode")


FitMethod = Annotated[Union[MLMethod, AMRLMethod, REBLUPMethod], Field(discriminator="method")]


# ============================================================================
# Results
# ============================================================================

@dataclass
class PreparationResult:
    """Modeling subset plus the accounting of how it was reached"""
    subset: pd.DataFrame
    stages: List[StageReport]
    issues: List[RowIssue] = field(default_factory=list)

    def drop_counts(self) -> Dict[str, int]:
        return {
            report.stage: report.dropped
            for report in self.stages
            if not report.aggregation
        }

    def issue_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for issue in self.issues:
            key = issue.issue_type.value
            counts[key] = counts.get(key, 0) + 1
        return counts

    @property
    def n_domains(self) -> int:
        return len(self.subset)


@dataclass
class FittedModel:
    """Output of a Fay-Herriot fit"""
    method: str
    formula: str
    coefficients: pd.DataFrame
    random_effect_variance: float
    estimates: pd.DataFrame
    residuals: np.ndarray
    random_effects: np.ndarray
    normality: pd.DataFrame
    goodness_of_fit: Dict[str, float]
    n_domains: int
    iterations: int = 0
    converged: bool = True
    mse_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
