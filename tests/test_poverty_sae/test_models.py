"""
Tests for Data Models
Validates Pydantic models for issues, stage reports and method variants
"""

import pandas as pd
import pytest
from pydantic import TypeAdapter, ValidationError

from poverty_sae.exceptions import PipelineStageError, SchemaError
from poverty_sae.models import (
    AMRLMethod,
    FitMethod,
    IssueType,
    MLMethod,
    MSEType,
    PreparationResult,
    REBLUPMethod,
    RowIssue,
    StageReport,
)


class TestRowIssue:
    """Test RowIssue model"""

    def test_defaults(self):
        issue = RowIssue(stage="join", issue_type=IssueType.JOIN_MISMATCH)

        assert issue.fips is None
        assert issue.excluded is False
        assert issue.message == ""

    def test_issue_type_from_string(self):
        issue = RowIssue(fips="01001", stage="derive_rates", issue_type="zero_cases", excluded=True)

        assert issue.issue_type == IssueType.ZERO_CASES


class TestStageReport:
    """Test StageReport model"""

    def test_dropped(self):
        report = StageReport(stage="filter_tails", rows_in=10, rows_out=4)

        assert report.dropped == 6
        assert report.aggregation is False

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            StageReport(stage="join", rows_in=-1, rows_out=0)


class TestMethodVariants:
    """Test the tagged method union"""

    def test_discriminator(self):
        adapter = TypeAdapter(FitMethod)

        assert isinstance(adapter.validate_python({"method": "ml"}), MLMethod)
        assert isinstance(adapter.validate_python({"method": "amrl"}), AMRLMethod)
        method = adapter.validate_python({"method": "reblup", "k": 2.0, "c": 0.5, "mse_type": "analytic"})
        assert isinstance(method, REBLUPMethod)
        assert method.mse_type == MSEType.ANALYTIC

    def test_reblup_requires_mse_type(self):
        with pytest.raises(ValidationError):
            REBLUPMethod(k=1.345, c=1.0)

    def test_unknown_tag(self):
        with pytest.raises(ValidationError):
            TypeAdapter(FitMethod).validate_python({"method": "reml"})

    def test_frozen(self):
        method = MLMethod()

        with pytest.raises(ValidationError):
            method.tol = 0.1


class TestPreparationResult:
    """Test PreparationResult accounting"""

    def test_counts(self):
        result = PreparationResult(
            subset=pd.DataFrame({"fips": ["01001", "01005"]}),
            stages=[
                StageReport(stage="aggregate_covid", rows_in=6, rows_out=3, aggregation=True),
                StageReport(stage="join", rows_in=4, rows_out=3),
            ],
            issues=[
                RowIssue(fips="01007", stage="join", issue_type=IssueType.JOIN_MISMATCH, excluded=True),
            ],
        )

        assert result.drop_counts() == {"join": 1}
        assert result.issue_counts() == {"join_mismatch": 1}
        assert result.n_domains == 2


class TestPipelineStageError:
    """Test the stage error wrapper"""

    def test_message_names_stage(self):
        error = PipelineStageError("select_and_rename", SchemaError("missing poverty_pct"))

        assert error.stage == "select_and_rename"
        assert isinstance(error.cause, SchemaError)
        assert "select_and_rename" in str(error)
        assert "SchemaError" in str(error)
