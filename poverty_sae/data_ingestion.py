"""
Data Ingestion Module for the poverty small-area estimation pipeline.
Loads the COVID-19 county time series and the county poverty survey extract.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd
from loguru import logger

from .config import SAEConfig
from .exceptions import ParseError, SchemaError


def normalize_fips(series: pd.Series) -> pd.Series:
    """
    Normalize county identifiers to 5-character zero-padded strings.

    Numeric renderings such as ``1001`` or ``1001.0`` become ``"01001"``.
    Blank values become missing.
    """
    text = series.astype("string").str.strip()
    text = text.str.replace(r"\.0+$", "", regex=True)
    text = text.mask(text.isin(["", "nan", "NaN", "<NA>", "None"]))
    return text.str.zfill(5)


class TableIngester(ABC):
    """Base class for flat-file ingesters"""

    def __init__(self, source_name: str):
        self.source_name = source_name

    @property
    @abstractmethod
    def required_columns(self) -> List[str]:
        """Columns that must be present in the source file"""

    @abstractmethod
    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        """Ingest data from source"""

    def read(self, data_path: Union[str, Path], dtype: Optional[dict] = None) -> pd.DataFrame:
        data_path = Path(data_path)
        if not data_path.exists():
            raise FileNotFoundError(f"{self.source_name} file not found: {data_path}")

        if data_path.suffix.lower() == ".csv":
            df = pd.read_csv(data_path, dtype=dtype)
        elif data_path.suffix.lower() in [".xlsx", ".xls"]:
            df = pd.read_excel(data_path, dtype=dtype)
        else:
            raise SchemaError(f"Unsupported file format for {self.source_name}: {data_path.suffix}")

        df.columns = df.columns.str.strip()
        logger.info(f"Read {len(df)} rows from {data_path}")
        return df

    def validate(self, df: pd.DataFrame) -> Tuple[bool, List[str]]:
        """Validate ingested data"""
        errors = [
            f"Missing required column: {col}"
            for col in self.required_columns
            if col not in df.columns
        ]
        return len(errors) == 0, errors

    def check_schema(self, df: pd.DataFrame):
        is_valid, errors = self.validate(df)
        if not is_valid:
            raise SchemaError(f"{self.source_name}: " + "; ".join(errors))


class CovidTimeSeriesIngester(TableIngester):
    """
    Ingester for cumulative COVID-19 county counts

    Expected format (one row per county per date):
    - county
    - fips
    - cases (cumulative)
    - deaths (cumulative)
    """

    def __init__(self):
        super().__init__("COVID-19 time series")

    @property
    def required_columns(self) -> List[str]:
        return list(SAEConfig.COVID_COLUMNS)

    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        df = self.read(data_path, dtype={"fips": str})
        return self.prepare(df)

    def prepare(self, df: pd.DataFrame) -> pd.DataFrame:
        """Coerce types on an already-loaded time series."""
        self.check_schema(df)
        df = df.copy()
        df["fips"] = normalize_fips(df["fips"])

        for col in ("cases", "deaths"):
            values = pd.to_numeric(df[col], errors="coerce")
            bad = values.isna() & df[col].notna()
            if bad.any():
                sample = df.loc[bad, col].astype(str).unique()[:5].tolist()
                raise ParseError(f"{self.source_name}: non-numeric {col} values {sample}")
            if (values < 0).any():
                raise ParseError(f"{self.source_name}: negative cumulative {col} counts")
            df[col] = values

        return df.reset_index(drop=True)


class PovertyExtractIngester(TableIngester):
    """
    Ingester for the county poverty survey extract

    Expected format (one row per county): identifier, county/state name,
    population as text, poverty percent and its 90% interval bounds.

    Args:
        source_columns: Map of source column -> pipeline column name
            (default: SAEConfig.poverty_source_columns())
    """

    def __init__(self, source_columns: Optional[Dict[str, str]] = None):
        super().__init__("Poverty extract")
        self.source_columns = source_columns or SAEConfig.poverty_source_columns()
        self._by_target = {target: source for source, target in self.source_columns.items()}

    @property
    def required_columns(self) -> List[str]:
        return list(self.source_columns.keys())

    def source_column(self, target: str) -> str:
        """Source column that feeds pipeline column ``target``."""
        try:
            return self._by_target[target]
        except KeyError:
            raise SchemaError(f"{self.source_name}: no source column mapped to '{target}'") from None

    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        # population stays text; separators are stripped later in the pipeline
        df = self.read(
            data_path,
            dtype={
                self.source_column("fips"): str,
                self.source_column("total_population"): str,
            },
        )
        return self.prepare(df)

    def prepare(self, df: pd.DataFrame) -> pd.DataFrame:
        self.check_schema(df)
        df = df.copy()
        id_column = self.source_column("fips")
        df[id_column] = normalize_fips(df[id_column])

        for target in ("poverty_pct", "poverty_pct_lb90", "poverty_pct_ub90"):
            col = self.source_column(target)
            values = pd.to_numeric(df[col], errors="coerce")
            bad = values.isna() & df[col].notna()
            if bad.any():
                sample = df.loc[bad, col].astype(str).unique()[:5].tolist()
                raise ParseError(f"{self.source_name}: non-numeric {col} values {sample}")
            df[col] = values

        return df.reset_index(drop=True)


def load_sources(
    covid_path: Union[str, Path],
    poverty_path: Union[str, Path],
    poverty_columns: Optional[Dict[str, str]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Load and type both raw tables."""
    covid = CovidTimeSeriesIngester().ingest(covid_path)
    poverty = PovertyExtractIngester(poverty_columns).ingest(poverty_path)
    logger.info(f"Loaded {len(covid)} COVID-19 rows and {len(poverty)} poverty rows")
    return covid, poverty
