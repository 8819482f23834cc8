"""
Configuration for the County Poverty Small-Area Estimation pipeline.

Settings are read from environment variables (a local .env file is honoured)
and can be overridden from a YAML file.
"""

import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from .exceptions import ConfigError

load_dotenv()


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class SAEConfig:
    """Central configuration for data preparation and Fay-Herriot fitting."""

    # ═══════════════════════════════════════════════════════════
    # Directory Paths
    # ═══════════════════════════════════════════════════════════
    BASE_DIR = Path(__file__).parent
    DATA_DIR = Path(os.getenv("SAE_DATA_DIR", str(BASE_DIR / "data")))
    OUTPUT_DIR = Path(os.getenv("SAE_OUTPUT_DIR", str(BASE_DIR / "output")))

    # ═══════════════════════════════════════════════════════════
    # Data Source Paths
    # ═══════════════════════════════════════════════════════════
    COVID_DATA_PATH: Optional[Path] = (
        Path(os.environ["COVID_DATA_PATH"]) if os.getenv("COVID_DATA_PATH") else None
    )
    POVERTY_DATA_PATH: Optional[Path] = (
        Path(os.environ["POVERTY_DATA_PATH"]) if os.getenv("POVERTY_DATA_PATH") else None
    )

    # ═══════════════════════════════════════════════════════════
    # Source Columns
    # ═══════════════════════════════════════════════════════════
    COVID_COLUMNS: List[str] = ["county", "fips", "cases", "deaths"]

    POVERTY_ID_COLUMN = os.getenv("POVERTY_ID_COLUMN", "county_fips")
    POVERTY_POPULATION_COLUMN = os.getenv("POVERTY_POPULATION_COLUMN", "population")
    POVERTY_NAME_COLUMN = "county_state_name"
    POVERTY_PCT_COLUMN = "poverty_pct"
    POVERTY_LB90_COLUMN = "poverty_pct_lb90"
    POVERTY_UB90_COLUMN = "poverty_pct_ub90"

    # ═══════════════════════════════════════════════════════════
    # Derived Variables
    # ═══════════════════════════════════════════════════════════
    # Two-sided 90% normal critical value; the survey publishes 90% intervals
    CONFIDENCE_Z = float(os.getenv("CONFIDENCE_Z", "1.645"))

    # Tails of the poverty distribution kept for modeling (percent)
    TAIL_LOWER = float(os.getenv("TAIL_LOWER", "5.5"))
    TAIL_UPPER = float(os.getenv("TAIL_UPPER", "31.0"))

    WORKING_FIELDS: List[str] = ["poverty_pct", "caserate", "deathrate", "population", "var_dir"]

    STRICT_JOIN = os.getenv("STRICT_JOIN", "false").lower() == "true"

    # ═══════════════════════════════════════════════════════════
    # Fay-Herriot Model
    # ═══════════════════════════════════════════════════════════
    RESPONSE = os.getenv("SAE_RESPONSE", "poverty_pct")
    COVARIATES: List[str] = _env_list("SAE_COVARIATES", "caserate,deathrate")
    VARDIR = os.getenv("SAE_VARDIR", "var_dir")
    DOMAIN = os.getenv("SAE_DOMAIN", "fips")

    METHODS: List[str] = _env_list("SAE_METHODS", "ml,amrl,reblup")
    MSE_TYPE = os.getenv("SAE_MSE_TYPE", "analytic")
    REBLUP_MSE_TYPE = os.getenv("SAE_REBLUP_MSE_TYPE", "boot")
    HUBER_K = float(os.getenv("HUBER_K", "1.345"))
    BIAS_CORRECTION_C = float(os.getenv("BIAS_CORRECTION_C", "1.0"))
    BOOTSTRAP_REPS = int(os.getenv("BOOTSTRAP_REPS", "50"))
    RANDOM_SEED = int(os.getenv("RANDOM_SEED", "123"))

    MAX_ITERATIONS = int(os.getenv("SAE_MAX_ITERATIONS", "100"))
    TOLERANCE = float(os.getenv("SAE_TOLERANCE", "1e-6"))

    # ═══════════════════════════════════════════════════════════
    # Reporting
    # ═══════════════════════════════════════════════════════════
    GENERATE_PLOTS = os.getenv("GENERATE_PLOTS", "true").lower() == "true"
    PLOT_DPI = int(os.getenv("PLOT_DPI", "150"))

    # ═══════════════════════════════════════════════════════════
    # Logging
    # ═══════════════════════════════════════════════════════════
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    LOG_FILE = OUTPUT_DIR / "poverty_sae.log"

    @classmethod
    def ensure_directories(cls):
        """Create necessary directories"""
        for dir_path in [cls.DATA_DIR, cls.OUTPUT_DIR]:
            dir_path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def poverty_source_columns(cls) -> Dict[str, str]:
        """Map of poverty source column -> pipeline column name."""
        return {
            cls.POVERTY_ID_COLUMN: "fips",
            cls.POVERTY_NAME_COLUMN: "county_state_name",
            cls.POVERTY_POPULATION_COLUMN: "total_population",
            cls.POVERTY_PCT_COLUMN: "poverty_pct",
            cls.POVERTY_LB90_COLUMN: "poverty_pct_lb90",
            cls.POVERTY_UB90_COLUMN: "poverty_pct_ub90",
        }

    @classmethod
    def load_from_yaml(cls, config_path: str) -> Dict:
        """
        Load configuration overrides from a YAML file.

        Keys are matched case-insensitively against class attributes; unknown
        keys raise ConfigError.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Dictionary with the values that were applied
        """
        with open(config_path, "r") as f:
            values = yaml.safe_load(f) or {}

        if not isinstance(values, dict):
            raise ConfigError(f"YAML config must be a mapping: {config_path}")

        applied = {}
        for key, value in values.items():
            attr = key.upper()
            if not hasattr(cls, attr) or attr.startswith("_"):
                raise ConfigError(f"Unknown configuration key: {key}")
            if attr.endswith("_DIR") or attr.endswith("_PATH") or attr == "LOG_FILE":
                value = Path(value) if value is not None else None
            setattr(cls, attr, value)
            applied[attr] = value

        logger.info(f"Loaded {len(applied)} configuration overrides from {config_path}")
        return applied

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration settings.

        Returns:
            True if configuration is valid

        Raises:
            ConfigError: If configuration is invalid
        """
        errors = []

        if cls.CONFIDENCE_Z <= 0:
            errors.append("CONFIDENCE_Z must be positive")

        if cls.TAIL_LOWER > cls.TAIL_UPPER:
            errors.append("TAIL_LOWER must be <= TAIL_UPPER")

        unknown = [m for m in cls.METHODS if m not in ("ml", "amrl", "reblup")]
        if unknown:
            errors.append(f"Unknown estimation methods: {unknown}")

        if cls.MSE_TYPE not in ("analytic", "boot", "none"):
            errors.append("MSE_TYPE must be one of analytic, boot, none")

        # reblup always estimates MSE
        if cls.REBLUP_MSE_TYPE not in ("analytic", "boot"):
            errors.append("REBLUP_MSE_TYPE must be one of analytic, boot")

        if cls.HUBER_K <= 0:
            errors.append("HUBER_K must be positive")

        if cls.BIAS_CORRECTION_C < 0:
            errors.append("BIAS_CORRECTION_C must be non-negative")

        if cls.BOOTSTRAP_REPS < 1:
            errors.append("BOOTSTRAP_REPS must be >= 1")

        if not cls.COVARIATES:
            errors.append("At least one covariate is required")

        if errors:
            raise ConfigError("; ".join(errors))

        return True

    @classmethod
    def summary(cls) -> dict:
        """Return configuration summary"""
        return {
            "data": {
                "covid_path": str(cls.COVID_DATA_PATH) if cls.COVID_DATA_PATH else None,
                "poverty_path": str(cls.POVERTY_DATA_PATH) if cls.POVERTY_DATA_PATH else None,
                "output_dir": str(cls.OUTPUT_DIR),
            },
            "preparation": {
                "confidence_z": cls.CONFIDENCE_Z,
                "tail_lower": cls.TAIL_LOWER,
                "tail_upper": cls.TAIL_UPPER,
                "strict_join": cls.STRICT_JOIN,
            },
            "model": {
                "response": cls.RESPONSE,
                "covariates": cls.COVARIATES,
                "vardir": cls.VARDIR,
                "domain": cls.DOMAIN,
                "methods": cls.METHODS,
                "mse_type": cls.MSE_TYPE,
                "reblup_mse_type": cls.REBLUP_MSE_TYPE,
                "huber_k": cls.HUBER_K,
                "bias_correction_c": cls.BIAS_CORRECTION_C,
                "bootstrap_reps": cls.BOOTSTRAP_REPS,
                "seed": cls.RANDOM_SEED,
            },
        }


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None):
    """Route loguru output to stderr and, optionally, a log file."""
    logger.remove()
    logger.add(sys.stderr, format=SAEConfig.LOG_FORMAT, level=level or SAEConfig.LOG_LEVEL)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, format=SAEConfig.LOG_FORMAT, level="DEBUG")


if __name__ == "__main__":
    import json
    print("Poverty SAE Configuration")
    print("=" * 60)
    print(json.dumps(SAEConfig.summary(), indent=2))
    print("\nValidation:", "PASSED" if SAEConfig.validate() else "FAILED")
