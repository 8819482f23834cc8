"""
Pytest configuration and fixtures for poverty small-area estimation tests
"""

import numpy as np
import pandas as pd
import pytest

from poverty_sae.config import SAEConfig
from poverty_sae.utils import create_sample_covid_data, create_sample_fips, create_sample_poverty_data


@pytest.fixture
def covid_records():
    """Cumulative series for three counties, two of them over several days."""
    return pd.DataFrame({
        "date": ["2020-04-01", "2020-04-02", "2020-04-03", "2020-04-01", "2020-04-02", "2020-04-02"],
        "county": ["Alpha", "Alpha", "Alpha", "Beta", "Beta", "Gamma"],
        "fips": ["01001", "01001", "01001", "01003", "01003", "01005"],
        "cases": [4, 10, 10, 0, 7, 3],
        "deaths": [0, 1, 2, 0, 1, 0],
    })


@pytest.fixture
def poverty_records():
    """Poverty extract in source layout, matching the COVID-19 fixture counties."""
    return pd.DataFrame({
        "county_fips": ["01001", "01003", "01005", "01007"],
        "county_state_name": ["Alpha, AL", "Beta, AL", "Gamma, AL", "Delta, AL"],
        "population": ["1,000", "2,500", "800", "12,345"],
        "poverty_pct": [3.0, 20.0, 40.0, 35.0],
        "poverty_pct_lb90": [2.0, 18.0, 37.0, 30.0],
        "poverty_pct_ub90": [4.0, 22.0, 43.0, 40.0],
    })


@pytest.fixture
def covid_csv(tmp_path, covid_records):
    path = tmp_path / "us-counties.csv"
    covid_records.to_csv(path, index=False)
    return path


@pytest.fixture
def poverty_csv(tmp_path, poverty_records):
    path = tmp_path / "poverty.csv"
    poverty_records.to_csv(path, index=False)
    return path


@pytest.fixture
def modeling_data():
    """Synthetic modeling subset generated from a known Fay-Herriot model."""
    rng = np.random.default_rng(42)
    m = 60
    caserate = rng.uniform(0.01, 0.10, m)
    deathrate = rng.uniform(0.005, 0.04, m)
    var_dir = rng.uniform(0.5, 3.0, m)
    theta = 10.0 + 80.0 * caserate + 100.0 * deathrate + rng.normal(0.0, 2.0, m)
    poverty_pct = theta + rng.normal(0.0, np.sqrt(var_dir))
    return pd.DataFrame({
        "fips": [f"{i:05d}" for i in range(1001, 1001 + m)],
        "poverty_pct": poverty_pct,
        "caserate": caserate,
        "deathrate": deathrate,
        "population": rng.integers(1_000, 100_000, m).astype(float),
        "var_dir": var_dir,
    })


@pytest.fixture
def demo_frames():
    """Synthetic raw COVID-19 series and poverty extract."""
    covid = create_sample_covid_data(n_counties=90, n_days=10, seed=7)
    poverty = create_sample_poverty_data(create_sample_fips(90), covid_data=covid, seed=7)
    return covid, poverty


@pytest.fixture
def restore_config():
    """Restore SAEConfig class attributes changed by a test."""
    saved = {
        name: getattr(SAEConfig, name)
        for name in dir(SAEConfig)
        if name.isupper()
    }
    yield SAEConfig
    for name, value in saved.items():
        setattr(SAEConfig, name, value)
