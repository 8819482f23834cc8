"""
Synthetic county data for demos and tests.
"""

from typing import List, Optional

import numpy as np
import pandas as pd
from loguru import logger

from .config import SAEConfig


def create_sample_fips(n_counties: int) -> List[str]:
    """FIPS codes spread over a handful of states."""
    states = ["01", "13", "28", "36", "48", "54"]
    return [f"{states[i % len(states)]}{(2 * (i // len(states)) + 1):03d}" for i in range(n_counties)]


def create_sample_covid_data(
    n_counties: int = 120,
    n_days: int = 30,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Cumulative COVID-19 time series, one row per county per day.

    Counts are non-decreasing within a county. One "Unknown" row without a
    FIPS code is appended, as in the public county files.
    """
    rng = np.random.default_rng(seed)
    fips_codes = create_sample_fips(n_counties)
    dates = pd.date_range("2020-03-01", periods=n_days, freq="D")

    rows = []
    for idx, fips in enumerate(fips_codes):
        daily_cases = rng.poisson(rng.uniform(2, 60), n_days)
        cases = np.cumsum(daily_cases)
        deaths = np.cumsum(rng.binomial(daily_cases, rng.uniform(0.005, 0.04)))
        for date, c, d in zip(dates, cases, deaths):
            rows.append({
                "date": date.strftime("%Y-%m-%d"),
                "county": f"County {idx + 1}",
                "state": f"State {fips[:2]}",
                "fips": fips,
                "cases": int(c),
                "deaths": int(d),
            })

    rows.append({
        "date": dates[-1].strftime("%Y-%m-%d"),
        "county": "Unknown",
        "state": "State 01",
        "fips": None,
        "cases": 10,
        "deaths": 0,
    })

    data = pd.DataFrame(rows)
    logger.info(f"Created {len(data)} synthetic COVID-19 rows for {n_counties} counties")
    return data


def create_sample_poverty_data(
    fips_codes: List[str],
    covid_data: Optional[pd.DataFrame] = None,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    County poverty extract with population text and 90% interval bounds.

    When ``covid_data`` is given, poverty rates are tied to the county case rate
    so that the demo model has signal. Roughly half of the counties fall in the
    poverty tails.
    """
    rng = np.random.default_rng(seed)
    n = len(fips_codes)
    population = rng.integers(2_000, 900_000, n)

    if covid_data is not None:
        cases = covid_data.groupby("fips")["cases"].max().reindex(fips_codes).fillna(0).to_numpy()
        caserate = cases / population
        signal = (caserate - caserate.mean()) / (caserate.std() or 1.0)
    else:
        signal = rng.normal(0, 1, n)

    tail = rng.choice([-1, 0, 1], size=n, p=[0.25, 0.5, 0.25])
    centre = np.where(tail < 0, 3.5, np.where(tail > 0, 36.0, 16.0))
    poverty = np.clip(centre + 2.0 * signal + rng.normal(0, 1.5, n), 0.5, 70.0)

    half_width = SAEConfig.CONFIDENCE_Z * np.sqrt(rng.uniform(0.3, 4.0, n))
    data = pd.DataFrame({
        SAEConfig.POVERTY_ID_COLUMN: fips_codes,
        SAEConfig.POVERTY_NAME_COLUMN: [f"County {i + 1}, State {f[:2]}" for i, f in enumerate(fips_codes)],
        SAEConfig.POVERTY_POPULATION_COLUMN: [f"{p:,}" for p in population],
        SAEConfig.POVERTY_PCT_COLUMN: np.round(poverty, 1),
        SAEConfig.POVERTY_LB90_COLUMN: np.round(np.maximum(poverty - half_width, 0.0), 1),
        SAEConfig.POVERTY_UB90_COLUMN: np.round(poverty + half_width, 1),
        "median_household_income": rng.integers(25_000, 120_000, n),
    })
    logger.info(f"Created synthetic poverty extract for {n} counties")
    return data
