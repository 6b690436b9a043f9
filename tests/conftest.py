"""
Shared fixtures: a synthetic purchase-card ledger with three well-separated
client groups.

- A: large Amazon purchases on Saturdays (education)
- B: small ASDA purchases mid-week (adults)
- C: mid-sized Travelodge stays on the last day of the month (place)
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from pcard_segments.data_cleaning import reduce_categories, flag_transactions
from pcard_segments.features import build_client_features, feature_kinds
from pcard_segments.dissimilarity import gower_distance_matrix

GROUPS = [
    {"prefix": "A", "merchant": "AMAZON UK MARKETPLACE", "category": "Books & Publications",
     "directorate": "Education", "mu": 400.0, "sd": 40.0, "when": "saturday"},
    {"prefix": "B", "merchant": "ASDA STORES 4123", "category": "Food",
     "directorate": "Adults", "mu": 15.0, "sd": 2.0, "when": "wednesday"},
    {"prefix": "C", "merchant": "TRAVELODGE BIRMINGHAM", "category": "Travel",
     "directorate": "Place", "mu": 90.0, "sd": 8.0, "when": "month_end"},
]


def _dates(when: str, n: int):
    if when == "saturday":
        return [pd.Timestamp("2019-01-05") + pd.Timedelta(weeks=i) for i in range(n)]
    if when == "wednesday":
        return [pd.Timestamp("2019-01-09") + pd.Timedelta(weeks=i) for i in range(n)]
    return [pd.Timestamp(2019, 1 + i % 12, 1) + pd.offsets.MonthEnd(0) for i in range(n)]


def make_transactions(n_per_group: int = 15, n_tx: int = 20, seed: int = 0) -> pd.DataFrame:
    """Clean, canonical transactions (what clean_transactions returns)."""
    rng = np.random.default_rng(seed)
    rows = []
    for g in GROUPS:
        for i in range(n_per_group):
            client = f"{g['prefix']}{i:03d}"
            for d in _dates(g["when"], n_tx):
                rows.append({
                    "date": d,
                    "amount": round(float(rng.normal(g["mu"], g["sd"])), 2),
                    "client_id": client,
                    "merchant": g["merchant"].lower(),
                    "category": g["category"].lower(),
                    "cost_centre": "cc1",
                    "directorate": g["directorate"].lower(),
                })
    return pd.DataFrame(rows)


@pytest.fixture(scope="module")
def transactions():
    return make_transactions()


@pytest.fixture(scope="module")
def flagged(transactions):
    reduced, _ = reduce_categories(transactions)
    out, _ = flag_transactions(reduced)
    return out


@pytest.fixture(scope="module")
def client_features(flagged):
    return build_client_features(flagged)


@pytest.fixture(scope="module")
def kinds(client_features):
    return feature_kinds(client_features)


@pytest.fixture(scope="module")
def distance(client_features, kinds):
    return gower_distance_matrix(client_features, kinds, tag="test")


@pytest.fixture(scope="module")
def group_of():
    """Client id -> true synthetic group."""
    return lambda ids: pd.Series([i[0] for i in ids], index=ids)
