# Client-level feature table built from flagged transactions
import numpy as np
import pandas as pd
from typing import Dict, List, Sequence

from .config import FLAG_COLUMNS, MODE_FIELDS, MAX_CATEGORY_LEVELS
from .errors import SchemaViolationError

CONTINUOUS = "continuous"
CATEGORICAL = "categorical"
KEY = "client_id"


def mode_first_encountered(values: pd.Series):
    """Most frequent value; ties go to whichever value appears first in record order."""
    if values.empty:
        raise SchemaViolationError("Cannot take the mode of an entity with no records")
    counts = values.value_counts(dropna=False)
    winners = set(counts[counts == counts.max()].index)
    for v in values:
        if v in winners:
            return v


def _top_values(records: pd.DataFrame, field: str) -> pd.Series:
    """Vectorised mode_first_encountered for every client at once."""
    tally = (
        records[[KEY, field]]
        .assign(_pos=np.arange(len(records)))
        .groupby([KEY, field], sort=False, dropna=False)["_pos"]
        .agg(["size", "min"])
        .reset_index()
        .sort_values([KEY, "size", "min"], ascending=[True, False, True], kind="mergesort")
    )
    return tally.drop_duplicates(KEY).set_index(KEY)[field]


def build_client_features(flagged: pd.DataFrame,
                          categorical_fields: Sequence[str] = MODE_FIELDS,
                          flag_columns: Sequence[str] = FLAG_COLUMNS) -> pd.DataFrame:
    """
    Aggregate flagged transactions to one feature row per client.

    Args:
        flagged: Output of flag_transactions, in original record order
        categorical_fields: Fields summarised by their per-client mode
        flag_columns: Boolean predicate columns to count and average

    Returns:
        pd.DataFrame indexed by client_id with n_transactions, mean_amount,
        max_amount, n_<flag>/prop_<flag> pairs and top_<field> labels
    """
    needed = [KEY, "amount"] + list(flag_columns) + list(categorical_fields)
    missing = [c for c in needed if c not in flagged.columns]
    if missing:
        raise SchemaViolationError(f"Flagged transactions missing columns: {missing}")
    if flagged.empty:
        raise SchemaViolationError("No transactions to aggregate")
    keys = flagged[KEY]
    if keys.isna().any() or keys.astype(str).str.strip().eq("").any():
        raise SchemaViolationError("Transactions with an empty client_id cannot be attributed to a client")

    g = flagged.groupby(KEY, sort=True)
    table = pd.DataFrame({
        "n_transactions": g.size(),
        "mean_amount": g["amount"].mean(),
        "max_amount": g["amount"].max(),
    })

    for f in flag_columns:
        name = f[3:] if f.startswith("is_") else f
        table[f"n_{name}"] = g[f].sum().astype(int)
        table[f"prop_{name}"] = table[f"n_{name}"] / table["n_transactions"]

    for field in categorical_fields:
        table[f"top_{field}"] = _top_values(flagged, field).reindex(table.index)

    if (table["n_transactions"] < 1).any():
        raise SchemaViolationError("Entity with zero records in feature table")

    table.index.name = KEY
    print(f"Feature table: {len(table):,} clients x {table.shape[1]} attributes")
    return table


def feature_kinds(table: pd.DataFrame) -> Dict[str, str]:
    """Tag each attribute for Gower: numeric columns are continuous, the rest categorical."""
    return {
        c: CONTINUOUS if pd.api.types.is_numeric_dtype(table[c]) and not pd.api.types.is_bool_dtype(table[c])
        else CATEGORICAL
        for c in table.columns
    }


def validate_feature_table(table: pd.DataFrame, kinds: Dict[str, str],
                           max_levels: int = MAX_CATEGORY_LEVELS + 1) -> None:
    """
    Check the table against its kind map before computing distances.

    Categorical columns must be pre-reduced: at most max_levels distinct values
    (the retained labels plus the "other" bucket).
    """
    cols: List[str] = list(table.columns)
    if set(cols) != set(kinds):
        extra = sorted(set(cols) - set(kinds))
        absent = sorted(set(kinds) - set(cols))
        raise SchemaViolationError(f"Attribute schema mismatch: untagged={extra}, missing={absent}")
    if table.index.has_duplicates:
        raise SchemaViolationError("Feature table has duplicate entity ids")

    for c in cols:
        kind = kinds[c]
        if kind == CONTINUOUS:
            if not pd.api.types.is_numeric_dtype(table[c]):
                raise SchemaViolationError(f"Continuous attribute '{c}' has dtype {table[c].dtype}")
        elif kind == CATEGORICAL:
            n_levels = table[c].nunique(dropna=True)
            if n_levels > max_levels:
                raise SchemaViolationError(
                    f"Categorical attribute '{c}' has {n_levels} levels (max {max_levels}); reduce it first"
                )
        else:
            raise SchemaViolationError(f"Unknown attribute kind '{kind}' for '{c}'")
