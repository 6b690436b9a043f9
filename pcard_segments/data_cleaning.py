# Transaction loading, label cleanup, category reduction and record-level flags
import re
import numpy as np
import pandas as pd
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .config import (
    COLUMN_MAP, REQUIRED_COLUMNS, CATEGORICAL_COLUMNS, DATE_DAYFIRST,
    OUTLIER_IQR_MULT, EXTREME_IQR_MULT, TAIL_QUANTILES,
    PAYDAY_WINDOW_DAYS, PAYDAY_EARLY_DAYS,
    MERCHANT_CANONICAL, OTHER_LABEL, MIN_CATEGORY_SHARE, MAX_CATEGORY_LEVELS,
)
from .errors import SchemaViolationError

MISSING_LABEL = "missing"


class CategoryPolicy(NamedTuple):
    """Reduction rule for one categorical field.

    canonical_map holds (regex, canonical label) pairs tried in order against the
    cleaned label; the first match wins. Labels whose record share stays under
    min_share afterwards, or that fall outside the max_levels most frequent,
    collapse into other_label.
    """
    canonical_map: Sequence[Tuple[str, str]] = ()
    min_share: float = MIN_CATEGORY_SHARE
    max_levels: int = MAX_CATEGORY_LEVELS
    other_label: str = OTHER_LABEL


DEFAULT_POLICIES: Dict[str, CategoryPolicy] = {
    "merchant": CategoryPolicy(canonical_map=MERCHANT_CANONICAL),
    "category": CategoryPolicy(),
    "directorate": CategoryPolicy(),
}

# -------------------------- Helper Functions --------------------------
def clean_label(x: Optional[str]) -> str:
    """Lower-case, strip and collapse whitespace; empty or non-string -> 'missing'."""
    if not isinstance(x, str):
        return MISSING_LABEL
    v = re.sub(r"\s+", " ", x.strip().lower())
    return v if v else MISSING_LABEL


def canonicalize_label(label: str, rules: Sequence[Tuple[str, str]]) -> str:
    """Map a cleaned label through the first matching (regex, canonical) rule."""
    for pattern, canonical in rules:
        if re.search(pattern, label):
            return canonical
    return label


def parse_amount(values: pd.Series) -> pd.Series:
    """Parse monetary strings such as '£1,234.50' or '(12.00)' to floats; junk -> NaN."""
    if pd.api.types.is_numeric_dtype(values):
        return values.astype(float)
    txt = values.astype(str).str.strip()
    txt = txt.str.replace(r"^\((.*)\)$", r"-\1", regex=True)
    txt = txt.str.replace(r"[£$€,\s]", "", regex=True)
    return pd.to_numeric(txt, errors="coerce")


def _client_key(x) -> str:
    if x is None or (isinstance(x, float) and np.isnan(x)):
        return ""
    return str(x).strip()

# -------------------------- Loading --------------------------
def clean_transactions(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Normalise a raw transaction table to the canonical schema.

    Args:
        raw: Transactions with either source headers (see COLUMN_MAP) or canonical names

    Returns:
        pd.DataFrame: date (datetime), amount (float), client_id (str) and the
        cleaned categorical columns, in original record order
    """
    df = raw.rename(columns=COLUMN_MAP)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise SchemaViolationError(f"Missing required columns: {missing} (got {list(df.columns)})")

    out = pd.DataFrame(index=df.index)
    out["date"] = pd.to_datetime(df["date"], dayfirst=DATE_DAYFIRST, errors="coerce")
    out["amount"] = parse_amount(df["amount"])
    out["client_id"] = df["client_id"].map(_client_key)

    for c in CATEGORICAL_COLUMNS:
        if c in df.columns:
            out[c] = df[c].map(clean_label)
        else:
            print(f"Column '{c}' not present, filling with '{MISSING_LABEL}'")
            out[c] = MISSING_LABEL

    valid = out["date"].notna() & out["amount"].notna() & out["client_id"].ne("")
    n_bad = int((~valid).sum())
    if n_bad:
        print(f"Dropped {n_bad:,} rows with unparseable date/amount or empty client id")

    out = out[valid].reset_index(drop=True)
    if out.empty:
        raise SchemaViolationError("No valid transactions after cleaning")
    return out


def load_transactions(csv_path: str) -> pd.DataFrame:
    """
    Load and clean the raw purchase-card CSV.

    Every column is read as text so card numbers keep their leading zeros and
    amounts go through parse_amount.
    """
    print(f"Loading data from {csv_path}...")
    raw = pd.read_csv(csv_path, dtype=str, low_memory=False)
    print(f"Raw data shape: {raw.shape}")

    df = clean_transactions(raw)
    print(f"Clean transactions: {len(df):,} rows, {df['client_id'].nunique():,} clients")
    return df

# -------------------------- Category Reduction --------------------------
def reduce_labels(values: pd.Series, policy: CategoryPolicy) -> Tuple[pd.Series, pd.DataFrame]:
    """
    Apply one CategoryPolicy to a label column.

    Args:
        values: Raw (or already cleaned) labels
        policy: Canonical mapping plus "other" thresholds

    Returns:
        Tuple of (reduced labels, audit frame with one row per raw label)
    """
    cleaned = values.map(clean_label)
    canonical = cleaned.map(lambda v: canonicalize_label(v, policy.canonical_map))

    counts = canonical.value_counts()
    n = len(canonical)
    # stable sort: ties keep first-encountered order
    ordered = sorted(pd.unique(canonical), key=lambda v: -counts[v])
    keep: List[str] = [
        v for v in ordered
        if v != policy.other_label and n and counts[v] / n >= policy.min_share
    ][:policy.max_levels]

    final = canonical.where(canonical.isin(keep), policy.other_label)

    audit = (
        pd.DataFrame({
            "raw_label": values.where(values.notna(), MISSING_LABEL).astype(str),
            "canonical_label": canonical,
            "final_label": final,
        })
        .groupby(["raw_label", "canonical_label", "final_label"], sort=False)
        .size()
        .reset_index(name="n_records")
        .sort_values("n_records", ascending=False, kind="mergesort")
        .reset_index(drop=True)
    )
    return final, audit


def reduce_categories(df: pd.DataFrame, policies: Optional[Dict[str, CategoryPolicy]] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Reduce every policy-covered categorical field to a bounded label set.

    Returns:
        Tuple of (new dataframe, audit frame across all fields)
    """
    policies = DEFAULT_POLICIES if policies is None else policies
    reduced = df.copy()
    audits = []

    for field, policy in policies.items():
        if field not in df.columns:
            raise SchemaViolationError(f"Category policy given for absent column '{field}'")
        reduced[field], audit = reduce_labels(df[field], policy)
        audits.append(audit.assign(field=field))
        n_levels = reduced[field].nunique()
        n_other = int((reduced[field] == policy.other_label).sum())
        print(f"Category reduction '{field}': {df[field].nunique():,} raw -> {n_levels} labels "
              f"({n_other:,} records in '{policy.other_label}')")

    cols = ["field", "raw_label", "canonical_label", "final_label", "n_records"]
    audit_all = pd.concat(audits, ignore_index=True)[cols] if audits else pd.DataFrame(columns=cols)
    return reduced, audit_all

# -------------------------- Record-Level Flags --------------------------
def flag_transactions(df: pd.DataFrame,
                      outlier_mult: float = OUTLIER_IQR_MULT,
                      extreme_mult: float = EXTREME_IQR_MULT,
                      tail_quantiles: Tuple[float, float] = TAIL_QUANTILES,
                      payday_window: int = PAYDAY_WINDOW_DAYS,
                      payday_early: int = PAYDAY_EARLY_DAYS) -> Tuple[pd.DataFrame, Dict[str, float]]:
    """
    Attach the binary transaction predicates used by the client aggregation.

    Amount thresholds come from the whole record population, never per client:
    IQR fences at outlier_mult / extreme_mult, tail percentiles and the median.

    Args:
        df: Clean transactions (date, amount, client_id, ...)

    Returns:
        Tuple of (flagged copy, thresholds used)
    """
    if df.empty:
        raise SchemaViolationError("Cannot flag an empty transaction table")
    for c in ("date", "amount"):
        if c not in df.columns:
            raise SchemaViolationError(f"Missing required column '{c}'")

    amount = df["amount"].astype(float)
    q1, q3 = amount.quantile([0.25, 0.75])
    iqr = q3 - q1
    tail_lo, tail_hi = amount.quantile(list(tail_quantiles))
    median = amount.median()

    thresholds = {
        "q1": float(q1), "q3": float(q3), "iqr": float(iqr),
        "outlier_low": float(q1 - outlier_mult * iqr), "outlier_high": float(q3 + outlier_mult * iqr),
        "extreme_low": float(q1 - extreme_mult * iqr), "extreme_high": float(q3 + extreme_mult * iqr),
        "tail_low": float(tail_lo), "tail_high": float(tail_hi),
        "median": float(median),
    }

    flagged = df.copy()
    flagged["is_chargeback"] = amount < 0
    flagged["is_outlier"] = (amount < thresholds["outlier_low"]) | (amount > thresholds["outlier_high"])
    flagged["is_extreme"] = (amount < thresholds["extreme_low"]) | (amount > thresholds["extreme_high"])
    flagged["is_tail"] = (amount < tail_lo) | (amount > tail_hi)
    flagged["is_above_median"] = amount > median

    day = df["date"].dt.day
    # last payday_window days of the month, or the first payday_early days
    flagged["is_near_payday"] = ((df["date"].dt.days_in_month - day) < payday_window) | (day <= payday_early)
    flagged["is_weekend"] = df["date"].dt.dayofweek >= 5

    print(f"Flagged {len(flagged):,} transactions: median={median:.2f}, IQR={iqr:.2f}, "
          f"outliers={int(flagged['is_outlier'].sum()):,}, extremes={int(flagged['is_extreme'].sum()):,}")
    return flagged, thresholds
