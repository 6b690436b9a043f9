# Gower dissimilarity over mixed continuous / categorical client attributes
import warnings
import numpy as np
import pandas as pd
import gower
from typing import Dict, List

from .errors import SchemaViolationError
from .features import CONTINUOUS, CATEGORICAL


def check_kinds(table: pd.DataFrame, kinds: Dict[str, str]) -> None:
    """Every column tagged exactly once, with a known kind."""
    if set(table.columns) != set(kinds):
        raise SchemaViolationError(
            f"Kind map does not match table columns: "
            f"untagged={sorted(set(table.columns) - set(kinds))}, "
            f"missing={sorted(set(kinds) - set(table.columns))}"
        )
    bad = {c: k for c, k in kinds.items() if k not in (CONTINUOUS, CATEGORICAL)}
    if bad:
        raise SchemaViolationError(f"Unknown attribute kinds: {bad}")


def degenerate_attributes(table: pd.DataFrame, kinds: Dict[str, str]) -> List[str]:
    """Continuous attributes with zero observed range; their Gower contribution is always 0."""
    out = []
    for c in table.columns:
        if kinds[c] != CONTINUOUS:
            continue
        col = pd.to_numeric(table[c], errors="coerce")
        if col.notna().sum() == 0 or col.max() - col.min() == 0:
            out.append(c)
    return out


def _prepare(table: pd.DataFrame, kinds: Dict[str, str]) -> pd.DataFrame:
    frame = pd.DataFrame(index=table.index)
    for c in table.columns:
        if kinds[c] == CONTINUOUS:
            col = pd.to_numeric(table[c], errors="coerce").astype(float)
            # Gower is shift invariant per column; a zero minimum keeps gower_matrix's
            # max-based scaling equal to the plain range
            frame[c] = col - col.min() if col.notna().any() else col
        else:
            frame[c] = table[c].astype(object).where(table[c].notna(), None)
    return frame


def _gower_pairwise_complete(frame: pd.DataFrame, kinds: Dict[str, str]) -> np.ndarray:
    """
    Gower with missing values excluded pair by pair.

    Each attribute contributes an n x n block of per-pair terms and an n x n
    availability mask; distance = sum of terms / number of attributes both
    entities have.
    """
    n = len(frame)
    total = np.zeros((n, n))
    counts = np.zeros((n, n))

    for c in frame.columns:
        present = frame[c].notna().to_numpy()
        both = np.outer(present, present)
        if kinds[c] == CONTINUOUS:
            values = frame[c].to_numpy(dtype=float)
            rng = float(np.nanmax(values) - np.nanmin(values)) if present.any() else 0.0
            if rng > 0:
                contrib = np.abs(values[:, None] - values[None, :]) / rng
            else:
                contrib = np.zeros((n, n))
        else:
            codes, _ = pd.factorize(frame[c])
            contrib = (codes[:, None] != codes[None, :]).astype(float)
        total += np.where(both, contrib, 0.0)
        counts += both

    no_overlap = counts == 0
    np.fill_diagonal(no_overlap, False)
    if no_overlap.any():
        pairs = int(no_overlap.sum() // 2)
        warnings.warn(f"{pairs} entity pairs share no observed attribute; their distance is set to 0")

    return np.divide(total, counts, out=np.zeros_like(total), where=counts > 0)


def gower_distance_matrix(table: pd.DataFrame, kinds: Dict[str, str], tag: str = "") -> pd.DataFrame:
    """
    Pairwise Gower dissimilarity between entities.

    Continuous attributes contribute |x_i - x_j| / range (0 when the range is 0),
    categorical attributes 0 on a match and 1 otherwise; the distance is the
    unweighted mean over attributes. Missing values drop out of both numerator
    and attribute count for the affected pair only.

    Args:
        table: Feature table, one row per entity
        kinds: {column: "continuous" | "categorical"}
        tag: Label for logging

    Returns:
        Symmetric, zero-diagonal DataFrame in [0, 1] indexed both ways by entity id
    """
    check_kinds(table, kinds)
    if table.empty:
        raise SchemaViolationError("Cannot compute distances for an empty feature table")

    degenerate = degenerate_attributes(table, kinds)
    if degenerate:
        print(f"[{tag}] Zero-range attributes (contribute 0): {degenerate}")

    frame = _prepare(table, kinds)
    if frame.isna().to_numpy().any():
        print(f"[{tag}] Missing values present, using pairwise-complete Gower")
        dist = _gower_pairwise_complete(frame, kinds)
    else:
        cat_mask = np.array([kinds[c] == CATEGORICAL for c in frame.columns])
        dist = np.asarray(gower.gower_matrix(frame, cat_features=cat_mask), dtype=np.float64)

    dist = np.clip((dist + dist.T) / 2.0, 0.0, 1.0)
    np.fill_diagonal(dist, 0.0)

    n = len(table)
    off = dist[~np.eye(n, dtype=bool)]
    if off.size:
        print(f"[{tag}] Gower matrix {n}x{n}: mean={off.mean():.4f}, max={off.max():.4f}")
    return pd.DataFrame(dist, index=table.index.copy(), columns=table.index.copy())
