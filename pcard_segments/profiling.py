# Cluster characterisation: LightGBM split-count importances and per-cluster means
import re
import numpy as np
import pandas as pd
import lightgbm as lgb
from typing import Dict, Iterable, List, NamedTuple, Optional

from .config import SEED, TOP_N, CV_FOLDS, EARLY_STOPPING_ROUNDS, MAX_BOOST_ROUNDS, LGBM_PARAMS
from .dissimilarity import check_kinds
from .errors import InvalidParameterError, ModelTrainingError, SchemaViolationError
from .features import CONTINUOUS, CATEGORICAL


class ClusterProfile(NamedTuple):
    importance: pd.DataFrame     # feature, importance (split count), frequency; top-N, descending
    means: pd.DataFrame          # per cluster: n_entities + mean of each top-N feature
    booster: lgb.Booster
    best_rounds: int
    cv_logloss: float


def _sanitize(s: str) -> str:
    """LightGBM-safe feature name."""
    return re.sub(r"[^0-9a-zA-Z_]+", "_", str(s)).strip("_").lower() or "feature"


def _unique_names(names: Iterable[str]) -> List[str]:
    seen: Dict[str, int] = {}
    out = []
    for raw in names:
        name = _sanitize(raw)
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 0
        out.append(name)
    return out


def one_hot_features(table: pd.DataFrame, kinds: Dict[str, str]) -> pd.DataFrame:
    """Continuous attributes as floats plus one 0/1 column per categorical bucket."""
    check_kinds(table, kinds)
    cont = [c for c in table.columns if kinds[c] == CONTINUOUS]
    cat = [c for c in table.columns if kinds[c] == CATEGORICAL]

    parts = [table[cont].astype(float)]
    if cat:
        labels = table[cat].astype(object).where(table[cat].notna(), "missing").astype(str)
        parts.append(pd.get_dummies(labels, prefix=cat, prefix_sep="_", dtype=float))
    X = pd.concat(parts, axis=1)
    X.columns = _unique_names(X.columns)
    return X


def _encode_labels(X: pd.DataFrame, labels: pd.Series):
    y = labels.reindex(X.index)
    if y.isna().any():
        raise SchemaViolationError(f"{int(y.isna().sum())} entities have no cluster label")
    y = y.astype(int)
    classes = np.sort(y.unique())
    return y, classes, np.searchsorted(classes, y.to_numpy())


def train_importance_model(X: pd.DataFrame, labels: pd.Series,
                           n_folds: int = CV_FOLDS,
                           early_stopping_rounds: int = EARLY_STOPPING_ROUNDS,
                           max_rounds: int = MAX_BOOST_ROUNDS,
                           params: Optional[dict] = None,
                           seed: int = SEED, tag: str = ""):
    """
    Fit a multiclass LightGBM model predicting cluster label from features.

    Stratified k-fold CV with early stopping on validation multi_logloss picks the
    number of boosting rounds; the final booster is refit on all entities with
    that many rounds.

    Args:
        X: One-hot feature matrix indexed by entity id
        labels: Cluster label per entity id
        n_folds: CV folds (every cluster needs at least this many entities)
        early_stopping_rounds: Patience window on validation loss
        max_rounds: Boosting round budget

    Returns:
        Tuple of (booster, best_rounds, best CV logloss)
    """
    y, classes, y_codes = _encode_labels(X, labels)
    if len(classes) < 2:
        raise ModelTrainingError(f"Need at least 2 clusters to train, got {len(classes)}")
    sizes = y.value_counts()
    if sizes.min() < n_folds:
        raise ModelTrainingError(
            f"Cluster {int(sizes.idxmin())} has {int(sizes.min())} entities, fewer than {n_folds} CV folds"
        )

    p = dict(LGBM_PARAMS if params is None else params)
    p.update(num_class=len(classes), seed=seed)

    try:
        cv = lgb.cv(
            p,
            lgb.Dataset(X, label=y_codes),
            num_boost_round=max_rounds,
            nfold=n_folds,
            stratified=True,
            shuffle=True,
            seed=seed,
            callbacks=[lgb.early_stopping(early_stopping_rounds, verbose=False)],
        )
    except (lgb.basic.LightGBMError, ValueError) as exc:
        raise ModelTrainingError(f"LightGBM cross-validation failed: {exc}") from exc

    key = next((k for k in cv if k.endswith("multi_logloss-mean")), None)
    if key is None or not cv[key]:
        raise ModelTrainingError(f"No validation multi_logloss in CV results (keys: {list(cv)})")
    curve = np.asarray(cv[key], dtype=float)
    best_rounds = len(curve)
    if not np.all(np.isfinite(curve)):
        raise ModelTrainingError("Validation loss is not finite")
    if best_rounds <= 1:
        raise ModelTrainingError(
            f"Validation loss never improved past the first round (patience={early_stopping_rounds})"
        )

    booster = lgb.train(p, lgb.Dataset(X, label=y_codes), num_boost_round=best_rounds)
    print(f"[{tag}] LightGBM: {best_rounds} rounds, CV logloss={curve[-1]:.4f}")
    return booster, best_rounds, float(curve[-1])


def rank_feature_importance(booster: lgb.Booster, top_n: int = TOP_N) -> pd.DataFrame:
    """Features ranked by split count (how often each is used), top_n rows."""
    if top_n <= 0:
        raise InvalidParameterError("top_n", top_n, "must be positive")
    imp = pd.DataFrame({
        "feature": booster.feature_name(),
        "importance": booster.feature_importance(importance_type="split").astype(int),
    })
    total = imp["importance"].sum()
    imp["frequency"] = imp["importance"] / total if total else 0.0
    return (imp.sort_values(["importance", "feature"], ascending=[False, True])
               .head(top_n)
               .reset_index(drop=True))


def cluster_feature_means(X: pd.DataFrame, labels: pd.Series, features: List[str]) -> pd.DataFrame:
    """Per-cluster size and mean of each listed feature."""
    missing = [f for f in features if f not in X.columns]
    if missing:
        raise SchemaViolationError(f"Unknown features: {missing}")
    cluster = labels.reindex(X.index).astype(int).rename("cluster")
    grouped = X[features].groupby(cluster)
    means = grouped.mean()
    means.insert(0, "n_entities", grouped.size())
    return means


def profile_clusters(table: pd.DataFrame, kinds: Dict[str, str], labels: pd.Series,
                     top_n: int = TOP_N, n_folds: int = CV_FOLDS,
                     early_stopping_rounds: int = EARLY_STOPPING_ROUNDS,
                     max_rounds: int = MAX_BOOST_ROUNDS, params: Optional[dict] = None,
                     seed: int = SEED, tag: str = "") -> ClusterProfile:
    """
    Rank the features that separate clusters and describe each cluster by them.

    Returns:
        ClusterProfile with the top_n importance ranking and per-cluster means
    """
    print(f"[{tag}] Profiling clusters...")
    X = one_hot_features(table, kinds)
    booster, best_rounds, logloss = train_importance_model(
        X, labels, n_folds=n_folds, early_stopping_rounds=early_stopping_rounds,
        max_rounds=max_rounds, params=params, seed=seed, tag=tag,
    )
    importance = rank_feature_importance(booster, top_n)
    means = cluster_feature_means(X, labels, importance["feature"].tolist())

    print(f"[{tag}] Top features:")
    print(importance.to_string(index=False))
    return ClusterProfile(importance=importance, means=means, booster=booster,
                          best_rounds=best_rounds, cv_logloss=logloss)

# -------------------------- Anomaly Review Seam --------------------------
def category_lift(table: pd.DataFrame, labels: pd.Series, field: str) -> pd.DataFrame:
    """
    Share of each bucket of a reduced categorical field inside every cluster,
    next to its population base rate.

    This is a diagnostic for a human reviewer: a cluster dominated by one bucket
    far above its base rate is a candidate for removal, but nothing here decides.
    """
    if field not in table.columns:
        raise SchemaViolationError(f"Unknown field '{field}'")
    values = table[field].astype(object).where(table[field].notna(), "missing").astype(str)
    cluster = labels.reindex(table.index).astype(int)

    base = values.value_counts(normalize=True)
    share = pd.crosstab(cluster.rename("cluster"), values.rename("bucket"), normalize="index")
    lift = share.reset_index().melt(id_vars="cluster", var_name="bucket", value_name="share")
    lift["base_rate"] = lift["bucket"].map(base)
    lift["lift"] = lift["share"] / lift["base_rate"]
    lift["n_entities"] = lift["cluster"].map(cluster.value_counts())
    lift.insert(0, "field", field)
    return (lift.sort_values(["cluster", "lift"], ascending=[True, False], kind="mergesort")
                .reset_index(drop=True))


def entities_in_clusters(labels: pd.Series, clusters: Iterable[int]) -> pd.Index:
    """Entity ids assigned to any of the given clusters."""
    clusters = [int(c) for c in clusters]
    unknown = sorted(set(clusters) - set(labels.unique().tolist()))
    if unknown:
        raise InvalidParameterError("clusters", unknown, "not present in the assignment")
    return labels.index[labels.isin(clusters)]


def remove_entities(table: pd.DataFrame, ids: Iterable) -> pd.DataFrame:
    """New feature table without the given entities; the input is left untouched."""
    ids = pd.Index(list(ids))
    unknown = ids.difference(table.index)
    if len(unknown):
        raise InvalidParameterError("ids", list(unknown[:5]), f"{len(unknown)} ids not in the feature table")
    reduced = table.drop(index=ids)
    print(f"Removed {len(ids):,} entities: {len(table):,} -> {len(reduced):,}")
    return reduced
