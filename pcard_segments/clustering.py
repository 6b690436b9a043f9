# Partitional clustering on the Gower matrix and cluster-count diagnostics
import warnings
import numpy as np
import pandas as pd
from typing import Iterable, List, NamedTuple, Optional, Sequence
from sklearn.cluster import KMeans
from sklearn.metrics import silhouette_score, adjusted_rand_score

from .config import SEED, N_INIT, MAX_ITER, K_RANGE_ELBOW, K_RANGE_SILHOUETTE, STABILITY_SEEDS
from .errors import InvalidParameterError, ConvergenceFailureWarning


class Partition(NamedTuple):
    labels: pd.Series      # entity id -> cluster label in [0, k)
    inertia: float
    n_iter: int
    converged: bool


class KSelection(NamedTuple):
    diagnostics: pd.DataFrame    # k, inertia, silhouette
    elbow_k: Optional[int]
    silhouette_k: Optional[int]
    candidates: List[int]        # advisory ranking, best first


def _as_array(distance) -> np.ndarray:
    return np.asarray(distance, dtype=np.float64)


def _index(distance) -> pd.Index:
    return distance.index if isinstance(distance, pd.DataFrame) else pd.RangeIndex(len(distance))


def _n_distinct(X: np.ndarray) -> int:
    return len(np.unique(X, axis=0)) if len(X) else 0


def _check_k(k: int, X: np.ndarray) -> None:
    n = len(X)
    if k <= 0:
        raise InvalidParameterError("k", k, "number of clusters must be positive")
    if k > n:
        raise InvalidParameterError("k", k, f"exceeds the number of entities ({n})")
    n_distinct = _n_distinct(X)
    if k > n_distinct:
        raise InvalidParameterError("k", k, f"exceeds the number of distinct entities ({n_distinct})")


def total_dispersion(distance) -> float:
    """Sum of squared distances to the global centroid, i.e. the K=1 inertia."""
    X = _as_array(distance)
    return float(((X - X.mean(axis=0)) ** 2).sum())


def fit_partition(distance, k: int, n_init: int = N_INIT, max_iter: int = MAX_ITER,
                  seed: int = SEED) -> Partition:
    """
    Split entities into exactly k non-empty clusters.

    Each entity is embedded as its row of the distance matrix and clustered with
    KMeans (assign to nearest centroid / update centroids) over n_init random
    restarts; the lowest-inertia restart is kept. The same seed and n_init give
    the same labels.

    Args:
        distance: Square dissimilarity matrix (DataFrame keeps entity ids)
        k: Number of clusters
        n_init: Random centroid restarts
        max_iter: Iteration cap per restart
        seed: Random seed

    Returns:
        Partition with labels, inertia, iterations used and a converged flag
    """
    X = _as_array(distance)
    _check_k(k, X)

    km = KMeans(n_clusters=k, n_init=n_init, max_iter=max_iter, random_state=seed)
    labels = km.fit_predict(X)

    converged = km.n_iter_ < max_iter
    if not converged:
        warnings.warn(
            f"KMeans k={k} hit max_iter={max_iter} without stabilising; returning best partition found",
            ConvergenceFailureWarning,
        )

    return Partition(
        labels=pd.Series(labels.astype(int), index=_index(distance), name="cluster"),
        inertia=float(km.inertia_),
        n_iter=int(km.n_iter_),
        converged=converged,
    )


def _usable_ks(k_range: Iterable[int], X: np.ndarray, min_k: int, max_k: int, name: str, tag: str) -> List[int]:
    ks = [int(k) for k in k_range]
    if not ks:
        raise InvalidParameterError(name, ks, "candidate range is empty")
    bad = [k for k in ks if k < min_k]
    if bad:
        raise InvalidParameterError(name, bad, f"candidate K must be >= {min_k}")

    usable = [k for k in ks if k <= max_k]
    skipped = sorted(set(ks) - set(usable))
    if skipped:
        print(f"[{tag}] Skipping k={skipped}: more clusters than usable entities ({max_k})")
    if not usable:
        raise InvalidParameterError(name, ks, f"no candidate K fits {len(X)} entities")
    return usable


def inertia_curve(distance, k_range: Iterable[int] = K_RANGE_ELBOW, n_init: int = N_INIT,
                  max_iter: int = MAX_ITER, seed: int = SEED, tag: str = "") -> pd.Series:
    """Best-of-restarts inertia per K, starting from the trivial K=1 partition."""
    X = _as_array(distance)
    ks = _usable_ks(k_range, X, 1, _n_distinct(X), "k_range", tag)

    values = []
    for k in ks:
        part = fit_partition(distance, k, n_init=n_init, max_iter=max_iter, seed=seed)
        values.append(part.inertia)
        print(f"[{tag}] k={k} inertia={part.inertia:.4f}")
    return pd.Series(values, index=pd.Index(ks, name="k"), name="inertia")


def silhouette_curve(distance, k_range: Iterable[int] = K_RANGE_SILHOUETTE, n_init: int = N_INIT,
                     max_iter: int = MAX_ITER, seed: int = SEED, tag: str = "") -> pd.Series:
    """
    Mean silhouette per K >= 2.

    Silhouettes are measured on the original Gower distances (metric="precomputed"),
    not on the embedding KMeans works in.
    """
    X = _as_array(distance)
    # silhouette is defined for 2 <= k <= n - 1
    ks = _usable_ks(k_range, X, 2, min(len(X) - 1, _n_distinct(X)), "k_range", tag)

    values = []
    for k in ks:
        part = fit_partition(distance, k, n_init=n_init, max_iter=max_iter, seed=seed)
        s = float(silhouette_score(X, part.labels.to_numpy(), metric="precomputed"))
        values.append(s)
        print(f"[{tag}] k={k} silhouette={s:.4f}")
    return pd.Series(values, index=pd.Index(ks, name="k"), name="silhouette")


def elbow_k(inertia: pd.Series) -> Optional[int]:
    """
    K at the elbow: where the inertia decrease shrinks the most.

    Needs at least three consecutive K values; returns None otherwise.
    """
    if len(inertia) < 3:
        return None
    ks = inertia.index.to_numpy()
    vals = inertia.to_numpy(dtype=float)
    drops = vals[:-1] - vals[1:]
    bend = drops[:-1] - drops[1:]
    return int(ks[1:-1][int(np.argmax(bend))])


def select_k(distance, k_range_elbow: Iterable[int] = K_RANGE_ELBOW,
             k_range_silhouette: Iterable[int] = K_RANGE_SILHOUETTE,
             n_init: int = N_INIT, max_iter: int = MAX_ITER, seed: int = SEED,
             tag: str = "") -> KSelection:
    """
    Run both cluster-count sweeps and rank candidate K values.

    The ranking is advisory: the elbow K comes first, the best-silhouette K is
    kept as the fallback, and the remaining K follow by silhouette.

    Returns:
        KSelection with the diagnostics table and ranked candidates
    """
    print(f"[{tag}] Sweeping cluster counts...")
    inertia = inertia_curve(distance, k_range_elbow, n_init, max_iter, seed, tag)
    sil = silhouette_curve(distance, k_range_silhouette, n_init, max_iter, seed, tag)

    diagnostics = pd.concat([inertia, sil], axis=1).reset_index()
    e = elbow_k(inertia)
    by_sil = sil.sort_values(ascending=False, kind="mergesort")
    s = int(by_sil.index[0]) if len(by_sil) else None

    candidates: List[int] = []
    for c in [e, s] + [int(k) for k in by_sil.index]:
        if c is not None and c >= 2 and c not in candidates:
            candidates.append(c)

    print(f"[{tag}] Elbow k={e}, best silhouette k={s}, candidates={candidates}")
    return KSelection(diagnostics=diagnostics, elbow_k=e, silhouette_k=s, candidates=candidates)


def seed_stability(distance, k: int, seeds: Sequence[int] = STABILITY_SEEDS, n_init: int = N_INIT,
                   max_iter: int = MAX_ITER, tag: str = "") -> pd.DataFrame:
    """Adjusted Rand index of each re-seeded partition against the first seed's."""
    if not seeds:
        raise InvalidParameterError("seeds", seeds, "need at least one seed")

    base = None
    rows = []
    for s in seeds:
        part = fit_partition(distance, k, n_init=n_init, max_iter=max_iter, seed=s)
        if base is None:
            base = part.labels.to_numpy()
        ari = adjusted_rand_score(base, part.labels.to_numpy())
        rows.append({"seed": int(s), "inertia": part.inertia, "ari_vs_first": float(ari)})
        print(f"[{tag}] k={k} seed={s} ARI vs seed {seeds[0]} = {ari:.3f}")
    return pd.DataFrame(rows)
