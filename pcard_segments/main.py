# Main orchestration script - ties together all the analysis components
import os
import sys
import numpy as np
import pandas as pd
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .config import (
    CSV_PATH, OUTPUT_DIR, SEED, K_RANGE_ELBOW, K_RANGE_SILHOUETTE, N_INIT, MAX_ITER,
    TOP_N, MODE_FIELDS, OUTLIER_IQR_MULT, EXTREME_IQR_MULT, TAIL_QUANTILES,
    MIN_CATEGORY_SHARE, MAX_CATEGORY_LEVELS, STABILITY_SEEDS,
)
from .data_cleaning import load_transactions, reduce_categories, flag_transactions
from .features import build_client_features, feature_kinds, validate_feature_table, CATEGORICAL
from .dissimilarity import gower_distance_matrix, degenerate_attributes
from .clustering import fit_partition, select_k, seed_stability
from .profiling import profile_clusters, category_lift, entities_in_clusters, remove_entities
from .figures import plot_elbow_curve, plot_silhouette_curve, plot_feature_importance, plot_profile_heatmap
from .errors import InvalidParameterError, ModelTrainingError


def cluster_feature_table(features: pd.DataFrame, kinds: Dict[str, str], tag: str = "full",
                          k: Optional[int] = None,
                          k_range_elbow: Iterable[int] = K_RANGE_ELBOW,
                          k_range_silhouette: Iterable[int] = K_RANGE_SILHOUETTE,
                          top_n: int = TOP_N, n_init: int = N_INIT, max_iter: int = MAX_ITER,
                          seed: int = SEED, profile_params: Optional[dict] = None) -> Dict:
    """
    Distances -> K sweep -> partition -> profile, for an already built feature table.

    Args:
        features: Client feature table
        kinds: Attribute kind map
        tag: Label for logs and file names
        k: Cluster count to use; None takes the top advisory candidate
        profile_params: Extra keyword arguments for profile_clusters

    Returns:
        Dictionary with distance, selection (None when an explicit k was given and
        no candidate K fits), the K ranges swept, chosen_k, partition, profile
        (None if the importance model failed, with profile_error set) and lift tables
    """
    validate_feature_table(features, kinds)
    distance = gower_distance_matrix(features, kinds, tag=tag)
    k_range_elbow, k_range_silhouette = list(k_range_elbow), list(k_range_silhouette)

    if k is None:
        selection = select_k(distance, k_range_elbow, k_range_silhouette,
                             n_init=n_init, max_iter=max_iter, seed=seed, tag=tag)
        if not selection.candidates:
            raise InvalidParameterError("k", None, "no candidate cluster count; pass k explicitly")
        chosen_k = selection.candidates[0]
    else:
        chosen_k = int(k)
        # with an explicit k the sweep is advisory only
        try:
            selection = select_k(distance, k_range_elbow, k_range_silhouette,
                                 n_init=n_init, max_iter=max_iter, seed=seed, tag=tag)
        except InvalidParameterError as exc:
            selection = None
            print(f"[{tag}] K sweep skipped: {exc}")
    print(f"[{tag}] Using k={chosen_k}")

    partition = fit_partition(distance, chosen_k, n_init=n_init, max_iter=max_iter, seed=seed)
    sizes = partition.labels.value_counts().sort_index()
    print(f"[{tag}] Cluster sizes: {sizes.to_dict()}")

    profile, profile_error = None, None
    try:
        profile = profile_clusters(features, kinds, partition.labels, top_n=top_n, seed=seed,
                                   tag=tag, **(profile_params or {}))
    except ModelTrainingError as exc:
        profile_error = str(exc)
        print(f"[{tag}] WARNING: profiling failed, cluster labels are still valid: {exc}")

    lift = {
        c: category_lift(features, partition.labels, c)
        for c in features.columns if kinds[c] == CATEGORICAL
    }

    return {
        "tag": tag,
        "features": features,
        "kinds": kinds,
        "degenerate": degenerate_attributes(features, kinds),
        "distance": distance,
        "selection": selection,
        "k_range_elbow": k_range_elbow,
        "k_range_silhouette": k_range_silhouette,
        "chosen_k": chosen_k,
        "partition": partition,
        "profile": profile,
        "profile_error": profile_error,
        "lift": lift,
        "seed": seed,
    }


def run_pipeline(transactions: pd.DataFrame, tag: str = "full", k: Optional[int] = None,
                 policies=None, mode_fields=MODE_FIELDS, **cluster_kwargs) -> Dict:
    """
    Full pipeline from clean transactions to cluster profiles.

    Returns:
        cluster_feature_table's dictionary plus category_audit and thresholds
    """
    print(f"[{tag}] {len(transactions):,} transactions, {transactions['client_id'].nunique():,} clients")
    reduced, audit = reduce_categories(transactions, policies)
    flagged, thresholds = flag_transactions(reduced)
    features = build_client_features(flagged, categorical_fields=mode_fields)
    kinds = feature_kinds(features)

    result = cluster_feature_table(features, kinds, tag=tag, k=k, **cluster_kwargs)
    result["category_audit"] = audit
    result["thresholds"] = thresholds
    return result


def _shrink_range(ks: Iterable[int], n_removed: int) -> List[int]:
    """Candidate K values of a previous pass, capped at its largest K minus n_removed."""
    ks = list(ks)
    top = max(ks, default=0) - n_removed
    return [c for c in ks if c <= top]


def rerun_without_clusters(result: Dict, clusters: Iterable[int], k: Optional[int] = None,
                           k_range_elbow: Optional[Iterable[int]] = None,
                           k_range_silhouette: Optional[Iterable[int]] = None,
                           tag: Optional[str] = None, **cluster_kwargs) -> Dict:
    """
    Drop the entities of reviewer-flagged clusters and cluster the rest again.

    By default the K ranges of the original pass shrink by the number of
    clusters removed.
    """
    clusters = list(clusters)
    ids = entities_in_clusters(result["partition"].labels, clusters)
    reduced = remove_entities(result["features"], ids)

    if k_range_elbow is None:
        k_range_elbow = _shrink_range(result["k_range_elbow"], len(clusters))
    if k_range_silhouette is None:
        k_range_silhouette = _shrink_range(result["k_range_silhouette"], len(clusters))

    new_tag = tag or f"{result['tag']}_minus_{'_'.join(str(c) for c in clusters)}"
    print(f"[{new_tag}] Re-running without clusters {clusters} ({len(ids):,} entities)")
    out = cluster_feature_table(reduced, result["kinds"], tag=new_tag, k=k,
                                k_range_elbow=k_range_elbow, k_range_silhouette=k_range_silhouette,
                                **cluster_kwargs)
    out["removed_clusters"] = clusters
    out["removed_ids"] = ids
    return out


def create_cluster_narrative(result: Dict) -> str:
    """Plain-language description of each cluster from its profile and lift tables."""
    tag = result["tag"]
    labels = result["partition"].labels
    n = len(labels)
    features = result["features"]
    profile = result["profile"]

    lines = []
    for cid, size in labels.value_counts().sort_index().items():
        members = features.loc[labels.index[labels == cid]]
        lines.append(f"{tag} - Cluster {int(cid)} - {int(size)} clients ({100.0 * size / n:.1f}%)")
        lines.append(f"- Avg transactions {members['n_transactions'].mean():.1f}, "
                     f"mean amount {members['mean_amount'].mean():.2f}, "
                     f"max amount {members['max_amount'].mean():.2f}")
        for field, lift in result["lift"].items():
            top = lift[lift["cluster"] == cid].iloc[0]
            lines.append(f"- {field}: {top['bucket']} ({top['share'] * 100:.0f}% vs "
                         f"{top['base_rate'] * 100:.0f}% overall, lift {top['lift']:.1f}x)")
        if profile is not None:
            feats = [f for f in profile.means.columns if f != "n_entities"][:3]
            desc = ", ".join(f"{f}={profile.means.loc[cid, f]:.2f}" for f in feats)
            lines.append(f"- Top model features: {desc}")
        lines.append("")
    return "\n".join(lines)


def create_summary_report(result: Dict, stability: Optional[pd.DataFrame] = None) -> str:
    """Plain-text run summary."""
    sel = result["selection"]
    report = []
    report.append("# Purchase-Card Client Segmentation Summary")
    report.append("=" * 70)
    report.append("")
    report.append(f"Analysis Date: {datetime.now().strftime('%Y-%m-%d %H:%M')}")
    report.append(f"Pass: {result['tag']}")
    report.append(f"Clients Analysed: {len(result['features']):,}")
    report.append(f"Attributes: {result['features'].shape[1]} "
                  f"({sum(1 for v in result['kinds'].values() if v == CATEGORICAL)} categorical)")
    report.append(f"Random Seed: {result['seed']}")
    report.append("")

    report.append("## CLUSTER COUNT")
    if sel is not None:
        report.append(f"- Elbow k: {sel.elbow_k}")
        report.append(f"- Best silhouette k: {sel.silhouette_k}")
        report.append(f"- Ranked candidates (advisory): {sel.candidates}")
    else:
        report.append("- K sweep skipped: no candidate K fits this pass")
    report.append(f"- Chosen k: {result['chosen_k']}")
    report.append(f"- Final inertia: {result['partition'].inertia:.4f}"
                  f"{'' if result['partition'].converged else ' (iteration cap reached)'}")
    report.append("")
    if sel is not None:
        report.append(sel.diagnostics.to_string(index=False))
        report.append("")

    report.append("## CLUSTER SIZES")
    for cid, size in result["partition"].labels.value_counts().sort_index().items():
        report.append(f"  Cluster {int(cid)}: {int(size):,} clients")
    report.append("")

    if stability is not None:
        report.append("## SEED STABILITY (ARI vs first seed)")
        report.append(stability.to_string(index=False))
        report.append("")

    report.append("## FEATURE IMPORTANCE")
    if result["profile"] is not None:
        report.append(result["profile"].importance.to_string(index=False))
    else:
        report.append(f"Profiling failed: {result['profile_error']}")
    report.append("")

    report.append("## TECHNICAL NOTES")
    if result["degenerate"]:
        report.append(f"- Zero-range attributes (Gower contribution 0): {', '.join(result['degenerate'])}")
    if "thresholds" in result:
        th = result["thresholds"]
        report.append(f"- Outlier fence ({OUTLIER_IQR_MULT}x IQR): [{th['outlier_low']:.2f}, {th['outlier_high']:.2f}]")
        report.append(f"- Extreme fence ({EXTREME_IQR_MULT}x IQR): [{th['extreme_low']:.2f}, {th['extreme_high']:.2f}]")
        report.append(f"- Tail ({TAIL_QUANTILES[0]:.1%}/{TAIL_QUANTILES[1]:.1%}): "
                      f"[{th['tail_low']:.2f}, {th['tail_high']:.2f}]")
        report.append(f"- Median amount: {th['median']:.2f}")
    report.append(f"- Category reduction: labels under {MIN_CATEGORY_SHARE:.0%} of records or beyond "
                  f"{MAX_CATEGORY_LEVELS} levels -> 'other'")
    report.append("- Review the *_lift.csv tables for clusters dominated by one bucket before re-running.")
    return "\n".join(report)


def write_outputs(result: Dict, out_dir: str = OUTPUT_DIR, stability: Optional[pd.DataFrame] = None) -> Dict[str, str]:
    """
    Write tables, figures and narrative for one pass.

    Returns:
        Mapping of output name -> path
    """
    os.makedirs(out_dir, exist_ok=True)
    tag = result["tag"]
    sel = result["selection"]
    paths = {}

    def _path(name):
        paths[name] = os.path.join(out_dir, f"{tag}_{name}")
        return paths[name]

    result["features"].to_csv(_path("client_features.csv"))
    result["partition"].labels.rename("cluster").to_frame().to_csv(_path("cluster_labels.csv"))
    if result["lift"]:
        pd.concat(result["lift"].values(), ignore_index=True).to_csv(_path("category_lift.csv"), index=False)
    if "category_audit" in result:
        result["category_audit"].to_csv(_path("category_audit.csv"), index=False)

    if sel is not None:
        sel.diagnostics.to_csv(_path("k_selection.csv"), index=False)
        diag = sel.diagnostics.set_index("k")
        plot_elbow_curve(diag["inertia"].dropna(), _path("elbow.png"), f"{tag}: Inertia by k (Gower)", sel.elbow_k)
        plot_silhouette_curve(diag["silhouette"].dropna(), _path("silhouette.png"),
                              f"{tag}: Silhouette by k (Gower)")

    if result["profile"] is not None:
        result["profile"].importance.to_csv(_path("feature_importance.csv"), index=False)
        result["profile"].means.to_csv(_path("cluster_profile_means.csv"))
        plot_feature_importance(result["profile"].importance, _path("feature_importance.png"),
                                f"{tag}: LightGBM split-count importance")
        plot_profile_heatmap(result["profile"].means, _path("cluster_profile_heatmap.png"),
                             f"{tag}: Cluster means of top features")

    with open(_path("cluster_narrative.txt"), "w", encoding="utf-8") as f:
        f.write(create_cluster_narrative(result))
    with open(_path("ANALYSIS_SUMMARY.txt"), "w", encoding="utf-8") as f:
        f.write(create_summary_report(result, stability))

    print(f"[{tag}] Wrote {len(paths)} files to {out_dir}/")
    return paths


def run_analysis(csv_path: str = CSV_PATH, out_dir: str = OUTPUT_DIR, k: Optional[int] = None) -> Dict:
    """Load the CSV, run the full pipeline and write the report."""
    print("=" * 60)
    print("PURCHASE-CARD CLIENT SEGMENTATION")
    print("=" * 60)
    print(f"Analysis started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Random seed: {SEED}")
    print()

    print("Step 1: Loading and cleaning data...")
    transactions = load_transactions(csv_path)
    print()

    print("Step 2: Features, distances, K sweep, clustering and profiling")
    print("-" * 50)
    result = run_pipeline(transactions, tag="full", k=k)

    print("\nStep 3: Seed stability")
    print("-" * 50)
    stability = seed_stability(result["distance"], result["chosen_k"], STABILITY_SEEDS, tag="full")

    print("\nStep 4: Writing outputs")
    print("-" * 50)
    write_outputs(result, out_dir, stability)

    print("\n" + "=" * 60)
    print("ANALYSIS COMPLETE!")
    print("=" * 60)
    print("Review full_category_lift.csv; to drop an anomalous cluster call "
          "rerun_without_clusters(result, [cluster_id]).")
    return result


if __name__ == "__main__":
    np.random.seed(SEED)
    path = sys.argv[1] if len(sys.argv) > 1 else CSV_PATH
    res = run_analysis(path)
    print(f"\nFinal: {res['chosen_k']} clusters, candidates={res['selection'].candidates}")
