"""
End-to-end tests: clean transactions -> clusters -> profiles -> written report,
plus the remove-and-rerun path.
"""

import os

import pytest
from sklearn.metrics import adjusted_rand_score

from pcard_segments.main import cluster_feature_table, rerun_without_clusters, run_pipeline, write_outputs
from pcard_segments.clustering import seed_stability
from pcard_segments.errors import InvalidParameterError

FAST = {
    "n_init": 5,
    "k_range_elbow": range(1, 7),
    "k_range_silhouette": range(2, 7),
    "top_n": 5,
    "profile_params": {"max_rounds": 50, "early_stopping_rounds": 5},
}
NO_RANGES = {key: value for key, value in FAST.items() if not key.startswith("k_range")}


@pytest.fixture(scope="module")
def result(transactions):
    return run_pipeline(transactions, tag="test", k=3, **FAST)


class TestRunPipeline:

    def test_result_keys(self, result):
        for key in ["features", "kinds", "distance", "selection", "chosen_k", "partition",
                    "profile", "profile_error", "lift", "category_audit", "thresholds"]:
            assert key in result

    def test_partition(self, result, group_of):
        labels = result["partition"].labels
        assert result["chosen_k"] == 3
        assert labels.nunique() == 3
        assert adjusted_rand_score(group_of(labels.index), labels) == pytest.approx(1.0)

    def test_profile_present(self, result):
        assert result["profile_error"] is None
        assert len(result["profile"].importance) == 5

    def test_lift_per_categorical(self, result):
        assert set(result["lift"]) == {"top_merchant", "top_category", "top_directorate"}

    def test_advisory_k(self, transactions):
        res = run_pipeline(transactions, tag="auto", **FAST)
        assert res["chosen_k"] == res["selection"].candidates[0]

    def test_ranges_recorded(self, result):
        assert result["k_range_elbow"] == [1, 2, 3, 4, 5, 6]
        assert result["k_range_silhouette"] == [2, 3, 4, 5, 6]

    def test_without_categorical_fields(self, transactions, tmp_path):
        res = run_pipeline(transactions, tag="nocat", k=3, mode_fields=[], **FAST)
        assert res["lift"] == {}
        paths = write_outputs(res, str(tmp_path))
        assert "category_lift.csv" not in paths
        assert os.path.exists(paths["cluster_labels.csv"])
        assert os.path.exists(paths["cluster_narrative.txt"])

    def test_profiling_failure_keeps_labels(self, transactions):
        params = dict(FAST, profile_params={"n_folds": 50, "max_rounds": 10})
        res = run_pipeline(transactions, tag="nofold", k=3, **params)
        assert res["profile"] is None
        assert "CV folds" in res["profile_error"]
        assert res["partition"].labels.nunique() == 3


class TestExplicitK:

    @pytest.fixture
    def pair(self, client_features, kinds):
        return client_features.loc[["A000", "B000"]]

    def test_single_cluster_on_two_entities(self, pair, kinds):
        res = cluster_feature_table(pair, kinds, tag="pair", k=1, n_init=3)
        assert res["selection"] is None
        assert res["chosen_k"] == 1
        assert (res["partition"].labels == 0).all()
        assert res["profile"] is None

    def test_report_without_sweep(self, pair, kinds, tmp_path):
        res = cluster_feature_table(pair, kinds, tag="pair", k=1, n_init=3)
        paths = write_outputs(res, str(tmp_path))
        assert "k_selection.csv" not in paths
        with open(paths["ANALYSIS_SUMMARY.txt"], encoding="utf-8") as f:
            text = f.read()
        assert "K sweep skipped" in text
        assert "Chosen k: 1" in text

    def test_advisory_k_still_needs_a_sweep(self, pair, kinds):
        with pytest.raises(InvalidParameterError):
            cluster_feature_table(pair, kinds, tag="pair", n_init=3)


class TestRerunWithoutClusters:

    def test_drops_one_cluster(self, result):
        labels = result["partition"].labels
        flagged = int(labels["A000"])
        out = rerun_without_clusters(result, [flagged], **FAST)

        new_labels = out["partition"].labels
        assert len(new_labels) == len(labels) - (labels == flagged).sum()
        assert not any(i.startswith("A") for i in new_labels.index)
        assert out["removed_clusters"] == [flagged]
        assert out["chosen_k"] == 2
        assert new_labels.value_counts().min() > 0
        assert out["tag"] == f"test_minus_{flagged}"

    def test_default_ranges_shrink(self, result):
        flagged = int(result["partition"].labels["A000"])
        out = rerun_without_clusters(result, [flagged], **NO_RANGES)
        assert out["k_range_elbow"] == [1, 2, 3, 4, 5]
        assert out["k_range_silhouette"] == [2, 3, 4, 5]

    def test_default_ranges_shrink_from_small_first_pass(self, transactions):
        first = run_pipeline(transactions, tag="small", k=3, k_range_elbow=range(1, 4),
                             k_range_silhouette=range(2, 4), **NO_RANGES)
        flagged = int(first["partition"].labels["A000"])
        out = rerun_without_clusters(first, [flagged], **NO_RANGES)
        assert max(out["k_range_elbow"]) < max(first["k_range_elbow"])
        assert out["k_range_silhouette"] == [2]
        assert out["chosen_k"] == 2
        assert out["partition"].labels.value_counts().min() > 0

    def test_original_result_untouched(self, result):
        n = len(result["features"])
        rerun_without_clusters(result, [int(result["partition"].labels["B000"])], k=2, **FAST)
        assert len(result["features"]) == n

    def test_unknown_cluster(self, result):
        with pytest.raises(InvalidParameterError):
            rerun_without_clusters(result, [42], **FAST)


class TestWriteOutputs:

    def test_files_written(self, result, tmp_path):
        stability = seed_stability(result["distance"], 3, seeds=(1, 2), n_init=5)
        paths = write_outputs(result, str(tmp_path), stability)
        for name in ["client_features.csv", "k_selection.csv", "cluster_labels.csv",
                     "category_lift.csv", "category_audit.csv", "feature_importance.csv",
                     "cluster_profile_means.csv", "elbow.png", "silhouette.png",
                     "feature_importance.png", "cluster_profile_heatmap.png",
                     "cluster_narrative.txt", "ANALYSIS_SUMMARY.txt"]:
            assert os.path.exists(paths[name])
            assert os.path.basename(paths[name]) == f"test_{name}"

    def test_summary_mentions_choice(self, result, tmp_path):
        paths = write_outputs(result, str(tmp_path))
        with open(paths["ANALYSIS_SUMMARY.txt"], encoding="utf-8") as f:
            text = f.read()
        assert "Chosen k: 3" in text
        assert "Cluster 0" in text
