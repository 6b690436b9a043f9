# Report figures: K diagnostics, feature importance and cluster profiles
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Optional

from .config import DPI


def plot_elbow_curve(inertia: pd.Series, path: str, title: str, elbow_k: Optional[int] = None):
    """Inertia by k, with the elbow marked."""
    fig, ax = plt.subplots(figsize=(7, 4.2))
    ax.plot(inertia.index, inertia.values, marker="o")
    if elbow_k is not None and elbow_k in inertia.index:
        ax.axvline(elbow_k, linestyle="--", color="grey", alpha=0.7)
        ax.annotate(f"elbow k={elbow_k}", (elbow_k, inertia.loc[elbow_k]),
                    textcoords="offset points", xytext=(8, 8))
    ax.set_xlabel("Number of Clusters (k)")
    ax.set_ylabel("Inertia (within-cluster SS)")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(path, dpi=DPI)
    plt.close(fig)


def plot_silhouette_curve(silhouette: pd.Series, path: str, title: str):
    """Plot silhouette scores by k value."""
    plt.figure(figsize=(7, 4))
    plt.plot(silhouette.index, silhouette.values, marker="o")
    plt.xlabel("Number of Clusters (k)")
    plt.ylabel("Mean Silhouette (Gower)")
    plt.title(title)
    plt.grid(alpha=0.3)
    plt.tight_layout()
    plt.savefig(path, dpi=DPI)
    plt.close()


def plot_feature_importance(importance: pd.DataFrame, path: str, title: str):
    fig, ax = plt.subplots(figsize=(8, max(3, 0.45 * len(importance) + 1)))
    sns.barplot(data=importance, x="importance", y="feature", color="steelblue", ax=ax)
    ax.set_xlabel("Split count")
    ax.set_ylabel("")
    ax.set_title(title)
    fig.tight_layout()
    fig.savefig(path, dpi=DPI)
    plt.close(fig)


def plot_profile_heatmap(means: pd.DataFrame, path: str, title: str):
    """Per-cluster feature means, z-scored across clusters so features share one colour scale."""
    feats = means.drop(columns=["n_entities"], errors="ignore")
    std = feats.std(ddof=0).replace(0, np.nan)
    z = ((feats - feats.mean()) / std).fillna(0.0)

    fig, ax = plt.subplots(figsize=(max(6, 0.9 * feats.shape[1] + 2), max(3, 0.6 * len(feats) + 1.5)))
    sns.heatmap(z, annot=feats.round(2), fmt="", cmap="coolwarm", center=0, cbar=False, ax=ax)
    ax.set_xlabel("")
    ax.set_ylabel("Cluster")
    ax.set_title(title)
    plt.setp(ax.get_xticklabels(), rotation=35, ha="right")
    fig.tight_layout()
    fig.savefig(path, dpi=DPI)
    plt.close(fig)
