# Purchase-card client segmentation

"""
Client segmentation of municipal purchase-card transactions:

- data_cleaning.py: Loading, label cleanup, category reduction and transaction flags
- features.py: Client-level feature table
- dissimilarity.py: Gower distance over mixed continuous/categorical attributes
- clustering.py: KMeans partitions, inertia/silhouette sweeps and K candidates
- profiling.py: LightGBM feature importance, cluster means and anomaly review seam
- figures.py: Report figures
- main.py: Orchestration script that ties everything together
"""

__version__ = "1.0.0"
