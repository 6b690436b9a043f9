# Configuration constants for the purchase-card segmentation pipeline

# ======================= CONFIG =======================
CSV_PATH = "data/purchase_card_transactions.csv"
OUTPUT_DIR = "outputs"      # tables, figures and narrative
SEED = 42

# Source header -> canonical column name
COLUMN_MAP = {
    "TRANS DATE": "date",
    "ORIGINAL GROSS AMT": "amount",
    "MERCHANT NAME": "merchant",
    "CARD NUMBER": "client_id",
    "TRANS CAC DESC 1": "category",
    "TRANS CAC DESC 2": "cost_centre",
    "Directorate": "directorate",
}
REQUIRED_COLUMNS = ["date", "amount", "merchant", "client_id"]
CATEGORICAL_COLUMNS = ["merchant", "category", "cost_centre", "directorate"]
DATE_DAYFIRST = True

# Record-level predicate thresholds (computed over the whole population)
OUTLIER_IQR_MULT = 1.5
EXTREME_IQR_MULT = 3.0
TAIL_QUANTILES = (0.025, 0.975)
PAYDAY_WINDOW_DAYS = 3     # last N days of the month count as near payday
PAYDAY_EARLY_DAYS = 2      # ...and so do the first N days

FLAG_COLUMNS = [
    "is_chargeback", "is_outlier", "is_extreme", "is_tail",
    "is_above_median", "is_near_payday", "is_weekend",
]

# Category reduction: (regex, canonical label), first match wins
MERCHANT_CANONICAL = [
    (r"^amazon|^amzn", "amazon"),
    (r"^asda", "asda"),
    (r"^tesco", "tesco"),
    (r"^sainsbury", "sainsburys"),
    (r"^morrisons|^wm morrison", "morrisons"),
    (r"^argos", "argos"),
    (r"^travelodge", "travelodge"),
    (r"^premier inn", "premier_inn"),
    (r"trainline|^virgin trains|^london midland|^west midlands trains", "rail"),
    (r"^post office", "post_office"),
    (r"^shell|^esso|^bp |^texaco", "fuel"),
    (r"^screwfix", "screwfix"),
    (r"^b ?& ?q", "bandq"),
    (r"^wickes", "wickes"),
]
OTHER_LABEL = "other"
MIN_CATEGORY_SHARE = 0.01   # labels under 1% of records -> "other"
MAX_CATEGORY_LEVELS = 15    # hard cap on retained labels per field

# Client feature table
MODE_FIELDS = ["merchant", "category", "directorate"]

# Clustering
K_RANGE_ELBOW = range(1, 8)        # inertia curve, K=1 is the trivial partition
K_RANGE_SILHOUETTE = range(2, 8)   # silhouette needs at least 2 clusters
N_INIT = 25                        # random centroid restarts per K
MAX_ITER = 300
STABILITY_SEEDS = (42, 123, 2024)

# Cluster profiler (LightGBM)
TOP_N = 8
CV_FOLDS = 5
EARLY_STOPPING_ROUNDS = 20
MAX_BOOST_ROUNDS = 500
LGBM_PARAMS = {
    "objective": "multiclass",
    "metric": "multi_logloss",
    "learning_rate": 0.05,
    "num_leaves": 15,
    "min_data_in_leaf": 5,
    "feature_fraction": 0.9,
    "bagging_fraction": 0.9,
    "bagging_freq": 1,
    "verbosity": -1,
}

DPI = 150
