"""
return_purchase/config.py

Centralized configuration: paths, canonical column names, the null-default
table, model parameters and the validated run configuration.
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Tuple

from return_purchase.dataset_split import DateWindow, validate_windows
from return_purchase.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
OUTPUT_DIR = Path("outputs")
MODEL_DIR = Path("model_artifacts")

# ---------------------------------------------------------------------------
# Event store schema
# ---------------------------------------------------------------------------
# Raw export names (after lower-casing) -> canonical names
COLUMN_ALIASES = {
    "fullvisitorid": "visitor_id",
    "full_visitor_id": "visitor_id",
    "visitid": "visit_id",
    "date": "session_date",
    "newvisits": "is_first_visit",
    "new_visits": "is_first_visit",
    "bounced": "bounces",
    "timeonsite": "time_on_site",
    "transactions": "transactions_count",
    "source": "traffic_source",
    "medium": "traffic_medium",
    "channelgrouping": "channel_grouping",
    "devicecategory": "device_category",
    "hits": "events",
    # GA export records flattened one level (totals.newVisits -> totals_newvisits)
    "totals_newvisits": "is_first_visit",
    "totals_bounces": "bounces",
    "totals_timeonsite": "time_on_site",
    "totals_pageviews": "pageviews",
    "totals_transactions": "transactions_count",
    "trafficsource_source": "traffic_source",
    "trafficsource_medium": "traffic_medium",
    "device_devicecategory": "device_category",
    "geonetwork_country": "country",
}

SESSION_KEY = ["visitor_id", "visit_id"]

REQUIRED_COLUMNS = [
    "visitor_id",
    "visit_id",
    "session_date",
    "is_first_visit",
    "traffic_source",
    "traffic_medium",
    "channel_grouping",
    "device_category",
]

# The only implicit defaults the pipeline applies. Every other null is kept.
SESSION_DEFAULTS = {
    "bounces": 0,
    "time_on_site": 0,
    "pageviews": 0,
    "country": "",
    "transactions_count": 0,
    "is_first_visit": False,
}

# Checkout progress ordinal (hits.eCommerceAction.action_type)
MIN_ACTION_TYPE = 0
PURCHASE_ACTION_TYPE = 6

# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------
KEY_COLUMNS = ["session_id", "visitor_id", "visit_id", "session_date"]
LABEL_COL = "label"

NUMERIC_FEATURES = ["bounces", "time_on_site", "pageviews", "latest_checkout_progress"]
CATEGORICAL_FEATURES = ["traffic_source", "traffic_medium", "channel_grouping", "device_category", "country"]
FEATURE_COLUMNS = NUMERIC_FEATURES + CATEGORICAL_FEATURES

DEFAULT_FEATURE_COLUMNS = (
    "bounces",
    "time_on_site",
    "latest_checkout_progress",
    "traffic_source",
    "traffic_medium",
    "channel_grouping",
    "device_category",
    "country",
)

# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------
RANDOM_STATE = 42
MODEL_TYPES = ("logreg", "rf")

LOGREG_PARAMS = {
    "max_iter": 1000,
    "solver": "liblinear",
    "random_state": RANDOM_STATE,
}

RF_PARAMS = {
    "n_estimators": 200,
    "min_samples_leaf": 5,
    "random_state": RANDOM_STATE,
    "n_jobs": 1,
}

DEFAULT_SCORE_THRESHOLD = 0.5
DEFAULT_TOP_K_FRACTION = 0.1


class LabelDefinition(str, Enum):
    PURCHASE_EXCLUDES_FIRST_SESSION = "purchase_excludes_first_session"
    PURCHASE_ANY_NONFIRST_TRANSACTION_FLAG = "purchase_any_nonfirst_transaction_flag"


def parse_label_definition(value) -> LabelDefinition:
    try:
        return LabelDefinition(value)
    except ValueError:
        options = ", ".join(d.value for d in LabelDefinition)
        raise ConfigurationError(f"unknown label definition {value!r} (expected one of: {options})")


def order_feature_columns(columns) -> Tuple[str, ...]:
    """Validate a feature-column set and return it in canonical order."""
    cols = set(columns)
    if not cols:
        raise ConfigurationError("feature column set is empty")
    unknown = sorted(cols - set(FEATURE_COLUMNS))
    if unknown:
        raise ConfigurationError(f"unknown feature columns: {unknown}")
    return tuple(c for c in FEATURE_COLUMNS if c in cols)


@dataclass(frozen=True)
class PipelineConfig:
    """One run's parameters. Validated on construction, before any data scan."""

    train_window: DateWindow
    evaluate_window: DateWindow
    score_window: DateWindow
    feature_columns: Tuple[str, ...] = DEFAULT_FEATURE_COLUMNS
    label_definition: LabelDefinition = LabelDefinition.PURCHASE_EXCLUDES_FIRST_SESSION
    score_threshold: float = DEFAULT_SCORE_THRESHOLD
    top_k_fraction: float = DEFAULT_TOP_K_FRACTION
    model_type: str = "logreg"

    def __post_init__(self):
        for name in ("train_window", "evaluate_window", "score_window"):
            value = getattr(self, name)
            if not isinstance(value, DateWindow):
                try:
                    start, end = value
                except (TypeError, ValueError):
                    raise ConfigurationError(f"{name} must be a [start, end] pair, got {value!r}")
                object.__setattr__(self, name, DateWindow(start, end))
        validate_windows(self.train_window, self.evaluate_window, self.score_window)

        object.__setattr__(self, "feature_columns", order_feature_columns(self.feature_columns))
        object.__setattr__(self, "label_definition", parse_label_definition(self.label_definition))

        if not 0.0 <= float(self.score_threshold) <= 1.0:
            raise ConfigurationError(f"score_threshold must be within [0, 1], got {self.score_threshold}")
        if not 0.0 < float(self.top_k_fraction) <= 1.0:
            raise ConfigurationError(f"top_k_fraction must be within (0, 1], got {self.top_k_fraction}")
        if self.model_type not in MODEL_TYPES:
            raise ConfigurationError(f"unknown model type {self.model_type!r} (expected one of {MODEL_TYPES})")

    @property
    def windows(self):
        return {
            "train": self.train_window,
            "evaluate": self.evaluate_window,
            "score": self.score_window,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        known = {
            "train_window", "evaluate_window", "score_window", "feature_columns",
            "label_definition", "score_threshold", "top_k_fraction", "model_type",
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {unknown}")
        missing = sorted({"train_window", "evaluate_window", "score_window"} - set(data))
        if missing:
            raise ConfigurationError(f"missing configuration keys: {missing}")
        return cls(**data)

    def to_dict(self) -> dict:
        return {
            "train_window": self.train_window.as_list(),
            "evaluate_window": self.evaluate_window.as_list(),
            "score_window": self.score_window.as_list(),
            "feature_columns": list(self.feature_columns),
            "label_definition": self.label_definition.value,
            "score_threshold": float(self.score_threshold),
            "top_k_fraction": float(self.top_k_fraction),
            "model_type": self.model_type,
        }


def load_config(path) -> PipelineConfig:
    """Read a PipelineConfig from a JSON file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"invalid JSON in {p}: {exc}") from exc
    return PipelineConfig.from_dict(data)
