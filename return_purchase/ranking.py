"""
Score the held-out partition and rank sessions by purchase propensity.

- predict_sessions: ranked prediction table (session_id, predicted_label, predicted_probability)
- business_metrics: precision / lift / coverage at a top-K fraction of the ranking
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np
import pandas as pd

from return_purchase.config import DEFAULT_SCORE_THRESHOLD, DEFAULT_TOP_K_FRACTION, LABEL_COL
from return_purchase.errors import ConfigurationError, DataQualityError
from return_purchase.models.classification_model import ModelArtifact, check_schema, score

logger = logging.getLogger(__name__)

PREDICTION_COLUMNS = ["session_id", "predicted_label", "predicted_probability"]


@dataclass(frozen=True)
class BusinessMetrics:
    top_k_fraction: float
    k: int
    n_rows: int
    total_positives: int
    positives_in_top_k: int
    overall_positive_rate: Optional[float]
    precision_at_k: Optional[float]
    lift_at_k: Optional[float]
    coverage_at_k: Optional[float]

    @classmethod
    def empty(cls, top_k_fraction: float = DEFAULT_TOP_K_FRACTION) -> "BusinessMetrics":
        return cls(top_k_fraction, 0, 0, 0, 0, None, None, None, None)

    def to_dict(self) -> dict:
        return asdict(self)


def rank_predictions(predictions: pd.DataFrame) -> pd.DataFrame:
    """Sort by probability descending, then session_id ascending (stable)."""
    ranked = predictions.sort_values(
        ["predicted_probability", "session_id"],
        ascending=[False, True],
        kind="mergesort",
    )
    return ranked.reset_index(drop=True)


def predict_sessions(model: ModelArtifact, feature_table: pd.DataFrame,
                     threshold: float = DEFAULT_SCORE_THRESHOLD) -> pd.DataFrame:
    """Ranked Predictions for every row of the score partition. Labels are ignored."""
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"threshold must be within [0, 1], got {threshold}")
    check_schema(model, feature_table)
    if feature_table.shape[0] == 0:
        logger.warning("Score partition is empty; no predictions produced")
        return pd.DataFrame({
            "session_id": pd.Series(dtype=object),
            "predicted_label": pd.Series(dtype=bool),
            "predicted_probability": pd.Series(dtype=float),
        })

    proba = score(model, feature_table)
    predictions = pd.DataFrame({
        "session_id": feature_table["session_id"].to_numpy(),
        "predicted_label": proba >= threshold,
        "predicted_probability": proba,
    })
    ranked = rank_predictions(predictions)
    logger.info("Scored %d sessions; %d predicted to purchase on a return visit",
                ranked.shape[0], int(ranked["predicted_label"].sum()))
    return ranked


def top_k_size(n_rows: int, top_k_fraction: float) -> int:
    if not 0.0 < top_k_fraction <= 1.0:
        raise ConfigurationError(f"top_k_fraction must be within (0, 1], got {top_k_fraction}")
    if n_rows == 0:
        return 0
    return max(1, int(np.floor(n_rows * top_k_fraction)))


def compute_business_metrics(ranked_labels, top_k_fraction: float = DEFAULT_TOP_K_FRACTION) -> BusinessMetrics:
    """Metrics over true labels listed in ranking order (best first)."""
    y = np.asarray(ranked_labels).astype(int)
    n = len(y)
    k = top_k_size(n, top_k_fraction)
    if n == 0:
        return BusinessMetrics.empty(top_k_fraction)

    total_pos = int(y.sum())
    top_pos = int(y[:k].sum())
    base_rate = total_pos / n
    precision = top_pos / k
    return BusinessMetrics(
        top_k_fraction=float(top_k_fraction),
        k=k,
        n_rows=n,
        total_positives=total_pos,
        positives_in_top_k=top_pos,
        overall_positive_rate=float(base_rate),
        precision_at_k=float(precision),
        lift_at_k=float(precision / base_rate) if total_pos > 0 else None,
        coverage_at_k=float(top_pos / total_pos) if total_pos > 0 else None,
    )


def business_metrics(ranked: pd.DataFrame, feature_table: pd.DataFrame,
                     top_k_fraction: float = DEFAULT_TOP_K_FRACTION) -> BusinessMetrics:
    """Join true labels onto the ranked predictions by session_id and compute top-K metrics."""
    if ranked.shape[0] == 0:
        logger.warning("No ranked predictions; reporting empty business metrics")
        return BusinessMetrics.empty(top_k_fraction)
    labels = feature_table[["session_id", LABEL_COL]]
    joined = ranked[["session_id"]].merge(labels, on="session_id", how="left", validate="one_to_one")
    if joined[LABEL_COL].isna().any():
        raise DataQualityError(f"{int(joined[LABEL_COL].isna().sum())} ranked sessions have no true label")
    metrics = compute_business_metrics(joined[LABEL_COL].astype(bool).to_numpy(), top_k_fraction)
    logger.info("Top %.1f%% (k=%d): precision=%.4f lift=%s coverage=%s",
                100 * top_k_fraction, metrics.k, metrics.precision_at_k,
                metrics.lift_at_k, metrics.coverage_at_k)
    return metrics
