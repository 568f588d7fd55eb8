"""
Evaluate a trained model on the evaluate partition.

Metrics:
- ROC-AUC (explicitly undefined on single-class partitions)
- quality bucket derived from ROC-AUC
- precision / recall / accuracy / f1 / log_loss at the score threshold
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, f1_score, log_loss, precision_score, recall_score, roc_auc_score

from return_purchase.config import DEFAULT_SCORE_THRESHOLD, LABEL_COL
from return_purchase.errors import UndefinedMetricError
from return_purchase.models.classification_model import ModelArtifact, check_schema, score

logger = logging.getLogger(__name__)

UNDEFINED = "undefined"

# (exclusive lower bound, bucket), checked top-down
QUALITY_BUCKETS = [
    (0.9, "good"),
    (0.8, "fair"),
    (0.7, "decent"),
    (0.6, "not great"),
]
POOR = "poor"


@dataclass(frozen=True)
class EvaluationReport:
    roc_auc: Optional[float]
    quality_bucket: str
    n_rows: int
    n_positives: int
    threshold: float = DEFAULT_SCORE_THRESHOLD
    precision: Optional[float] = None
    recall: Optional[float] = None
    accuracy: Optional[float] = None
    f1_score: Optional[float] = None
    log_loss: Optional[float] = None

    @property
    def roc_auc_defined(self) -> bool:
        return self.roc_auc is not None

    @classmethod
    def empty(cls, threshold: float = DEFAULT_SCORE_THRESHOLD) -> "EvaluationReport":
        return cls(roc_auc=None, quality_bucket=UNDEFINED, n_rows=0, n_positives=0, threshold=threshold)

    def to_dict(self) -> dict:
        return asdict(self)


def compute_roc_auc(y_true, y_score) -> float:
    """Area under the TPR-vs-FPR curve across all thresholds."""
    y_true = np.asarray(y_true).astype(int)
    if len(np.unique(y_true)) < 2:
        raise UndefinedMetricError(
            f"ROC-AUC is undefined on a partition with a single class ({len(y_true)} rows)"
        )
    return float(roc_auc_score(y_true, np.asarray(y_score, dtype=float)))


def quality_bucket(roc_auc: Optional[float]) -> str:
    if roc_auc is None:
        return UNDEFINED
    for bound, bucket in QUALITY_BUCKETS:
        if roc_auc > bound:
            return bucket
    return POOR


def evaluate_scores(y_true, y_score, threshold: float = DEFAULT_SCORE_THRESHOLD) -> EvaluationReport:
    y_true = np.asarray(y_true).astype(int)
    y_score = np.asarray(y_score, dtype=float)
    if len(y_true) == 0:
        return EvaluationReport.empty(threshold)

    try:
        auc = compute_roc_auc(y_true, y_score)
    except UndefinedMetricError as exc:
        logger.warning("%s", exc)
        auc = None

    y_pred = (y_score >= threshold).astype(int)
    report = EvaluationReport(
        roc_auc=auc,
        quality_bucket=quality_bucket(auc),
        n_rows=int(len(y_true)),
        n_positives=int(y_true.sum()),
        threshold=float(threshold),
        precision=float(precision_score(y_true, y_pred, zero_division=0)),
        recall=float(recall_score(y_true, y_pred, zero_division=0)),
        accuracy=float(accuracy_score(y_true, y_pred)),
        f1_score=float(f1_score(y_true, y_pred, zero_division=0)),
        log_loss=float(log_loss(y_true, np.clip(y_score, 1e-15, 1 - 1e-15), labels=[0, 1])),
    )
    logger.info("Evaluation: roc_auc=%s (%s) rows=%d positives=%d",
                "undefined" if auc is None else f"{auc:.4f}", report.quality_bucket,
                report.n_rows, report.n_positives)
    return report


def evaluate_model(model: ModelArtifact, feature_table: pd.DataFrame,
                   threshold: float = DEFAULT_SCORE_THRESHOLD) -> EvaluationReport:
    """Score the evaluate partition with `model` and report against its true labels."""
    check_schema(model, feature_table)
    if feature_table.shape[0] == 0:
        logger.warning("Evaluate partition is empty; reporting an empty evaluation")
        return EvaluationReport.empty(threshold)
    proba = score(model, feature_table)
    return evaluate_scores(feature_table[LABEL_COL].astype(int).to_numpy(), proba, threshold)
