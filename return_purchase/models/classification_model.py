"""
return_purchase/models/classification_model.py

Train a classifier to predict the return-visit purchase `label` from
first-session features, and score feature tables with it.

Contract:
- train_classifier(feature_table, feature_columns) -> ModelArtifact
- score(model, feature_table) -> probability per row in [0, 1]
A ModelArtifact is tied to the exact feature-column set it was trained on;
scoring a table with any other feature schema raises SchemaMismatchError.
Artifacts are saved with joblib to model_artifacts/return_purchase_<version>.joblib
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import joblib
import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from return_purchase.config import (
    CATEGORICAL_FEATURES,
    LABEL_COL,
    LOGREG_PARAMS,
    MODEL_DIR,
    MODEL_TYPES,
    NUMERIC_FEATURES,
    RF_PARAMS,
    order_feature_columns,
)
from return_purchase.errors import (
    ConfigurationError,
    EmptyPartitionError,
    SchemaMismatchError,
    TrainingDataError,
)
from return_purchase.feature_engineering import feature_columns_of

logger = logging.getLogger(__name__)


def feature_set_version(feature_columns) -> str:
    """Stable version id for a feature-column set."""
    key = ",".join(sorted(feature_columns))
    return "fs-" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class ModelArtifact:
    estimator: Pipeline
    feature_columns: Tuple[str, ...]
    version: str
    model_type: str = "logreg"

    @property
    def filename(self) -> str:
        return f"return_purchase_{self.version}.joblib"


def build_model_pipeline(numeric_features, categorical_features, model_type="logreg"):
    """Return sklearn pipeline (ColumnTransformer + estimator)."""
    transformers = []

    if numeric_features:
        transformers.append(("num", StandardScaler(), list(numeric_features)))

    if categorical_features:
        ohe = OneHotEncoder(handle_unknown="ignore", sparse_output=False)
        transformers.append(("cat", ohe, list(categorical_features)))

    preproc = ColumnTransformer(
        transformers=transformers,
        remainder="drop",
        verbose_feature_names_out=False,
    )

    if model_type == "rf":
        clf = RandomForestClassifier(**RF_PARAMS)
    elif model_type == "logreg":
        clf = LogisticRegression(**LOGREG_PARAMS)
    else:
        raise ConfigurationError(f"unknown model type {model_type!r} (expected one of {MODEL_TYPES})")

    pipeline = Pipeline([
        ("preproc", preproc),
        ("clf", clf),
    ])
    return pipeline


def _split_features(feature_columns):
    numeric = [c for c in feature_columns if c in NUMERIC_FEATURES]
    categorical = [c for c in feature_columns if c in CATEGORICAL_FEATURES]
    return numeric, categorical


def _design_matrix(feature_table: pd.DataFrame, feature_columns) -> pd.DataFrame:
    numeric, categorical = _split_features(feature_columns)
    X = feature_table[list(feature_columns)].copy()
    for c in numeric:
        X[c] = X[c].astype(float)
    for c in categorical:
        X[c] = X[c].astype(object)
    return X


def train_classifier(feature_table: pd.DataFrame, feature_columns, model_type: str = "logreg") -> ModelArtifact:
    """Fit a classifier on the train partition's feature table."""
    cols = order_feature_columns(feature_columns)
    if feature_table.shape[0] == 0:
        raise EmptyPartitionError("train partition has no first-time sessions")
    missing = [c for c in cols if c not in feature_table.columns]
    if missing:
        raise SchemaMismatchError(f"train table is missing feature columns {missing}")

    y = feature_table[LABEL_COL].astype(int)
    if y.nunique() < 2:
        raise TrainingDataError(
            f"train partition has a single class (label={int(y.iloc[0])}) across {len(y)} rows"
        )

    numeric, categorical = _split_features(cols)
    logger.info("Numeric features: %s", numeric)
    logger.info("Categorical features: %s", categorical)

    pipe = build_model_pipeline(numeric, categorical, model_type=model_type)
    pipe.fit(_design_matrix(feature_table, cols), y)

    model = ModelArtifact(
        estimator=pipe,
        feature_columns=cols,
        version=feature_set_version(cols),
        model_type=model_type,
    )
    logger.info("Trained %s model %s on %d rows (positive rate %.4f)",
                model_type, model.version, len(y), float(y.mean()))
    return model


def check_schema(model: ModelArtifact, feature_table: pd.DataFrame) -> None:
    """Raise SchemaMismatchError unless the table's feature schema is the model's."""
    got = set(feature_columns_of(feature_table))
    expected = set(model.feature_columns)
    if got != expected:
        raise SchemaMismatchError(
            f"model {model.version} expects features {sorted(expected)}; "
            f"missing={sorted(expected - got)} unexpected={sorted(got - expected)}"
        )


def score(model: ModelArtifact, feature_table: pd.DataFrame) -> np.ndarray:
    """Probability of the positive label for every row of `feature_table`."""
    check_schema(model, feature_table)
    if feature_table.shape[0] == 0:
        return np.array([], dtype=float)
    X = _design_matrix(feature_table, model.feature_columns)
    proba = model.estimator.predict_proba(X)[:, 1]
    return np.clip(proba.astype(float), 0.0, 1.0)


def model_weights(model: ModelArtifact) -> pd.DataFrame:
    """Per-encoded-feature weights: coefficients for logreg, importances for rf."""
    names = model.estimator.named_steps["preproc"].get_feature_names_out()
    clf = model.estimator.named_steps["clf"]
    if hasattr(clf, "coef_"):
        weights = clf.coef_[0]
        rows = [("(intercept)", float(clf.intercept_[0]))]
    else:
        weights = clf.feature_importances_
        rows = []
    rows += [(str(n), float(w)) for n, w in zip(names, weights)]
    return pd.DataFrame(rows, columns=["feature", "weight"])


def save_model(model: ModelArtifact, out_dir=MODEL_DIR) -> Path:
    out_path = Path(out_dir) / model.filename
    out_path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(
        {
            "model": model.estimator,
            "feature_columns": list(model.feature_columns),
            "version": model.version,
            "model_type": model.model_type,
        },
        out_path,
    )
    logger.info("Saved model to %s", out_path)
    return out_path


def load_model(path) -> ModelArtifact:
    bundle = joblib.load(path)
    cols = tuple(bundle["feature_columns"])
    if bundle["version"] != feature_set_version(cols):
        raise SchemaMismatchError(f"{path}: version {bundle['version']} does not match its feature columns")
    return ModelArtifact(
        estimator=bundle["model"],
        feature_columns=cols,
        version=bundle["version"],
        model_type=bundle.get("model_type", "logreg"),
    )
