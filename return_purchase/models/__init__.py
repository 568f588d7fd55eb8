from .classification_model import (
    ModelArtifact,
    build_model_pipeline,
    feature_set_version,
    load_model,
    model_weights,
    save_model,
    score,
    train_classifier,
)

__all__ = [
    "ModelArtifact",
    "build_model_pipeline",
    "feature_set_version",
    "load_model",
    "model_weights",
    "save_model",
    "score",
    "train_classifier",
]
