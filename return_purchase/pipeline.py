"""
return_purchase/pipeline.py

Batch run: aggregate sessions -> label visitors -> split windows -> build
feature tables -> train -> evaluate -> score & rank.

Stages run strictly in order. Any PipelineError aborts the run tagged with
the failing stage; outputs are only written by save_outputs after every
stage has succeeded.

Usage:
    python -m return_purchase.pipeline --events data/raw/ga_sessions.jsonl \
        --train-window 2016-08-01 2017-01-31 \
        --evaluate-window 2017-02-01 2017-04-30 \
        --score-window 2017-05-01 2017-08-01 \
        --out-dir outputs
"""

import argparse
import json
import logging
import shutil
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import pandas as pd

from return_purchase.config import (
    DEFAULT_FEATURE_COLUMNS,
    DEFAULT_SCORE_THRESHOLD,
    DEFAULT_TOP_K_FRACTION,
    MODEL_TYPES,
    OUTPUT_DIR,
    LabelDefinition,
    PipelineConfig,
    load_config,
)
from return_purchase.data_preprocessing import read_event_store
from return_purchase.dataset_split import EMPTY_PARTITION_FATAL, split_sessions
from return_purchase.errors import EmptyPartitionError, PipelineError
from return_purchase.evaluation import EvaluationReport, evaluate_model
from return_purchase.feature_engineering import build_feature_table, create_session_features
from return_purchase.models.classification_model import ModelArtifact, model_weights, save_model, train_classifier
from return_purchase.ranking import BusinessMetrics, business_metrics, predict_sessions
from return_purchase.target_creation import create_visitor_labels

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    config: PipelineConfig
    model: ModelArtifact
    evaluation: EvaluationReport
    predictions: pd.DataFrame
    business_metrics: BusinessMetrics
    feature_tables: Dict[str, pd.DataFrame]


@contextmanager
def stage(name: str):
    logger.info("Stage %s: start", name)
    try:
        yield
    except PipelineError as exc:
        if exc.stage is None:
            exc.stage = name
        logger.error("stage %s failed: %s", exc.stage, exc.args[0] if exc.args else exc)
        raise
    logger.info("Stage %s: done", name)


def run_pipeline(sessions: pd.DataFrame, config: PipelineConfig) -> PipelineResult:
    """Run every stage over raw session rows (full history, not pre-windowed)."""
    with stage("aggregate"):
        session_features = create_session_features(sessions)

    with stage("label"):
        # labels always see the whole history, independent of the windows
        labels = create_visitor_labels(session_features, config.label_definition)

    with stage("split"):
        partitions = split_sessions(session_features, config.windows)

    feature_tables = {}
    with stage("build"):
        for name, part in partitions.items():
            table = build_feature_table(part, labels, config.feature_columns)
            if table.shape[0] == 0:
                msg = f"{name} window {config.windows[name]} has no first-time sessions"
                if EMPTY_PARTITION_FATAL[name]:
                    raise EmptyPartitionError(msg)
                logger.warning("%s", msg)
            feature_tables[name] = table

    with stage("train"):
        model = train_classifier(feature_tables["train"], config.feature_columns, model_type=config.model_type)

    with stage("evaluate"):
        evaluation = evaluate_model(model, feature_tables["evaluate"], config.score_threshold)

    with stage("score"):
        ranked = predict_sessions(model, feature_tables["score"], config.score_threshold)
        metrics = business_metrics(ranked, feature_tables["score"], config.top_k_fraction)

    return PipelineResult(
        config=config,
        model=model,
        evaluation=evaluation,
        predictions=ranked,
        business_metrics=metrics,
        feature_tables=feature_tables,
    )


def _write_json(obj: dict, path: Path):
    path.write_text(json.dumps(obj, indent=2, sort_keys=True))
    logger.info("Saved %s", path)


def _write_outputs(result: PipelineResult, out_dir: Path):
    save_model(result.model, out_dir)
    model_weights(result.model).to_csv(out_dir / "model_weights.csv", index=False)

    evaluation = result.evaluation.to_dict()
    evaluation["model_version"] = result.model.version
    _write_json(evaluation, out_dir / "evaluation.json")

    result.predictions.to_csv(out_dir / "predictions.csv", index=False)
    logger.info("Saved %d ranked predictions to %s", result.predictions.shape[0], out_dir / "predictions.csv")

    _write_json(result.business_metrics.to_dict(), out_dir / "business_metrics.json")
    _write_json(result.config.to_dict(), out_dir / "run_config.json")


def save_outputs(result: PipelineResult, out_dir=OUTPUT_DIR) -> Path:
    """Publish the model, evaluation, ranked predictions and business metrics.

    Files are written to a staging directory next to `out_dir` which is then
    renamed into place, so `out_dir` holds either a complete run or whatever
    it held before. A previous run in `out_dir` is replaced.
    """
    out_dir = Path(out_dir)
    out_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{out_dir.name}.staging-", dir=out_dir.parent))
    try:
        _write_outputs(result, staging)
        if out_dir.exists():
            retired = Path(tempfile.mkdtemp(prefix=f".{out_dir.name}.old-", dir=out_dir.parent))
            out_dir.rename(retired / out_dir.name)
            try:
                staging.rename(out_dir)
            except OSError:
                (retired / out_dir.name).rename(out_dir)
                raise
            finally:
                shutil.rmtree(retired, ignore_errors=True)
        else:
            staging.rename(out_dir)
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    logger.info("Published run outputs to %s", out_dir)
    return out_dir


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Predict return-visit purchases from first sessions")
    parser.add_argument("--events", required=True, help="Event-store export (.jsonl with nested hits, or hit-level .csv)")
    parser.add_argument("--config", default=None, help="JSON run configuration; CLI flags override its values")
    parser.add_argument("--train-window", nargs=2, metavar=("START", "END"), default=None)
    parser.add_argument("--evaluate-window", nargs=2, metavar=("START", "END"), default=None)
    parser.add_argument("--score-window", nargs=2, metavar=("START", "END"), default=None)
    parser.add_argument("--features", default=None,
                        help=f"Comma separated feature columns (default: {','.join(DEFAULT_FEATURE_COLUMNS)})")
    parser.add_argument("--label-definition", choices=[d.value for d in LabelDefinition], default=None)
    parser.add_argument("--threshold", type=float, default=None, help=f"Score threshold (default {DEFAULT_SCORE_THRESHOLD})")
    parser.add_argument("--top-k-fraction", type=float, default=None, help=f"Top-K fraction (default {DEFAULT_TOP_K_FRACTION})")
    parser.add_argument("--model-type", choices=list(MODEL_TYPES), default=None)
    parser.add_argument("--out-dir", default=str(OUTPUT_DIR), help="Where to write the run outputs")
    return parser.parse_args(argv)


def config_from_args(args) -> PipelineConfig:
    values = load_config(args.config).to_dict() if args.config else {}
    overrides = {
        "train_window": args.train_window,
        "evaluate_window": args.evaluate_window,
        "score_window": args.score_window,
        "feature_columns": [c.strip() for c in args.features.split(",") if c.strip()] if args.features is not None else None,
        "label_definition": args.label_definition,
        "score_threshold": args.threshold,
        "top_k_fraction": args.top_k_fraction,
        "model_type": args.model_type,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return PipelineConfig.from_dict(values)


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = parse_args(argv)
    try:
        with stage("configure"):
            config = config_from_args(args)
        with stage("load"):
            sessions = read_event_store(args.events)
        result = run_pipeline(sessions, config)
    except PipelineError as exc:
        logger.error("Run aborted; nothing was published (%s)", exc)
        return 1
    try:
        save_outputs(result, args.out_dir)
    except OSError as exc:
        logger.error("stage publish failed; nothing was published (%s)", exc)
        return 1
    ev = result.evaluation
    print(f"ROC-AUC: {'undefined' if ev.roc_auc is None else round(ev.roc_auc, 4)} ({ev.quality_bucket})")
    bm = result.business_metrics
    print(f"Lift@{bm.top_k_fraction:.0%}: {bm.lift_at_k}  Coverage: {bm.coverage_at_k}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
