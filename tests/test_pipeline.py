import json

import pandas as pd
import pytest

from return_purchase import pipeline as pipeline_module
from return_purchase.config import PipelineConfig
from return_purchase.errors import ConfigurationError, EmptyPartitionError
from return_purchase.pipeline import main, run_pipeline, save_outputs


def test_full_run(event_log, windows):
    result = run_pipeline(event_log, PipelineConfig.from_dict(windows))

    assert set(result.feature_tables) == {"train", "evaluate", "score"}
    for table in result.feature_tables.values():
        assert table.shape[0] > 0
    assert result.evaluation.roc_auc is not None
    assert result.evaluation.roc_auc > 0.7
    assert result.predictions.shape[0] == result.feature_tables["score"].shape[0]
    assert result.business_metrics.lift_at_k >= 1.0


def test_partitions_do_not_share_sessions(event_log, windows):
    tables = run_pipeline(event_log, PipelineConfig.from_dict(windows)).feature_tables
    ids = [set(t["session_id"]) for t in tables.values()]
    assert not (ids[0] & ids[1] or ids[1] & ids[2] or ids[0] & ids[2])
    assert tables["train"]["session_date"].max() < tables["evaluate"]["session_date"].min()
    assert tables["evaluate"]["session_date"].max() < tables["score"]["session_date"].min()


def test_rerun_is_idempotent(event_log, windows):
    config = PipelineConfig.from_dict(windows)
    first = run_pipeline(event_log, config)
    second = run_pipeline(event_log.copy(), config)
    for name in first.feature_tables:
        pd.testing.assert_frame_equal(first.feature_tables[name], second.feature_tables[name])
    assert second.evaluation.roc_auc == pytest.approx(first.evaluation.roc_auc, abs=1e-9)
    pd.testing.assert_frame_equal(first.predictions, second.predictions)


def test_train_label_sees_purchase_outside_train_window(event_log, windows):
    # v0041 first visits on 2017-02-11 (train) and buys on 2017-02-16 (evaluate window)
    train = run_pipeline(event_log, PipelineConfig.from_dict(windows)).feature_tables["train"]
    row = train[train["session_id"] == "v0041-1"].iloc[0]
    assert row["label"]


def test_empty_train_window_aborts_at_build(event_log):
    config = PipelineConfig.from_dict({
        "train_window": ["2016-01-01", "2016-01-31"],
        "evaluate_window": ["2017-02-15", "2017-03-09"],
        "score_window": ["2017-03-10", "2017-03-31"],
    })
    with pytest.raises(EmptyPartitionError) as excinfo:
        run_pipeline(event_log, config)
    assert excinfo.value.stage == "build"


def test_empty_score_window_only_warns(event_log, windows):
    config = PipelineConfig.from_dict({**windows, "score_window": ["2018-01-01", "2018-01-31"]})
    result = run_pipeline(event_log, config)
    assert result.predictions.empty
    assert result.business_metrics.n_rows == 0
    assert result.evaluation.roc_auc is not None


def test_overlapping_windows_rejected_before_any_data(windows):
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict({**windows, "evaluate_window": ["2017-02-10", "2017-03-09"]})


def test_save_outputs(tmp_path, event_log, windows):
    result = run_pipeline(event_log, PipelineConfig.from_dict(windows))
    save_outputs(result, tmp_path)
    assert (tmp_path / result.model.filename).exists()
    evaluation = json.loads((tmp_path / "evaluation.json").read_text())
    assert evaluation["model_version"] == result.model.version
    predictions = pd.read_csv(tmp_path / "predictions.csv")
    assert list(predictions.columns) == ["session_id", "predicted_label", "predicted_probability"]
    assert predictions["predicted_probability"].is_monotonic_decreasing
    metrics = json.loads((tmp_path / "business_metrics.json").read_text())
    assert metrics["lift_at_k"] == pytest.approx(result.business_metrics.lift_at_k)


def test_cli_run(tmp_path, event_log):
    events = tmp_path / "events.jsonl"
    event_log.to_json(events, orient="records", lines=True)
    out_dir = tmp_path / "out"
    code = main([
        "--events", str(events),
        "--train-window", "2017-01-01", "2017-02-14",
        "--evaluate-window", "2017-02-15", "2017-03-09",
        "--score-window", "2017-03-10", "2017-03-31",
        "--features", "bounces,time_on_site,latest_checkout_progress,device_category",
        "--label-definition", "purchase_any_nonfirst_transaction_flag",
        "--top-k-fraction", "0.25",
        "--out-dir", str(out_dir),
    ])
    assert code == 0
    run_config = json.loads((out_dir / "run_config.json").read_text())
    assert run_config["feature_columns"] == ["bounces", "time_on_site", "latest_checkout_progress", "device_category"]
    assert run_config["label_definition"] == "purchase_any_nonfirst_transaction_flag"
    assert (out_dir / "model_weights.csv").exists()


def test_cli_config_file_and_failure_publishes_nothing(tmp_path, event_log, windows):
    events = tmp_path / "events.jsonl"
    event_log.to_json(events, orient="records", lines=True)
    config_path = tmp_path / "run.json"
    config_path.write_text(json.dumps({**windows, "train_window": ["2016-01-01", "2016-01-31"]}))
    out_dir = tmp_path / "out"
    code = main(["--events", str(events), "--config", str(config_path), "--out-dir", str(out_dir)])
    assert code == 1
    assert not out_dir.exists()


def _fail_writing(name, monkeypatch):
    write_json = pipeline_module._write_json

    def _write(obj, path):
        if path.name == name:
            raise OSError("No space left on device")
        write_json(obj, path)

    monkeypatch.setattr(pipeline_module, "_write_json", _write)


def test_failed_publish_keeps_previous_run(tmp_path, event_log, windows, monkeypatch):
    result = run_pipeline(event_log, PipelineConfig.from_dict(windows))
    out_dir = tmp_path / "out"
    save_outputs(result, out_dir)
    published = sorted(p.name for p in out_dir.iterdir())

    _fail_writing("business_metrics.json", monkeypatch)
    with pytest.raises(OSError):
        save_outputs(result, out_dir)

    assert sorted(p.name for p in out_dir.iterdir()) == published
    assert [p.name for p in tmp_path.iterdir()] == ["out"]


def test_publish_replaces_previous_outputs(tmp_path, event_log, windows):
    result = run_pipeline(event_log, PipelineConfig.from_dict(windows))
    out_dir = tmp_path / "out"
    (out_dir / "predictions.csv").mkdir(parents=True)
    (out_dir / "stale.txt").write_text("old run")

    save_outputs(result, out_dir)
    assert (out_dir / "predictions.csv").is_file()
    assert not (out_dir / "stale.txt").exists()
    assert [p.name for p in tmp_path.iterdir()] == ["out"]


def test_cli_publish_failure_returns_error(tmp_path, event_log, windows, monkeypatch):
    events = tmp_path / "events.jsonl"
    event_log.to_json(events, orient="records", lines=True)
    config_path = tmp_path / "run.json"
    config_path.write_text(json.dumps(windows))
    out_dir = tmp_path / "out"

    _fail_writing("run_config.json", monkeypatch)
    code = main(["--events", str(events), "--config", str(config_path), "--out-dir", str(out_dir)])
    assert code == 1
    assert not out_dir.exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["events.jsonl", "run.json"]
