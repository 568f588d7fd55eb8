import pytest

from return_purchase.errors import UndefinedMetricError
from return_purchase.evaluation import compute_roc_auc, evaluate_scores, quality_bucket


def test_two_row_perfect_separation():
    report = evaluate_scores([1, 0], [0.9, 0.2])
    assert report.roc_auc == 1.0
    assert report.quality_bucket == "good"
    assert report.accuracy == 1.0
    assert report.n_rows == 2
    assert report.n_positives == 1


def test_single_class_partition_is_undefined():
    report = evaluate_scores([1, 1, 1], [0.9, 0.4, 0.7])
    assert report.roc_auc is None
    assert not report.roc_auc_defined
    assert report.quality_bucket == "undefined"
    assert report.to_dict()["roc_auc"] is None


def test_compute_roc_auc_raises_on_single_class():
    with pytest.raises(UndefinedMetricError):
        compute_roc_auc([0, 0], [0.1, 0.3])


def test_roc_auc_with_ties_and_inversions():
    assert compute_roc_auc([0, 1, 0, 1], [0.1, 0.3, 0.35, 0.8]) == pytest.approx(0.75)
    assert compute_roc_auc([1, 0], [0.5, 0.5]) == pytest.approx(0.5)
    assert compute_roc_auc([1, 0], [0.1, 0.9]) == 0.0


@pytest.mark.parametrize("auc, bucket", [
    (0.95, "good"),
    (0.9, "fair"),
    (0.85, "fair"),
    (0.75, "decent"),
    (0.7, "not great"),
    (0.65, "not great"),
    (0.6, "poor"),
    (0.3, "poor"),
    (None, "undefined"),
])
def test_quality_buckets(auc, bucket):
    assert quality_bucket(auc) == bucket


def test_threshold_metrics():
    report = evaluate_scores([1, 1, 0, 0], [0.8, 0.4, 0.6, 0.1], threshold=0.5)
    assert report.precision == 0.5
    assert report.recall == 0.5
    assert report.accuracy == 0.5
    assert report.log_loss > 0


def test_empty_partition_report():
    report = evaluate_scores([], [])
    assert report.n_rows == 0
    assert report.roc_auc is None
    assert report.quality_bucket == "undefined"
