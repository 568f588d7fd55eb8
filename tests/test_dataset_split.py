import datetime as dt
import itertools

import pandas as pd
import pytest

from return_purchase.dataset_split import DateWindow, split_sessions, validate_windows
from return_purchase.errors import ConfigurationError


def _w(start_day, end_day, base=dt.date(2017, 1, 1)):
    return DateWindow(base + dt.timedelta(days=start_day), base + dt.timedelta(days=end_day))


def test_window_accepts_strings_and_rejects_reversed_range():
    w = DateWindow("2017-01-01", "2017-01-31")
    assert w.start == dt.date(2017, 1, 1)
    assert w.as_list() == ["2017-01-01", "2017-01-31"]
    with pytest.raises(ConfigurationError):
        DateWindow("2017-02-01", "2017-01-31")
    with pytest.raises(ConfigurationError):
        DateWindow("yesterday-ish", "2017-01-31")


def test_window_mask_is_inclusive():
    dates = pd.Series([pd.Timestamp("2016-12-31"), pd.Timestamp("2017-01-01"),
                       pd.Timestamp("2017-01-31 12:00"), pd.Timestamp("2017-02-01")])
    assert DateWindow("2017-01-01", "2017-01-31").mask(dates).tolist() == [False, True, True, False]


def test_ordered_disjoint_windows_are_accepted():
    validate_windows(_w(0, 9), _w(10, 19), _w(20, 29))


def test_every_overlapping_triple_is_rejected():
    spans = [(0, 9), (5, 14), (10, 19), (15, 24), (20, 29)]
    windows = [_w(a, b) for a, b in spans]
    for train, evaluate, score in itertools.product(windows, repeat=3):
        overlapping = train.overlaps(evaluate) or evaluate.overlaps(score) or train.overlaps(score)
        if overlapping:
            with pytest.raises(ConfigurationError):
                validate_windows(train, evaluate, score)


def test_shared_boundary_day_is_an_overlap():
    with pytest.raises(ConfigurationError):
        validate_windows(_w(0, 10), _w(10, 19), _w(20, 29))


def test_misordered_windows_are_rejected():
    with pytest.raises(ConfigurationError):
        validate_windows(_w(20, 29), _w(10, 19), _w(0, 9))
    with pytest.raises(ConfigurationError):
        validate_windows(_w(0, 9), _w(20, 29), _w(10, 19))


def test_split_sessions_filters_by_window():
    sessions = pd.DataFrame({
        "session_id": ["a", "b", "c", "d"],
        "session_date": pd.to_datetime(["2017-01-01", "2017-01-15", "2017-01-25", "2017-03-01"]),
    })
    parts = split_sessions(sessions, {"train": _w(0, 9), "evaluate": _w(10, 19), "score": _w(20, 29)})
    assert parts["train"]["session_id"].tolist() == ["a"]
    assert parts["evaluate"]["session_id"].tolist() == ["b"]
    assert parts["score"]["session_id"].tolist() == ["c"]
