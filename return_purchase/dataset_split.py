"""
return_purchase/dataset_split.py

Chronological train / evaluate / score partitioning by session date.

Responsible for:
- DateWindow: an inclusive [start, end] date pair
- Rejecting overlapping or misordered window triples before any data is read
- Filtering session rows into their partition ahead of feature building
"""

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Dict

import pandas as pd

from return_purchase.errors import ConfigurationError

logger = logging.getLogger(__name__)

PARTITIONS = ("train", "evaluate", "score")
# an empty train window aborts the run; empty evaluate/score windows only warn
EMPTY_PARTITION_FATAL = {"train": True, "evaluate": False, "score": False}


def _to_date(value) -> dt.date:
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"cannot parse window date {value!r}") from exc
    if pd.isna(ts):
        raise ConfigurationError(f"window date is missing: {value!r}")
    return ts.date()


@dataclass(frozen=True)
class DateWindow:
    start: dt.date
    end: dt.date

    def __post_init__(self):
        # accept strings / timestamps, store plain dates
        object.__setattr__(self, "start", _to_date(self.start))
        object.__setattr__(self, "end", _to_date(self.end))
        if self.start > self.end:
            raise ConfigurationError(f"window start {self.start} is after end {self.end}")

    def overlaps(self, other: "DateWindow") -> bool:
        return self.start <= other.end and other.start <= self.end

    def mask(self, dates: pd.Series) -> pd.Series:
        """Boolean mask of `dates` falling inside the window (inclusive)."""
        days = pd.to_datetime(dates).dt.normalize()
        return days.between(pd.Timestamp(self.start), pd.Timestamp(self.end), inclusive="both")

    def as_list(self):
        return [self.start.isoformat(), self.end.isoformat()]

    def __str__(self):
        return f"[{self.start.isoformat()}, {self.end.isoformat()}]"


def validate_windows(train: DateWindow, evaluate: DateWindow, score: DateWindow) -> None:
    """Raise ConfigurationError unless train < evaluate < score with no overlap."""
    windows = {"train": train, "evaluate": evaluate, "score": score}
    names = list(windows)
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            if windows[a].overlaps(windows[b]):
                raise ConfigurationError(
                    f"{a} window {windows[a]} overlaps {b} window {windows[b]}"
                )
    if not (train.end < evaluate.start and evaluate.end < score.start):
        raise ConfigurationError(
            f"windows must be ordered train < evaluate < score, got "
            f"train={train} evaluate={evaluate} score={score}"
        )


def filter_window(sessions_df: pd.DataFrame, window: DateWindow, date_col: str = "session_date") -> pd.DataFrame:
    return sessions_df[window.mask(sessions_df[date_col])].copy()


def split_sessions(sessions_df: pd.DataFrame, windows: Dict[str, DateWindow]) -> Dict[str, pd.DataFrame]:
    """Split session rows into {partition: rows} using each partition's window."""
    validate_windows(windows["train"], windows["evaluate"], windows["score"])
    parts = {}
    for name in PARTITIONS:
        parts[name] = filter_window(sessions_df, windows[name])
        logger.info("Partition %s %s: %d sessions", name, windows[name], parts[name].shape[0])
    return parts
