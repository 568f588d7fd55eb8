"""
return_purchase/data_preprocessing.py

Responsible for:
- Loading event-store exports (JSON lines with nested hits, or flat hit-level CSV)
- Normalizing column names and mapping export aliases to canonical names
- Regrouping flat hit rows into one row per session with an `events` list
- Applying the central null-default table to session rows
- Saving standardized session files

Usage:
    python -m return_purchase.data_preprocessing --events data/raw/ga_sessions.jsonl --out data/processed/sessions.jsonl
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from return_purchase.config import COLUMN_ALIASES, REQUIRED_COLUMNS, SESSION_DEFAULTS, SESSION_KEY
from return_purchase.dataset_split import DateWindow
from return_purchase.errors import DataQualityError

logger = logging.getLogger(__name__)

NUMERIC_COLUMNS = ["bounces", "time_on_site", "pageviews", "transactions_count", "action_type", "hit_number"]
TRUE_STRINGS = {"1", "true", "t", "yes", "y"}
FALSE_STRINGS = {"0", "false", "f", "no", "n"}


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize column names to lowercase snake_case and map export aliases."""
    df = df.copy()
    new_cols = []
    for c in df.columns:
        c2 = (
            str(c).strip()
            .lower()
            .replace(" ", "_")
            .replace("(", "")
            .replace(")", "")
            .replace(".", "_")
            .replace("-", "_")
        )
        # unify multiple underscores
        c2 = "_".join([p for p in c2.split("_") if p != ""])
        new_cols.append(COLUMN_ALIASES.get(c2, c2))
    if len(set(new_cols)) != len(new_cols):
        dupes = sorted({c for c in new_cols if new_cols.count(c) > 1})
        raise DataQualityError(f"columns collide after normalization: {dupes}")
    df.columns = new_cols
    return df


def to_bool(series: pd.Series) -> pd.Series:
    """Coerce 1/0, true/false and yes/no spellings to booleans; nulls and blanks stay NA.

    Any other value raises DataQualityError so it is never mistaken for a null.
    """

    def _one(v):
        if v is None or v is pd.NA or (isinstance(v, float) and np.isnan(v)):
            return pd.NA
        if isinstance(v, (bool, np.bool_)):
            return bool(v)
        if isinstance(v, (int, float, np.integer, np.floating)):
            return bool(v)
        s = str(v).strip().lower()
        if s == "":
            return pd.NA
        if s in TRUE_STRINGS:
            return True
        if s in FALSE_STRINGS:
            return False
        return None

    parsed = series.map(_one)
    bad = parsed.isna() & ~series.map(_is_blank).astype(bool)
    if bad.any():
        sample = series[bad].head(3).tolist()
        raise DataQualityError(f"{series.name}: {int(bad.sum())} values are not booleans, e.g. {sample}")
    return parsed.astype("boolean")


def _is_blank(v) -> bool:
    if v is None or v is pd.NA or (isinstance(v, float) and np.isnan(v)):
        return True
    return isinstance(v, str) and v.strip() == ""


def parse_session_dates(df: pd.DataFrame) -> pd.DataFrame:
    """Parse session_date (YYYYMMDD or ISO) to a normalized timestamp."""
    if "session_date" not in df.columns:
        raise DataQualityError("required column 'session_date' is missing")
    df = df.copy()
    if pd.api.types.is_datetime64_any_dtype(df["session_date"]):
        parsed = df["session_date"]
    else:
        raw = df["session_date"].astype(str).str.strip()
        parsed = pd.to_datetime(raw, errors="coerce", format="mixed")
    bad = parsed.isna()
    if bad.any():
        sample = df.loc[bad, "session_date"].head(3).tolist()
        raise DataQualityError(f"{int(bad.sum())} session dates could not be parsed, e.g. {sample}")
    df["session_date"] = parsed.dt.normalize()
    return df


def _read_jsonl(path: Path) -> pd.DataFrame:
    records = []
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise DataQualityError(f"{path}:{lineno}: invalid JSON ({exc.msg})") from exc
    if not records:
        return pd.DataFrame(columns=REQUIRED_COLUMNS + ["events"])
    return pd.json_normalize(records, sep=".", max_level=1)


def nest_hits(hits_df: pd.DataFrame) -> pd.DataFrame:
    """Regroup hit-level rows into session rows carrying an ordered `events` list."""
    df = hits_df.copy()
    null_keys = df[SESSION_KEY].isna().any(axis=1)
    if null_keys.any():
        raise DataQualityError(f"{int(null_keys.sum())} hits have no session key")
    sort_cols = SESSION_KEY + (["hit_number"] if "hit_number" in df.columns else [])
    df = df.sort_values(sort_cols, kind="mergesort")
    hit_cols = [c for c in ("hit_number", "action_type") if c in df.columns]
    session_cols = [c for c in df.columns if c not in hit_cols]

    rows = []
    for _, group in df.groupby(SESSION_KEY, sort=False):
        row = group.iloc[0][session_cols].to_dict()
        row["events"] = group[hit_cols].to_dict("records") if hit_cols else []
        rows.append(row)
    out = pd.DataFrame(rows, columns=session_cols + ["events"])
    logger.info("Nested %d hits into %d sessions", df.shape[0], out.shape[0])
    return out


def read_event_store(path, start=None, end=None) -> pd.DataFrame:
    """Read session rows from an event-store export, optionally restricted to [start, end].

    `.jsonl` / `.json` exports carry one session per line with a nested
    `events` (or GA `hits`) array. `.csv` exports carry one hit per row and
    are regrouped by session key.
    """
    path = Path(path)
    logger.info("Reading event store: %s", path)
    suffix = path.suffix.lower()
    if suffix in (".jsonl", ".json"):
        df = normalize_columns(_read_jsonl(path))
    elif suffix == ".csv":
        df = normalize_columns(pd.read_csv(path, dtype=str, keep_default_na=True))
        for c in NUMERIC_COLUMNS:
            if c in df.columns:
                df[c] = pd.to_numeric(df[c], errors="coerce")
        missing = [c for c in SESSION_KEY if c not in df.columns]
        if missing:
            raise DataQualityError(f"required columns missing from {path}: {missing}")
        df = nest_hits(df)
    else:
        raise DataQualityError(f"unsupported event store format: {path.suffix!r}")

    df = parse_session_dates(df)
    if (start is not None or end is not None) and not df.empty:
        window = DateWindow(start if start is not None else df["session_date"].min(),
                            end if end is not None else df["session_date"].max())
        df = df[window.mask(df["session_date"])].reset_index(drop=True)
    logger.info("Loaded %d sessions from %s", df.shape[0], path)
    return df


def apply_session_defaults(df: pd.DataFrame) -> pd.DataFrame:
    """Validate required columns and fill nulls from SESSION_DEFAULTS.

    SESSION_DEFAULTS is the only place nulls are replaced; every default
    applied is counted and logged. Missing required columns or unparseable
    dates raise DataQualityError.
    """
    df = normalize_columns(df)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataQualityError(f"required session columns missing: {missing}")
    df = parse_session_dates(df)
    if "events" not in df.columns:
        df["events"] = [[] for _ in range(len(df))]

    for c in SESSION_KEY:
        if df[c].isna().any():
            raise DataQualityError(f"{int(df[c].isna().sum())} sessions have no {c}")
        df[c] = df[c].astype(str).str.strip()

    if "bounces" in df.columns:
        df["bounces"] = to_bool(df["bounces"]).astype("Int64")
    df["is_first_visit"] = to_bool(df["is_first_visit"])

    for col, default in SESSION_DEFAULTS.items():
        if col not in df.columns:
            logger.info("Column %s absent, defaulting to %r", col, default)
            df[col] = default
            continue
        n_null = int(df[col].isna().sum())
        if n_null:
            logger.info("Defaulted %d null %s values to %r", n_null, col, default)
            df[col] = df[col].fillna(default)

    for c in ("bounces", "time_on_site", "pageviews", "transactions_count"):
        converted = pd.to_numeric(df[c], errors="coerce")
        if converted.isna().any():
            sample = df.loc[converted.isna(), c].head(3).tolist()
            raise DataQualityError(f"non-numeric {c} values, e.g. {sample}")
        df[c] = converted.astype(int)
    df["is_first_visit"] = df["is_first_visit"].astype(bool)
    df["country"] = df["country"].astype(str)
    return df


def save_sessions(df: pd.DataFrame, out_path: Path):
    """Write session rows as JSON lines (nested events preserved)."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out = df.copy()
    if "session_date" in out.columns:
        out["session_date"] = pd.to_datetime(out["session_date"]).dt.strftime("%Y-%m-%d")
    out.to_json(out_path, orient="records", lines=True, force_ascii=False)
    logger.info("Saved %s (%d rows, %d cols)", out_path, out.shape[0], out.shape[1])


def main(events_path: str, out_path: str, start: Optional[str] = None, end: Optional[str] = None):
    sessions = read_event_store(Path(events_path), start=start, end=end)
    save_sessions(apply_session_defaults(sessions), Path(out_path))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser()
    parser.add_argument("--events", required=True, help="Event-store export (.jsonl with nested hits, or hit-level .csv)")
    parser.add_argument("--out", default="data/processed/sessions.jsonl", help="Where to save the standardized sessions")
    parser.add_argument("--start", default=None, help="First session date to keep (inclusive)")
    parser.add_argument("--end", default=None, help="Last session date to keep (inclusive)")
    args = parser.parse_args()
    main(args.events, args.out, args.start, args.end)
