"""
return_purchase/feature_engineering.py

Functions:
- create_session_features(sessions_df)
- build_feature_table(sessions_df, labels_df, feature_columns, window=None)
- save_feature_table(features_df, path)

Notes:
- `sessions_df` holds one row per session (or per session fragment) with a
  nested `events` list, as returned by data_preprocessing.read_event_store.
- Checkout progress is the hit-level eCommerce action ordinal:
  0 = none ... 6 = completed purchase. Anything outside that range
  (refunds, checkout options, junk) does not count as progress.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from return_purchase.config import (
    KEY_COLUMNS,
    LABEL_COL,
    MIN_ACTION_TYPE,
    PURCHASE_ACTION_TYPE,
    SESSION_KEY,
    order_feature_columns,
)
from return_purchase.data_preprocessing import apply_session_defaults
from return_purchase.dataset_split import DateWindow, filter_window
from return_purchase.errors import DataQualityError

logger = logging.getLogger(__name__)

SESSION_COLUMNS = [
    "session_id", "visitor_id", "visit_id", "session_date", "is_first_visit",
    "bounces", "time_on_site", "pageviews",
    "traffic_source", "traffic_medium", "channel_grouping", "device_category", "country",
    "transactions_count", "hit_count", "latest_checkout_progress",
    "completed_transaction", "transaction_flag",
]


def session_id_for(visitor_id, visit_id) -> str:
    """`{visitor_id}-{visit_id}`, with `\\` and `-` escaped in the visitor part.

    The first unescaped `-` always separates the two keys, so distinct
    sessions never share an id.
    """
    visitor = str(visitor_id).replace("\\", "\\\\").replace("-", "\\-")
    return f"{visitor}-{visit_id}"


def _iter_events(events) -> Iterable:
    if events is None:
        return []
    if isinstance(events, (list, tuple, np.ndarray)):
        return events
    if isinstance(events, float) and np.isnan(events):
        return []
    raise DataQualityError(f"events must be a list of hits, got {type(events).__name__}")


def _raw_action_type(event):
    if isinstance(event, dict):
        if "action_type" in event:
            return event["action_type"]
        # GA export shape: {"eCommerceAction": {"action_type": "6"}}
        for key in ("eCommerceAction", "ecommerceaction", "ecommerce_action"):
            nested = event.get(key)
            if isinstance(nested, dict):
                return nested.get("action_type")
        return None
    return event


def action_type_of(event) -> Optional[int]:
    """Checkout-progress ordinal of one hit, or None when missing/unusable."""
    raw = _raw_action_type(event)
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if np.isnan(value) or not value.is_integer():
        return None
    return int(value)


def fold_checkout_progress(events) -> dict:
    """Single pass over a session's hits: hit count and max checkout progress."""
    progress = MIN_ACTION_TYPE
    hits = 0
    ignored = 0
    for event in _iter_events(events):
        hits += 1
        action = action_type_of(event)
        if action is None or not MIN_ACTION_TYPE <= action <= PURCHASE_ACTION_TYPE:
            ignored += int(action is not None)
            continue
        progress = max(progress, action)
    return {"hit_count": hits, "latest_checkout_progress": progress, "ignored_actions": ignored}


def create_session_features(sessions_df: pd.DataFrame) -> pd.DataFrame:
    """Aggregate raw session rows into one session-grain row per (visitor_id, visit_id).

    Returns a DataFrame with SESSION_COLUMNS:
        - latest_checkout_progress: max action_type over the session's hits (0 if none)
        - hit_count
        - completed_transaction: transactions_count > 0 or progress reached purchase
        - transaction_flag: transactions_count > 0
        - session attributes with nulls defaulted (see config.SESSION_DEFAULTS)
    Rows sharing a key are treated as fragments of the same session.
    """
    df = apply_session_defaults(sessions_df)

    agg_rows = []
    ignored_total = 0
    grouped = df.groupby(SESSION_KEY, sort=True)
    for (visitor_id, visit_id), group in grouped:
        first_row = group.iloc[0]
        row = {}
        row["session_id"] = session_id_for(visitor_id, visit_id)
        row["visitor_id"] = visitor_id
        row["visit_id"] = visit_id
        row["session_date"] = group["session_date"].min()
        row["is_first_visit"] = bool(group["is_first_visit"].any())
        # a fragmented session only bounced if every fragment did
        row["bounces"] = int(group["bounces"].min())
        row["time_on_site"] = int(group["time_on_site"].sum())
        row["pageviews"] = int(group["pageviews"].sum())
        for c in ("traffic_source", "traffic_medium", "channel_grouping", "device_category", "country"):
            row[c] = first_row[c]
        row["transactions_count"] = int(group["transactions_count"].sum())

        hit_count = 0
        progress = MIN_ACTION_TYPE
        for events in group["events"]:
            folded = fold_checkout_progress(events)
            hit_count += folded["hit_count"]
            progress = max(progress, folded["latest_checkout_progress"])
            ignored_total += folded["ignored_actions"]
        row["hit_count"] = hit_count
        row["latest_checkout_progress"] = progress

        row["transaction_flag"] = row["transactions_count"] > 0
        row["completed_transaction"] = row["transaction_flag"] or progress == PURCHASE_ACTION_TYPE
        agg_rows.append(row)

    if ignored_total:
        logger.warning("Ignored %d hits with action_type outside [%d, %d]",
                       ignored_total, MIN_ACTION_TYPE, PURCHASE_ACTION_TYPE)

    features_df = pd.DataFrame(agg_rows, columns=SESSION_COLUMNS)
    features_df = features_df.astype({
        "is_first_visit": bool, "completed_transaction": bool, "transaction_flag": bool,
        "bounces": int, "time_on_site": int, "pageviews": int,
        "transactions_count": int, "hit_count": int, "latest_checkout_progress": int,
    })
    features_df["session_date"] = pd.to_datetime(features_df["session_date"])
    logger.info("Created session features for %d sessions", features_df.shape[0])
    return features_df


def build_feature_table(
    sessions_df: pd.DataFrame,
    labels_df: pd.DataFrame,
    feature_columns,
    window: Optional[DateWindow] = None,
) -> pd.DataFrame:
    """Join first-time sessions with visitor labels into the labeled feature table.

    `sessions_df` is create_session_features output; `labels_df` is
    target_creation.create_visitor_labels output. Sessions whose visitor has
    no label are dropped (inner join). Output columns are KEY_COLUMNS, the
    feature columns in canonical order, then `label`; rows sorted by session_id.
    """
    cols = list(order_feature_columns(feature_columns))
    df = sessions_df
    if window is not None:
        df = filter_window(df, window)
    df = df[df["is_first_visit"].astype(bool)]

    out = df.merge(
        labels_df[["visitor_id", "has_future_purchase"]],
        on="visitor_id",
        how="inner",
        validate="many_to_one",
    )
    dropped = df.shape[0] - out.shape[0]
    if dropped:
        logger.warning("Dropped %d first-time sessions without a visitor label", dropped)

    if out["session_id"].duplicated().any():
        dupes = out.loc[out["session_id"].duplicated(), "session_id"].head(3).tolist()
        raise DataQualityError(f"duplicate feature rows for sessions {dupes}")
    if not out["is_first_visit"].all():
        raise DataQualityError("feature table contains sessions that are not first visits")

    out = out.rename(columns={"has_future_purchase": LABEL_COL})
    out[LABEL_COL] = out[LABEL_COL].astype(bool)
    out = out[KEY_COLUMNS + cols + [LABEL_COL]]
    out = out.sort_values("session_id", kind="mergesort").reset_index(drop=True)
    logger.info("Built feature table: %d rows, features=%s, positives=%d",
                out.shape[0], cols, int(out[LABEL_COL].sum()))
    return out


def feature_columns_of(features_df: pd.DataFrame):
    """Feature schema of a feature table: every column that is not a key or the label."""
    return tuple(c for c in features_df.columns if c not in KEY_COLUMNS and c != LABEL_COL)


def save_feature_table(features_df: pd.DataFrame, path):
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    out = features_df.copy()
    out["session_date"] = pd.to_datetime(out["session_date"]).dt.strftime("%Y-%m-%d")
    out.to_csv(p, index=False)
    logger.info("Saved feature table to %s", p)
