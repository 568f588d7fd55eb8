"""
Create visitor-level targets:
- has_future_purchase (bool): the visitor completes a purchase on a return visit

Labels are computed once per run from a visitor's full session history,
never from a date-windowed slice, and later joined onto first-time sessions
by visitor_id.

Two label definitions are supported (config.LabelDefinition):
- purchase_excludes_first_session: a visitor's first-time session is any
  session flagged is_first_visit plus their chronologically earliest session;
  the label is set by a completed transaction (transactions or checkout
  progress 6) on any other session. A first-session-only purchase is False.
- purchase_any_nonfirst_transaction_flag: counts sessions with
  transactions_count > 0 whose first-visit flag is not set, trusting the flag
  as-is (a null flag was defaulted to "returning visit").
"""

import logging

import pandas as pd

from return_purchase.config import LabelDefinition, parse_label_definition

logger = logging.getLogger(__name__)


def first_session_mask(sessions_df: pd.DataFrame) -> pd.Series:
    """True for every session treated as a visitor's first-time session."""
    order = sessions_df.sort_values(["visitor_id", "session_date", "visit_id"], kind="mergesort")
    earliest = order.groupby("visitor_id").cumcount() == 0
    earliest = earliest.reindex(sessions_df.index)
    return sessions_df["is_first_visit"].astype(bool) | earliest


def return_purchase_mask(sessions_df: pd.DataFrame, label_definition) -> pd.Series:
    """True for sessions that count as a purchase on a return visit."""
    definition = parse_label_definition(label_definition)
    if definition is LabelDefinition.PURCHASE_EXCLUDES_FIRST_SESSION:
        return sessions_df["completed_transaction"].astype(bool) & ~first_session_mask(sessions_df)
    # COUNTIF(transactions > 0 AND newVisits IS NULL)
    return sessions_df["transaction_flag"].astype(bool) & ~sessions_df["is_first_visit"].astype(bool)


def create_visitor_labels(sessions_df: pd.DataFrame, label_definition=LabelDefinition.PURCHASE_EXCLUDES_FIRST_SESSION) -> pd.DataFrame:
    """One row per visitor_id with the boolean `has_future_purchase` label.

    `sessions_df` is create_session_features output covering the visitor's
    entire history.
    """
    definition = parse_label_definition(label_definition)
    df = sessions_df[["visitor_id"]].copy()
    df["return_purchase"] = return_purchase_mask(sessions_df, definition)
    labels = (
        df.groupby("visitor_id", as_index=False, sort=True)
        .agg(has_future_purchase=("return_purchase", "any"))
    )
    labels["has_future_purchase"] = labels["has_future_purchase"].astype(bool)
    logger.info(
        "Labelled %d visitors (%s): %d with a return-visit purchase",
        labels.shape[0], definition.value, int(labels["has_future_purchase"].sum()),
    )
    return labels
