import datetime as dt

import pandas as pd
import pytest


def make_session(visitor_id, visit_id, session_date, is_first_visit, actions=(), transactions=None,
                 bounced=False, time_on_site=60, pageviews=3, source="google", medium="organic",
                 channel="Organic Search", device="desktop", country="United States"):
    return {
        "visitor_id": visitor_id,
        "visit_id": visit_id,
        "session_date": session_date,
        "is_first_visit": is_first_visit,
        "bounced": bounced,
        "time_on_site": time_on_site,
        "pageviews": pageviews,
        "traffic_source": source,
        "traffic_medium": medium,
        "channel_grouping": channel,
        "device_category": device,
        "country": country,
        "transactions_count": transactions,
        "events": [{"action_type": a} for a in actions],
    }


@pytest.fixture
def scenario_sessions():
    """Visitors A (buys on a later visit), B (never returns), C (buys on the first visit only)."""
    rows = [
        make_session("A", "1", "2017-01-10", True, actions=[0, 1, 2], bounced=False, time_on_site=120),
        make_session("A", "2", "2017-03-05", False, actions=[0, 2, 5, 6], transactions=1),
        make_session("B", "1", "2017-01-12", True, actions=[0], bounced=True, time_on_site=None, pageviews=None),
        make_session("C", "1", "2017-02-20", True, actions=[0, 3, 5, 6], transactions=1),
    ]
    return pd.DataFrame(rows)


def make_event_log(n_visitors=180, start=dt.date(2017, 1, 1)):
    """Deterministic synthetic event log: deeper checkout progress -> more return purchases."""
    sources = [("google", "organic", "Organic Search"), ("(direct)", "(none)", "Direct"),
               ("youtube.com", "referral", "Social")]
    devices = ["desktop", "mobile", "tablet"]
    countries = ["United States", "India", None]
    rows = []
    for i in range(n_visitors):
        visitor = f"v{i:04d}"
        progress = i % 6
        buyer = progress >= 3
        if i % 7 == 0:
            buyer = not buyer
        first_date = start + dt.timedelta(days=i % 90)
        src, med, chan = sources[i % 3]
        rows.append(make_session(
            visitor, "1", first_date.isoformat(), True,
            actions=list(range(progress + 1)),
            bounced=True if progress == 0 else None,
            time_on_site=30 * progress + (i % 5) * 10 if progress else None,
            pageviews=progress + 1,
            source=src, medium=med, channel=chan,
            device=devices[i % 3], country=countries[i % 3],
        ))
        if buyer:
            rows.append(make_session(
                visitor, "2", (first_date + dt.timedelta(days=5)).isoformat(), False,
                actions=[0, 2, 5, 6], transactions=1,
                source=src, medium=med, channel=chan, device=devices[i % 3],
            ))
        elif i % 4 == 0:
            rows.append(make_session(
                visitor, "2", (first_date + dt.timedelta(days=3)).isoformat(), False,
                actions=[0, 1], source=src, medium=med, channel=chan, device=devices[i % 3],
            ))
    return pd.DataFrame(rows)


@pytest.fixture
def event_log():
    return make_event_log()


@pytest.fixture
def windows():
    return {
        "train_window": ["2017-01-01", "2017-02-14"],
        "evaluate_window": ["2017-02-15", "2017-03-09"],
        "score_window": ["2017-03-10", "2017-03-31"],
    }


@pytest.fixture
def session_factory():
    return make_session
