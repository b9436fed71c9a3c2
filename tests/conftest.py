import os
import sys
from typing import Dict, List, Optional

import pytest

# Ensure repository root is on sys.path so `import drawcapture.*` works during tests
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

TEST_LOTTERY = {
    "display_name": "Test Lottery",
    "uf": "RJ",
    "calendar": "classifier",
    "sources": ["src-1"],
    "hour_policy": {"mode": "floor", "marker_minutes": [9], "jitter_tolerance_minutes": 2},
    "candidate_offsets": [0, 1, -1, 2, 9],
    "no_draw_statuses": ["no_draw"],
    "fallback": {"core": ["11:00"], "optional": []},
    "slots": [
        {"hour": "09:00", "window_start": "09:05", "release": "09:29", "window_end": "09:35"},
        {"hour": "11:00", "window_start": "11:05", "release": "11:29", "window_end": "11:31"},
    ],
    "one_shot": [],
}


def make_record(date: str, close_hour: str, prizes: int, source: Optional[str] = "src-1", **extra) -> Dict:
    """Upstream-shaped record with `prizes` non-empty prize fields."""
    record = {"date": date, "close_hour": close_hour, "lottery_name": "Test Lottery"}
    if source:
        record["lottery_id"] = source
    for position in range(1, 16):
        record[f"prize_{position}"] = f"{1000 + position * 37:04d}" if position <= prizes else ""
    record.update(extra)
    return record


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, invalid_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            import requests
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """requests.Session stand-in; responses are queued per source id (or '*')."""

    def __init__(self, responses: Optional[Dict[str, List]] = None):
        self.responses = responses or {}
        self.calls: List[Dict] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        key = (params or {}).get("lotteries[]", "*")
        queue = self.responses.get(key) or self.responses.get("*")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    """IngestionClient stand-in returning canned records per date."""

    def __init__(self, records_by_date: Optional[Dict[str, List[Dict]]] = None, error: Exception = None):
        self.records_by_date = records_by_date or {}
        self.error = error
        self.calls: List[str] = []

    def fetch(self, date, lottery):
        from drawcapture.client import FetchResult
        self.calls.append(date)
        if self.error is not None:
            raise self.error
        return FetchResult(lottery_key=lottery.key, date=date, records=list(self.records_by_date.get(date, [])))


@pytest.fixture(autouse=True)
def patch_db_path(tmp_path, monkeypatch):
    # Force the application to use a throwaway on-disk database
    import drawcapture.database as db
    db_file = str(tmp_path / "drawcapture_test.db")
    monkeypatch.setattr(db, "get_db_path", lambda: db_file, raising=True)
    db.initialize_database()
    yield db_file


@pytest.fixture()
def settings(tmp_path):
    from drawcapture.config import Settings
    return Settings(
        state_dir=str(tmp_path / "state"),
        calendar_dir=str(tmp_path / "calendar"),
        report_dir=str(tmp_path / "reports"),
        log_dir=str(tmp_path / "logs"),
        retries=3,
        retry_base_seconds=0.0,
        retry_jitter=0.0,
    )


@pytest.fixture()
def lottery():
    from drawcapture.config import parse_lottery
    return parse_lottery("L", TEST_LOTTERY, environ={})


@pytest.fixture()
def lotteries(lottery):
    return {lottery.key: lottery}


@pytest.fixture()
def file_store(tmp_path):
    from drawcapture.state_store import FileStateStore
    return FileStateStore(str(tmp_path / "state"))
