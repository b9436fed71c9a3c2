import json
import os

import pytest

from drawcapture.date_utils import FixedClock

DATE = "2025-12-29"


def _build(reporter, lottery, store, hhmm, tiers, prepare=None):
    from drawcapture.schedule_state import DayState
    state = DayState.load(store, lottery.key, DATE, lottery.hours)
    if prepare:
        prepare(state)
    clock = FixedClock(f"{DATE}T{hhmm}:00")
    return reporter.build(lottery, state, tiers, clock.now(), tz=clock.timezone, clock_override=True)


@pytest.fixture()
def reporter(tmp_path):
    from drawcapture.audit import AuditReporter
    return AuditReporter(warn_after_minutes=20, crit_after_minutes=60, report_dir=str(tmp_path / "reports"))


HARD_11 = {"09:00": "OFF", "11:00": "HARD"}


class TestAuditReporter:

    @pytest.mark.parametrize("hhmm, status", [
        ("11:20", "ok"),
        ("11:48", "ok"),
        ("11:49", "warning"),
        ("12:28", "warning"),
        ("12:29", "critical"),
    ])
    def test_thresholds_from_release(self, reporter, lottery, file_store, hhmm, status):
        report = _build(reporter, lottery, file_store, hhmm, HARD_11)

        assert report.status == status

    def test_done_and_off_slots_are_ignored(self, reporter, lottery, file_store):
        def capture(state):
            state.slot("11:00").mark_done("captured")

        report = _build(reporter, lottery, file_store, "18:00", HARD_11, capture)

        assert report.status == "ok"
        assert report.critical == [] and report.softLate == []

    def test_soft_slots_never_escalate(self, reporter, lottery, file_store):
        tiers = {"09:00": "SOFT", "11:00": "HARD"}
        report = _build(reporter, lottery, file_store, "11:00", tiers)

        assert report.status == "ok"
        assert [f.slot for f in report.softLate] == ["09:00"]
        assert report.softLate[0].sinceMinutes == 91

    def test_finding_carries_attempt_details(self, reporter, lottery, file_store):
        def attempted(state):
            slot = state.slot("11:00")
            slot.record_attempt("2025-12-29T11:10:00-03:00", ["11:00"])
            slot.last_result = {"ok": True, "blocked_reason": "API_MISSING_SLOT"}

        report = _build(reporter, lottery, file_store, "13:00", HARD_11, attempted)
        finding = report.critical[0]

        assert finding.tries == 1
        assert finding.rule == "window"
        assert finding.releaseAt == "11:29"
        assert finding.lastResult["blocked_reason"] == "API_MISSING_SLOT"

    def test_report_dict_shape(self, reporter, lottery, file_store):
        payload = _build(reporter, lottery, file_store, "13:00", HARD_11).to_dict()

        assert payload["ok"] is False
        assert payload["criticalCount"] == 1
        assert payload["warningCount"] == 0
        assert payload["softLateCount"] == 0
        assert payload["thresholds"] == {"warnAfterMinutes": 20, "critAfterMinutes": 60}
        assert payload["clockOverride"] is True

    def test_write_report(self, reporter, lottery, file_store):
        report = _build(reporter, lottery, file_store, "11:50", HARD_11)

        path = reporter.write(report)

        assert path.endswith(f"audit-L-{DATE}.json")
        with open(path, encoding="utf-8") as f:
            assert json.load(f)["status"] == "warning"

    def test_exit_code(self, reporter, lottery, file_store):
        report = _build(reporter, lottery, file_store, "13:00", HARD_11)

        assert reporter.exit_code(report, fail_on_critical=False) == 0
        assert reporter.exit_code(report, fail_on_critical=True) == 2


class TestMissingSlotLedger:

    def test_repeated_entries_are_counted(self, tmp_path):
        from drawcapture.audit import MissingSlotLedger

        ledger = MissingSlotLedger(str(tmp_path))
        ledger.record("L", DATE, "11:00", "captured_but_missing", "2025-12-29T11:30:00-03:00")
        path = ledger.record("L", DATE, "11:00", "captured_but_missing", "2025-12-29T11:40:00-03:00")

        assert os.path.basename(path) == "missing_slots-L-2025-12.json"
        with open(path, encoding="utf-8") as f:
            entry = json.load(f)[f"{DATE}__11:00"]
        assert entry["count"] == 2
        assert entry["first_seen_at"] == "2025-12-29T11:30:00-03:00"
        assert entry["last_seen_at"] == "2025-12-29T11:40:00-03:00"
