import json

import pytest

from conftest import TEST_LOTTERY, FakeClient, make_record

DATE = "2025-12-29"


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    # main() installs its own sinks; put back a plain one for later tests
    import sys
    from loguru import logger
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture()
def cli_settings(settings, tmp_path):
    path = tmp_path / "lotteries.json"
    path.write_text(json.dumps({"L": TEST_LOTTERY}), encoding="utf-8")
    settings.lotteries_file = str(path)
    settings.default_lottery = "L"
    return settings


class TestCli:

    def test_future_date_exits_with_fatal_code(self, cli_settings, capsys):
        from drawcapture.cli import main

        code = main(["run", "--date", "2999-01-01"], cli_settings)

        assert code == 2
        assert json.loads(capsys.readouterr().out)["code"] == "FUTURE_DATE"

    def test_unknown_lottery_is_an_error(self, cli_settings, capsys):
        from drawcapture.cli import main

        code = main(["show", "--lottery", "NOPE", "--date", DATE], cli_settings)

        assert code == 1
        assert json.loads(capsys.readouterr().out)["code"] == "UNKNOWN_LOTTERY"

    def test_show_prints_draws_and_selected_prizes(self, cli_settings, lotteries, capsys):
        from drawcapture.cli import main
        from drawcapture.date_utils import FixedClock
        from drawcapture.importer import DrawImporter

        clock = FixedClock(f"{DATE}T11:30:00")
        client = FakeClient({DATE: [make_record(DATE, "11:00", 5)]})
        DrawImporter(client, lotteries, clock).run_import(DATE, "L", "11:00")

        code = main(["show", "--date", DATE, "--positions", "1-2"], cli_settings)
        payload = json.loads(capsys.readouterr().out)

        assert code == 0
        assert len(payload["draws"]) == 1
        assert [p["position"] for p in payload["draws"][0]["prizes"]] == [1, 2]

    def test_audit_recompute_fails_on_critical(self, cli_settings, capsys):
        from drawcapture.cli import main

        code = main(["audit", "--date", DATE], cli_settings)
        payload = json.loads(capsys.readouterr().out)

        assert code == 0
        assert payload["status"] == "critical"

        cli_settings.fail_on_critical = True
        assert main(["audit", "--date", DATE], cli_settings) == 2

    def test_bad_now_hm_is_a_structured_error(self, cli_settings, capsys):
        from drawcapture.cli import main

        code = main(["run", "--now-hm", "25:99"], cli_settings)

        assert code == 1
        assert json.loads(capsys.readouterr().out)["code"] == "INVALID_HOUR"

    def test_corrupt_state_file_is_a_structured_error(self, cli_settings, capsys):
        from drawcapture.cli import main
        from drawcapture.date_utils import Clock
        from drawcapture.state_store import FileStateStore

        today = Clock(cli_settings.timezone).today()
        store = FileStateStore(cli_settings.state_dir)
        with open(store.path_for(f"state:L:{today}"), "w", encoding="utf-8") as f:
            f.write("{not json")

        code = main(["run"], cli_settings)

        assert code == 1
        assert json.loads(capsys.readouterr().out)["code"] == "STATE_CORRUPT"
        assert store.get("lock:L") is None

    def test_future_date_touches_no_state(self, cli_settings):
        import os
        from drawcapture.cli import main

        assert main(["run", "--date", "2999-01-01"], cli_settings) == 2
        assert not os.path.exists(cli_settings.state_dir)


class TestWatch:

    def test_interval_job_never_overlaps(self, cli_settings, monkeypatch):
        from datetime import timedelta

        from apscheduler.schedulers.blocking import BlockingScheduler
        from drawcapture.cli import main

        jobs = []
        monkeypatch.setattr(BlockingScheduler, "start", lambda self, *a, **k: jobs.extend(self.get_jobs()))

        assert main(["watch", "--every", "3"], cli_settings) == 0

        assert len(jobs) == 1
        job = jobs[0]
        assert job.id == "capture_L"
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval == timedelta(minutes=3)
