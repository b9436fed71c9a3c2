import copy

import pytest

from conftest import TEST_LOTTERY


class TestLotteryConfig:

    def test_shipped_lotteries_load(self):
        from drawcapture.config import load_lotteries

        lotteries = load_lotteries(environ={})

        assert {"PT_RIO", "FEDERAL"} <= set(lotteries)
        rio = lotteries["PT_RIO"]
        assert "11:00" in rio.hours
        assert rio.hour_policy.marker_minutes == (9,)
        assert lotteries["FEDERAL"].calendar == "fixed"

    def test_sources_from_environment(self):
        from drawcapture.config import parse_lottery

        lottery = parse_lottery("l", TEST_LOTTERY, environ={"LOTTERY_SOURCES_L": "a, b,,c"})

        assert lottery.key == "L"
        assert lottery.sources == ("a", "b", "c")

    def test_window_order_is_validated(self):
        from drawcapture.config import parse_lottery
        from drawcapture.errors import ConfigError

        raw = copy.deepcopy(TEST_LOTTERY)
        raw["slots"][0]["release"] = "09:50"

        with pytest.raises(ConfigError):
            parse_lottery("L", raw, environ={})

    def test_invalid_hour_text(self):
        from drawcapture.config import parse_lottery
        from drawcapture.errors import ConfigError

        raw = copy.deepcopy(TEST_LOTTERY)
        raw["slots"][1]["hour"] = "25:00"

        with pytest.raises(ConfigError):
            parse_lottery("L", raw, environ={})

    def test_one_shot_must_be_a_slot(self):
        from drawcapture.config import parse_lottery
        from drawcapture.errors import ConfigError

        raw = copy.deepcopy(TEST_LOTTERY)
        raw["one_shot"] = [{"hour": "14:00"}]

        with pytest.raises(ConfigError):
            parse_lottery("L", raw, environ={})

    def test_one_shot_lookup_respects_weekdays(self):
        from drawcapture.config import parse_lottery

        raw = copy.deepcopy(TEST_LOTTERY)
        raw["one_shot"] = [{"hour": "11:00", "offset_minutes": 5, "weekdays": [5]}]
        lottery = parse_lottery("L", raw, environ={})

        assert lottery.one_shot_for("11:00", 5).offset_minutes == 5
        assert lottery.one_shot_for("11:00", 0) is None

    def test_unknown_lottery(self, lotteries):
        from drawcapture.config import get_lottery
        from drawcapture.errors import ValidationError

        with pytest.raises(ValidationError) as exc:
            get_lottery(lotteries, "NOPE")
        assert exc.value.code == "UNKNOWN_LOTTERY"
        assert get_lottery(lotteries, " l ").key == "L"


class TestSettings:

    def test_ini_then_environment(self, tmp_path):
        from drawcapture.config import load_settings

        ini = tmp_path / "config.ini"
        ini.write_text(
            "[audit]\nwarn_after_minutes = 15\ncrit_after_minutes = 45\n"
            "[scheduler]\nlock_ttl_seconds = 120\n"
            "[paths]\nstate_backend = sqlite\n",
            encoding="utf-8",
        )

        settings = load_settings(str(ini), environ={"AUDIT_CRIT_MIN": "30", "FAIL_ON_CRITICAL": "true"})

        assert settings.warn_after_minutes == 15
        assert settings.crit_after_minutes == 30
        assert settings.lock_ttl_seconds == 120
        assert settings.state_backend == "sqlite"
        assert settings.fail_on_critical is True

    def test_missing_file_uses_defaults(self, tmp_path):
        from drawcapture.config import load_settings

        settings = load_settings(str(tmp_path / "absent.ini"), environ={})

        assert settings.lock_ttl_seconds == 90
        assert settings.catchup_max_after_end_minutes == 90

    def test_bad_number_in_environment(self, tmp_path):
        from drawcapture.config import load_settings
        from drawcapture.errors import ConfigError

        with pytest.raises(ConfigError):
            load_settings(str(tmp_path / "absent.ini"), environ={"LOCK_TTL_SEC": "soon"})

    def test_unknown_state_backend(self, tmp_path):
        from drawcapture.config import load_settings
        from drawcapture.errors import ConfigError

        with pytest.raises(ConfigError):
            load_settings(str(tmp_path / "absent.ini"), environ={"STATE_BACKEND": "redis"})
