"""Tests for the upstream ingestion client: merging, retries and typed errors."""

import pytest
import requests

from conftest import FakeResponse, FakeSession, make_record


def _ok(records):
    return FakeResponse(200, {"success": True, "data": records})


def _client(settings, session, sleeps=None):
    from drawcapture.client import IngestionClient
    return IngestionClient(settings, session=session, sleep=(sleeps.append if sleeps is not None else lambda s: None))


def _two_source_lottery(lottery):
    from dataclasses import replace
    return replace(lottery, sources=("src-1", "src-2"))


class TestMergeAndDedup:

    def test_richer_variant_wins_regardless_of_order(self, lottery):
        from drawcapture.client import merge_and_dedup

        poor = make_record("2025-12-29", "11:00", 3)
        rich = make_record("2025-12-29", "11:09", 5)

        assert merge_and_dedup([poor, rich], lottery) == [rich]
        assert merge_and_dedup([rich, poor], lottery) == [rich]

    def test_tie_keeps_first_seen(self, lottery):
        from drawcapture.client import merge_and_dedup

        first = make_record("2025-12-29", "11:00", 5)
        second = make_record("2025-12-29", "11:00", 5, lottery_name="Other")

        assert merge_and_dedup([first, second], lottery) == [first]

    def test_distinct_sources_are_kept(self, lottery):
        from drawcapture.client import merge_and_dedup

        a = make_record("2025-12-29", "11:00", 5, source="src-1")
        b = make_record("2025-12-29", "11:00", 5, source="src-2")

        assert len(merge_and_dedup([a, b], lottery)) == 2


class TestIngestionClientFetch:

    def test_fetches_every_source_and_stamps_source_id(self, settings, lottery):
        session = FakeSession({
            "src-1": [_ok([make_record("2025-12-29", "11:00", 5, source=None)])],
            "src-2": [_ok([make_record("2025-12-29", "14:00", 4, source=None)])],
        })
        result = _client(settings, session).fetch("2025-12-29", _two_source_lottery(lottery))

        assert len(session.calls) == 2
        assert session.calls[0]["params"] == {"dates[]": "2025-12-29", "lotteries[]": "src-1"}
        assert sorted(r["lottery_id"] for r in result.records) == ["src-1", "src-2"]
        assert result.errors == []
        assert result.requests == 2

    def test_transient_status_is_retried(self, settings, lottery):
        sleeps = []
        session = FakeSession({"*": [FakeResponse(503, {}), _ok([make_record("2025-12-29", "11:00", 5)])]})

        result = _client(settings, session, sleeps).fetch("2025-12-29", lottery)

        assert len(session.calls) == 2
        assert len(sleeps) == 1
        assert len(result.records) == 1

    def test_timeouts_exhaust_retries_with_typed_error(self, settings, lottery):
        from drawcapture.errors import TransientUpstreamError

        session = FakeSession({"*": [requests.exceptions.Timeout("read timed out")]})

        with pytest.raises(TransientUpstreamError) as exc:
            _client(settings, session).fetch("2025-12-29", lottery)

        assert exc.value.code == "UPSTREAM_TIMEOUT"
        assert len(session.calls) == settings.retries

    def test_client_error_status_fails_without_retry(self, settings, lottery):
        from drawcapture.errors import UpstreamHTTPError

        session = FakeSession({"*": [FakeResponse(404, {})]})

        with pytest.raises(UpstreamHTTPError) as exc:
            _client(settings, session).fetch("2025-12-29", lottery)

        assert exc.value.context["http_status"] == 404
        assert len(session.calls) == 1

    @pytest.mark.parametrize("response", [
        FakeResponse(200, {"success": False, "data": []}),
        FakeResponse(200, {"success": True, "data": "nope"}),
        FakeResponse(200, ["not", "a", "dict"]),
        FakeResponse(200, invalid_json=True),
    ])
    def test_malformed_payload_fails_without_retry(self, settings, lottery, response):
        from drawcapture.errors import MalformedPayloadError

        session = FakeSession({"*": [response]})

        with pytest.raises(MalformedPayloadError):
            _client(settings, session).fetch("2025-12-29", lottery)

        assert len(session.calls) == 1

    def test_partial_source_failure_returns_remaining_records(self, settings, lottery):
        from drawcapture.client import FetchStatus

        session = FakeSession({
            "src-1": [FakeResponse(404, {})],
            "src-2": [_ok([make_record("2025-12-29", "11:00", 5, source=None)])],
        })
        result = _client(settings, session).fetch("2025-12-29", _two_source_lottery(lottery))

        assert len(result.records) == 1
        assert [e.status for e in result.errors] == [FetchStatus.HTTP_ERROR]
        assert result.errors[0].to_dict()["status"] == "HTTP_ERROR"

    def test_rejects_invalid_date_and_missing_sources(self, settings, lottery):
        from dataclasses import replace
        from drawcapture.errors import ValidationError

        session = FakeSession({"*": [_ok([])]})
        client = _client(settings, session)

        with pytest.raises(ValidationError):
            client.fetch("29/12/2025", lottery)
        with pytest.raises(ValidationError) as exc:
            client.fetch("2025-12-29", replace(lottery, sources=()))

        assert exc.value.code == "NO_SOURCES"
        assert session.calls == []


class TestDayStatusProvider:

    def test_signal_is_cached_within_ttl(self, file_store):
        from drawcapture.client import DayStatusProvider
        from drawcapture.date_utils import FixedClock

        clock = FixedClock("2025-12-25T08:00:00")
        session = FakeSession({"*": [FakeResponse(200, {"dayStatus": "holiday_no_draw"})]})
        provider = DayStatusProvider("https://status.example/{lottery}/{date}", file_store, clock,
                                     ttl_seconds=600, session=session)

        first = provider.get("L", "2025-12-25")
        clock.advance(minutes=5)
        second = provider.get("L", "2025-12-25")

        assert first == second == {"dayStatus": "holiday_no_draw"}
        assert len(session.calls) == 1
        assert session.calls[0]["url"] == "https://status.example/L/2025-12-25"

    def test_unavailable_signal_returns_none(self, file_store):
        from drawcapture.client import DayStatusProvider
        from drawcapture.date_utils import FixedClock

        session = FakeSession({"*": [requests.exceptions.ConnectionError("down")]})
        provider = DayStatusProvider("https://status.example/{date}", file_store,
                                     FixedClock("2025-12-25T08:00:00"), session=session)

        assert provider.get("L", "2025-12-25") is None

    def test_disabled_without_url(self, file_store):
        from drawcapture.client import DayStatusProvider
        from drawcapture.date_utils import FixedClock

        provider = DayStatusProvider("", file_store, FixedClock("2025-12-25T08:00:00"), session=FakeSession())

        assert provider.get("L", "2025-12-25") is None
