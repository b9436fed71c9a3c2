"""Tests for the draw store: merge-only upserts and the bounded prize loader."""


def _draw(draw_id="L__2025-12-29__11-00__src-1", prize_count=5, raw=None):
    return {
        "id": draw_id,
        "lottery_key": "L",
        "lottery_name": "Test Lottery",
        "uf": "RJ",
        "date": "2025-12-29",
        "hour_bucket": "11:00",
        "hour_bucket_raw": raw,
        "source_id": "src-1",
        "prize_count": prize_count,
        "source": "kingapostas",
        "imported_at": "2025-12-29T14:30:00Z",
    }


class TestUpserts:

    def test_prize_count_never_decreases_and_raw_hour_is_kept(self):
        from drawcapture import database

        with database.get_db_connection() as conn:
            database.upsert_draw(conn, _draw(prize_count=5, raw="10:59"))
            database.upsert_draw(conn, _draw(prize_count=3, raw=None))
            conn.commit()

        draw = database.get_draw("L__2025-12-29__11-00__src-1")
        assert draw["prize_count"] == 5
        assert draw["hour_bucket_raw"] == "10:59"

    def test_empty_prize_is_never_written(self):
        from drawcapture import database

        with database.get_db_connection() as conn:
            database.upsert_draw(conn, _draw())
            assert database.upsert_prize(conn, _draw()["id"], {"position": 1, "raw_value": "  "}) is False
            assert database.upsert_prize(conn, _draw()["id"], {"position": 2, "raw_value": "1234", "last4": "1234"}) is True
            conn.commit()
            count = conn.execute("SELECT COUNT(*) FROM prizes").fetchone()[0]

        assert count == 1

    def test_reupsert_keeps_derived_fields(self):
        from drawcapture import database

        draw_id = _draw()["id"]
        with database.get_db_connection() as conn:
            database.upsert_draw(conn, _draw())
            database.upsert_prize(conn, draw_id, {"position": 1, "raw_value": "1234", "last4": "1234", "group_index": 9})
            database.upsert_prize(conn, draw_id, {"position": 1, "raw_value": "1234"})
            conn.commit()

        prizes = database.load_prizes_for_draws([draw_id])[draw_id]
        assert len(prizes) == 1
        assert prizes[0]["last4"] == "1234"
        assert prizes[0]["group_index"] == 9


class TestCompletion:

    def test_draw_is_complete_requires_a_prize(self):
        from drawcapture import database

        draw_id = _draw()["id"]
        assert database.draw_is_complete(draw_id) is False

        with database.get_db_connection() as conn:
            database.upsert_draw(conn, _draw(prize_count=0))
            conn.commit()
        assert database.draw_is_complete(draw_id) is False

        with database.get_db_connection() as conn:
            database.upsert_prize(conn, draw_id, {"position": 1, "raw_value": "0001"})
            conn.commit()
        assert database.draw_is_complete(draw_id) is True
        assert database.get_slot_completion("L", "2025-12-29", "11:00") == {"draws": 1, "complete": 1}


class TestReadSide:

    def test_load_prizes_for_many_draws(self):
        from drawcapture import database

        ids = []
        with database.get_db_connection() as conn:
            for n in range(10):
                draw = _draw(draw_id=f"L__2025-12-29__11-00__src-{n}")
                database.upsert_draw(conn, draw)
                for position in range(1, 8):
                    database.upsert_prize(conn, draw["id"], {"position": position, "raw_value": f"{n}{position:03d}"})
                ids.append(draw["id"])
            conn.commit()

        loaded = database.load_prizes_for_draws(ids, positions=range(1, 6), max_workers=6)

        assert list(loaded) == ids
        assert all([p["position"] for p in prizes] == [1, 2, 3, 4, 5] for prizes in loaded.values())
        assert loaded[ids[3]][0]["raw_value"] == "3001"
        assert database.load_prizes_for_draws([]) == {}

    def test_lottery_history_dataframe(self):
        from drawcapture import database

        with database.get_db_connection() as conn:
            database.upsert_draw(conn, _draw())
            conn.commit()

        df = database.get_lottery_draws_df("L")

        assert list(df.columns) == ["date", "hour_bucket", "prize_count"]
        assert df.iloc[0]["hour_bucket"] == "11:00"
        assert database.get_lottery_draws_df("OTHER").empty
