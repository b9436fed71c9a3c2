import configparser
import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import pytz
from loguru import logger

PRIZE_COLUMNS = ('position', 'raw_value', 'last4', 'last3', 'last2', 'group_index', 'animal_label')

PRIZE_LOAD_CONCURRENCY = 6


def get_db_path() -> str:
    """Reads the database file path from the configuration file."""
    override = os.environ.get('DRAWCAPTURE_DB', '').strip()
    current_dir = os.path.dirname(os.path.abspath(__file__))
    if override:
        db_path = override if os.path.isabs(override) else os.path.join(current_dir, '..', override)
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        return db_path

    config = configparser.ConfigParser()
    config_path = os.path.join(current_dir, '..', 'config', 'config.ini')

    try:
        config.read(config_path)
        if config.has_section('paths') and config.has_option('paths', 'database_file'):
            db_file = config["paths"]["database_file"]
        else:
            db_file = "data/drawcapture.db"
            logger.warning(f"Config section 'paths' or 'database_file' option not found, using default: {db_file}")

        db_path = os.path.join(current_dir, '..', db_file)
    except (configparser.Error, OSError) as e:
        logger.error(f"Error reading config file: {e}. Using default database path.")
        db_path = os.path.join(current_dir, '..', 'data', 'drawcapture.db')

    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    return db_path


def get_db_connection() -> sqlite3.Connection:
    """
    Establishes a connection to the SQLite database.

    Returns:
        sqlite3.Connection: A connection object to the database.

    Raises:
        sqlite3.Error: If database connection fails
    """
    db_path = get_db_path()
    try:
        # Use a reasonable timeout to wait on busy DB instead of failing fast
        conn = sqlite3.connect(db_path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            logger.debug(f"PRAGMA setup skipped: {e}")
        logger.debug(f"Connected to database at {db_path}")
        return conn
    except sqlite3.Error as e:
        logger.error(f"Error connecting to database at {db_path}: {e}")
        raise


def initialize_database() -> None:
    """Creates the draws, prizes and kv_state tables if they do not exist."""
    with get_db_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS draws (
                id TEXT PRIMARY KEY,
                lottery_key TEXT NOT NULL,
                lottery_name TEXT,
                uf TEXT,
                date TEXT NOT NULL,
                hour_bucket TEXT NOT NULL,
                hour_bucket_raw TEXT,
                source_id TEXT,
                prize_count INTEGER NOT NULL DEFAULT 0,
                source TEXT NOT NULL,
                imported_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS prizes (
                draw_id TEXT NOT NULL REFERENCES draws(id),
                position INTEGER NOT NULL CHECK (position BETWEEN 1 AND 15),
                raw_value TEXT NOT NULL CHECK (raw_value <> ''),
                last4 TEXT,
                last3 TEXT,
                last2 TEXT,
                group_index INTEGER,
                animal_label TEXT,
                PRIMARY KEY (draw_id, position)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_draws_slot ON draws (lottery_key, date, hour_bucket)")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()


def upsert_draw(conn: sqlite3.Connection, draw: Dict[str, Any]) -> None:
    """
    Inserts or merges draw metadata.

    prize_count never decreases and a known raw hour is never replaced by
    NULL. The caller owns the transaction.
    """
    conn.execute(
        """
        INSERT INTO draws (
            id, lottery_key, lottery_name, uf, date, hour_bucket, hour_bucket_raw,
            source_id, prize_count, source, imported_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            lottery_name = COALESCE(excluded.lottery_name, draws.lottery_name),
            uf = COALESCE(excluded.uf, draws.uf),
            hour_bucket_raw = COALESCE(excluded.hour_bucket_raw, draws.hour_bucket_raw),
            prize_count = MAX(draws.prize_count, excluded.prize_count),
            source = excluded.source,
            imported_at = excluded.imported_at
        """,
        (
            draw['id'], draw['lottery_key'], draw.get('lottery_name'), draw.get('uf'),
            draw['date'], draw['hour_bucket'], draw.get('hour_bucket_raw'),
            draw.get('source_id'), int(draw.get('prize_count', 0)),
            draw.get('source', 'upstream'),
            draw.get('imported_at') or datetime.now(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ'),
        ),
    )


def upsert_prize(conn: sqlite3.Connection, draw_id: str, prize: Dict[str, Any]) -> bool:
    """
    Inserts or merges one prize. Empty raw values are never written.

    Returns:
        True when a row was written
    """
    raw_value = str(prize.get('raw_value') or '').strip()
    if not raw_value:
        return False
    conn.execute(
        """
        INSERT INTO prizes (draw_id, position, raw_value, last4, last3, last2, group_index, animal_label)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(draw_id, position) DO UPDATE SET
            raw_value = excluded.raw_value,
            last4 = COALESCE(excluded.last4, prizes.last4),
            last3 = COALESCE(excluded.last3, prizes.last3),
            last2 = COALESCE(excluded.last2, prizes.last2),
            group_index = COALESCE(excluded.group_index, prizes.group_index),
            animal_label = COALESCE(excluded.animal_label, prizes.animal_label)
        """,
        (
            draw_id, int(prize['position']), raw_value, prize.get('last4'), prize.get('last3'),
            prize.get('last2'), prize.get('group_index'), prize.get('animal_label'),
        ),
    )
    return True


def get_draw(draw_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    own = conn is None
    conn = conn or get_db_connection()
    try:
        conn.row_factory = sqlite3.Row
        row = conn.execute("SELECT * FROM draws WHERE id = ?", (draw_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.row_factory = None
        if own:
            conn.close()


def draw_is_complete(draw_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    """True when the draw exists and has at least one persisted prize."""
    own = conn is None
    conn = conn or get_db_connection()
    try:
        row = conn.execute(
            """
            SELECT d.prize_count, (SELECT COUNT(*) FROM prizes p WHERE p.draw_id = d.id)
            FROM draws d WHERE d.id = ?
            """,
            (draw_id,),
        ).fetchone()
        if not row:
            return False
        return (row[0] or 0) > 0 or (row[1] or 0) > 0
    finally:
        if own:
            conn.close()


def get_slot_completion(lottery_key: str, date: str, hour_bucket: str,
                        conn: Optional[sqlite3.Connection] = None) -> Dict[str, int]:
    """Counts draws for one slot and how many of them have prizes."""
    own = conn is None
    conn = conn or get_db_connection()
    try:
        row = conn.execute(
            """
            SELECT COUNT(*),
                   SUM(CASE WHEN EXISTS (SELECT 1 FROM prizes p WHERE p.draw_id = d.id) THEN 1 ELSE 0 END)
            FROM draws d
            WHERE d.lottery_key = ? AND d.date = ? AND d.hour_bucket = ?
            """,
            (lottery_key, date, hour_bucket),
        ).fetchone()
        return {'draws': int(row[0] or 0), 'complete': int(row[1] or 0)}
    finally:
        if own:
            conn.close()


def get_draws_for_date(lottery_key: str, date: str) -> List[Dict[str, Any]]:
    with get_db_connection() as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT * FROM draws WHERE lottery_key = ? AND date = ? ORDER BY hour_bucket, id",
            (lottery_key, date),
        ).fetchall()
        return [dict(r) for r in rows]


def get_lottery_draws_df(lottery_key: str) -> pd.DataFrame:
    """
    Retrieves every captured draw of a lottery as a DataFrame.

    Returns:
        pd.DataFrame with columns date, hour_bucket, prize_count
    """
    try:
        with get_db_connection() as conn:
            df = pd.read_sql_query(
                "SELECT date, hour_bucket, prize_count FROM draws WHERE lottery_key = ? ORDER BY date",
                conn,
                params=(lottery_key,),
            )
        logger.info(f"Loaded {len(df)} draws for {lottery_key}")
        return df
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        logger.error(f"Could not load draws for {lottery_key}: {e}")
        return pd.DataFrame(columns=['date', 'hour_bucket', 'prize_count'])


def _load_prizes(draw_id: str, positions: Optional[Iterable[int]]) -> List[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            f"SELECT {', '.join(PRIZE_COLUMNS)} FROM prizes WHERE draw_id = ? ORDER BY position",
            (draw_id,),
        ).fetchall()
    finally:
        conn.close()
    wanted = set(positions) if positions else None
    return [dict(r) for r in rows if wanted is None or r['position'] in wanted]


def load_prizes_for_draws(draw_ids: List[str], positions: Optional[Iterable[int]] = None,
                          max_workers: int = PRIZE_LOAD_CONCURRENCY) -> Dict[str, List[Dict[str, Any]]]:
    """
    Loads the prize lists of many draws with a bounded worker pool.

    Args:
        draw_ids: Draw ids to load
        positions: Optional subset of positions (e.g. 1..5)
        max_workers: Concurrency limit

    Returns:
        Dict mapping draw id to its prizes, ordered by position
    """
    if not draw_ids:
        return {}
    positions = list(positions) if positions else None
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(draw_ids)))) as pool:
        results = list(pool.map(lambda draw_id: _load_prizes(draw_id, positions), draw_ids))
    return dict(zip(draw_ids, results))
