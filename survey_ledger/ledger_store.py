"""SQLite persistence for surveys, tallies, participants, custody and events."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional


class SurveyStore:
    """Keyed store of every survey plus the ledger's custody account."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._local.conn = conn
            self._local.depth = 0
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
            self._local.depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing scope. Nested scopes become savepoints."""
        conn = self._get_connection()
        depth = self._local.depth
        savepoint = f"sp_{depth}"
        if depth == 0:
            conn.execute("BEGIN IMMEDIATE")
        else:
            conn.execute(f"SAVEPOINT {savepoint}")
        self._local.depth = depth + 1
        try:
            yield conn
        except BaseException:
            self._local.depth = depth
            if depth == 0:
                conn.execute("ROLLBACK")
            else:
                conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        self._local.depth = depth
        if depth == 0:
            conn.execute("COMMIT")
        else:
            conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_custody (
                singleton_id INTEGER PRIMARY KEY CHECK(singleton_id = 1),
                balance_msat INTEGER NOT NULL DEFAULT 0 CHECK(balance_msat >= 0),
                total_in_msat INTEGER NOT NULL DEFAULT 0,
                total_out_msat INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            "INSERT OR IGNORE INTO ledger_custody (singleton_id, updated_at) VALUES (1, 0)"
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS surveys (
                survey_id INTEGER PRIMARY KEY,
                creator TEXT NOT NULL,
                question TEXT NOT NULL,
                options_json TEXT NOT NULL,
                option_count INTEGER NOT NULL CHECK(option_count BETWEEN 2 AND 10),
                end_time INTEGER NOT NULL,
                initial_reward_pool_msat INTEGER NOT NULL,
                reward_pool_msat INTEGER NOT NULL CHECK(reward_pool_msat >= 0),
                deposit_required_msat INTEGER NOT NULL,
                reward_per_response_msat INTEGER NOT NULL,
                total_responses INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                results_released INTEGER NOT NULL DEFAULT 0,
                released_at INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_surveys_creator
            ON surveys(creator, survey_id DESC)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS survey_tallies (
                survey_id INTEGER NOT NULL,
                option_index INTEGER NOT NULL,
                encrypted_votes TEXT NOT NULL,
                decrypted_votes INTEGER NOT NULL DEFAULT 0,
                settled INTEGER NOT NULL DEFAULT 0,
                attested INTEGER NOT NULL DEFAULT 0,
                settled_by TEXT,
                settled_at INTEGER,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(survey_id, option_index),
                FOREIGN KEY(survey_id) REFERENCES surveys(survey_id)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS survey_participants (
                survey_id INTEGER NOT NULL,
                participant TEXT NOT NULL,
                deposit_paid_msat INTEGER NOT NULL,
                responded_at INTEGER NOT NULL,
                has_withdrawn INTEGER NOT NULL DEFAULT 0,
                withdrawn_at INTEGER,
                PRIMARY KEY(survey_id, participant),
                FOREIGN KEY(survey_id) REFERENCES surveys(survey_id)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                survey_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_ledger_events_survey
            ON ledger_events(survey_id, event_id)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_payouts (
                payout_id INTEGER PRIMARY KEY AUTOINCREMENT,
                survey_id INTEGER NOT NULL,
                recipient TEXT NOT NULL,
                amount_msat INTEGER NOT NULL,
                kind TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
            """
        )

        conn.execute("PRAGMA optimize;")

    # custody

    def get_custody(self) -> Dict[str, Any]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM ledger_custody WHERE singleton_id = 1").fetchone()
        return dict(row)

    def credit_custody(self, amount_msat: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE ledger_custody
            SET balance_msat = balance_msat + ?, total_in_msat = total_in_msat + ?, updated_at = ?
            WHERE singleton_id = 1
            """,
            (amount_msat, amount_msat, now_ts),
        )

    def debit_custody(self, amount_msat: int, now_ts: int) -> bool:
        """Take funds out of custody. Returns False when the balance cannot cover it."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE ledger_custody
            SET balance_msat = balance_msat - ?, total_out_msat = total_out_msat + ?, updated_at = ?
            WHERE singleton_id = 1 AND balance_msat >= ?
            """,
            (amount_msat, amount_msat, now_ts, amount_msat),
        )
        return cursor.rowcount > 0

    # surveys

    def next_survey_id(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(MAX(survey_id) + 1, 0) AS next_id FROM surveys"
        ).fetchone()
        return int(row["next_id"])

    def count_surveys(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM surveys").fetchone()
        return int(row["cnt"] or 0)

    def count_open_surveys(self, now_ts: int) -> int:
        """Surveys still accepting responses."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM surveys
            WHERE is_active = 1 AND results_released = 0 AND end_time > ?
            """,
            (now_ts,),
        ).fetchone()
        return int(row["cnt"] or 0)

    def create_survey(
        self,
        survey_id: int,
        creator: str,
        question: str,
        options_json: str,
        option_count: int,
        end_time: int,
        reward_pool_msat: int,
        deposit_required_msat: int,
        reward_per_response_msat: int,
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO surveys (
                survey_id, creator, question, options_json, option_count, end_time,
                initial_reward_pool_msat, reward_pool_msat, deposit_required_msat,
                reward_per_response_msat, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                survey_id,
                creator,
                question,
                options_json,
                option_count,
                end_time,
                reward_pool_msat,
                reward_pool_msat,
                deposit_required_msat,
                reward_per_response_msat,
                now_ts,
                now_ts,
            ),
        )

    def get_survey(self, survey_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM surveys WHERE survey_id = ?",
            (survey_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_surveys(self, limit: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM surveys ORDER BY survey_id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def increment_responses(self, survey_id: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE surveys
            SET total_responses = total_responses + 1, updated_at = ?
            WHERE survey_id = ?
            """,
            (now_ts, survey_id),
        )

    def mark_released(self, survey_id: int, now_ts: int) -> bool:
        """Flip the survey to released. Returns True only for the call that flipped it."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE surveys
            SET results_released = 1, is_active = 0, released_at = ?, updated_at = ?
            WHERE survey_id = ? AND results_released = 0
            """,
            (now_ts, now_ts, survey_id),
        )
        return cursor.rowcount > 0

    def zero_reward_pool(self, survey_id: int, now_ts: int) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE surveys SET reward_pool_msat = 0, updated_at = ?
            WHERE survey_id = ? AND reward_pool_msat > 0
            """,
            (now_ts, survey_id),
        )
        return cursor.rowcount > 0

    def count_total_responses(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(total_responses), 0) AS cnt FROM surveys"
        ).fetchone()
        return int(row["cnt"] or 0)

    # tallies

    def create_tallies(self, survey_id: int, handles: List[str], now_ts: int) -> None:
        conn = self._get_connection()
        conn.executemany(
            """
            INSERT INTO survey_tallies (survey_id, option_index, encrypted_votes, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            [(survey_id, index, handle, now_ts) for index, handle in enumerate(handles)],
        )

    def get_tallies(self, survey_id: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM survey_tallies WHERE survey_id = ? ORDER BY option_index ASC",
            (survey_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def set_encrypted_votes(self, survey_id: int, handles: List[str], now_ts: int) -> None:
        conn = self._get_connection()
        conn.executemany(
            """
            UPDATE survey_tallies SET encrypted_votes = ?, updated_at = ?
            WHERE survey_id = ? AND option_index = ?
            """,
            [(handle, now_ts, survey_id, index) for index, handle in enumerate(handles)],
        )

    def store_decrypted_votes(
        self,
        survey_id: int,
        option_index: int,
        count: int,
        settled_by: str,
        now_ts: int,
        attested: bool = False,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE survey_tallies
            SET decrypted_votes = ?, settled = 1, attested = ?, settled_by = ?, settled_at = ?, updated_at = ?
            WHERE survey_id = ? AND option_index = ?
            """,
            (count, int(attested), settled_by, now_ts, now_ts, survey_id, option_index),
        )

    # participants

    def add_participant(
        self,
        survey_id: int,
        participant: str,
        deposit_paid_msat: int,
        now_ts: int,
    ) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO survey_participants (
                survey_id, participant, deposit_paid_msat, responded_at
            ) VALUES (?, ?, ?, ?)
            """,
            (survey_id, participant, deposit_paid_msat, now_ts),
        )
        return cursor.rowcount > 0

    def get_participant(self, survey_id: int, participant: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM survey_participants WHERE survey_id = ? AND participant = ?",
            (survey_id, participant),
        ).fetchone()
        return dict(row) if row else None

    def mark_withdrawn(self, survey_id: int, participant: str, now_ts: int) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE survey_participants SET has_withdrawn = 1, withdrawn_at = ?
            WHERE survey_id = ? AND participant = ? AND has_withdrawn = 0
            """,
            (now_ts, survey_id, participant),
        )
        return cursor.rowcount > 0

    def count_unwithdrawn(self, survey_id: int) -> int:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM survey_participants
            WHERE survey_id = ? AND has_withdrawn = 0
            """,
            (survey_id,),
        ).fetchone()
        return int(row["cnt"] or 0)

    def sum_participant_liabilities(self) -> int:
        """Deposit plus reward owed to every participant who has not withdrawn."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COALESCE(SUM(s.deposit_required_msat + s.reward_per_response_msat), 0) AS owed
            FROM survey_participants p
            JOIN surveys s ON s.survey_id = p.survey_id
            WHERE p.has_withdrawn = 0
            """
        ).fetchone()
        return int(row["owed"] or 0)

    def sum_creator_liabilities(self) -> int:
        """Unallocated reward still owed back to creators."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COALESCE(SUM(
                MAX(0, reward_pool_msat - total_responses * reward_per_response_msat)
            ), 0) AS owed
            FROM surveys
            """
        ).fetchone()
        return int(row["owed"] or 0)

    # events and payouts

    def add_event(self, survey_id: int, event_type: str, payload_json: str, now_ts: int) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO ledger_events (survey_id, event_type, payload_json, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (survey_id, event_type, payload_json, now_ts),
        )
        return int(cursor.lastrowid)

    def list_events(self, survey_id: int, limit: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM ledger_events WHERE survey_id = ?
            ORDER BY event_id ASC LIMIT ?
            """,
            (survey_id, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def add_payout(
        self,
        survey_id: int,
        recipient: str,
        amount_msat: int,
        kind: str,
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO ledger_payouts (survey_id, recipient, amount_msat, kind, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (survey_id, recipient, amount_msat, kind, now_ts),
        )

    def list_payouts(self, survey_id: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM ledger_payouts WHERE survey_id = ? ORDER BY payout_id ASC",
            (survey_id,),
        ).fetchall()
        return [dict(row) for row in rows]
