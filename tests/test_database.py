"""MySQLStore against a mocked connection pool."""

import json
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import mysql.connector
import pytest
from mysql.connector import errorcode

from ielts_core.database import TABLES, MySQLStore
from ielts_core.evaluator import Evaluation
from ielts_core.models import GlobalSession, Module, PerformanceAnalytics, SessionStatus, TestResult

NOW = datetime(2024, 1, 1, 12, 0, 0)

DB_CONFIG = {
    'host': 'localhost',
    'user': 'root',
    'password': '',
    'database': 'ielts_test',
    'pool_name': 'ielts_pool',
    'pool_size': 2,
}


def session_row(attempt_id="attempt-1", expires_at=NOW + timedelta(minutes=30), **overrides):
    row = {
        'id': f"session-{attempt_id}",
        'user_id': "user-1",
        'module': "LISTENING",
        'module_test_id': "listening-sample-1",
        'module_attempt_id': attempt_id,
        'status': "IN_PROGRESS",
        'started_at': NOW - timedelta(minutes=5),
        'last_activity_at': NOW - timedelta(minutes=5),
        'expires_at': expires_at,
        'time_limit_seconds': 1800,
        'is_active': 1,
    }
    row.update(overrides)
    return row


def new_session(attempt_id="attempt-2"):
    return GlobalSession(
        id="session-new",
        user_id="user-1",
        module=Module.READING,
        module_test_id="reading-sample-1",
        module_attempt_id=attempt_id,
        status=SessionStatus.NOT_STARTED,
        started_at=NOW,
        last_activity_at=NOW,
        expires_at=NOW + timedelta(hours=1),
        time_limit_seconds=3600,
    )


def executed_sql(cursor):
    return [" ".join(call.args[0].split()) for call in cursor.execute.call_args_list]


@pytest.fixture
def cursor():
    cursor = MagicMock()
    cursor.fetchall.return_value = []
    cursor.fetchone.return_value = None
    cursor.rowcount = 1
    return cursor


@pytest.fixture
def conn(cursor):
    conn = MagicMock()
    conn.cursor.return_value = cursor
    return conn


@pytest.fixture
def mysql_store(conn):
    pool = MagicMock()
    pool.get_connection.return_value = conn
    return MySQLStore(DB_CONFIG, pool=pool)


class TestSchema:
    def test_create_tables_runs_every_ddl(self, mysql_store, cursor, conn):
        mysql_store.create_tables()

        assert cursor.execute.call_count == len(TABLES)
        conn.commit.assert_called_once()
        assert "active_user_id" in TABLES['global_test_sessions']
        assert "UNIQUE KEY uq_results_attempt" in TABLES['test_results']


class TestInsertGlobalSession:
    def test_inserts_when_no_active_row(self, mysql_store, cursor, conn):
        assert mysql_store.insert_global_session(new_session(), NOW) is None

        sql = executed_sql(cursor)
        assert sql[0].endswith("FOR UPDATE")
        assert sql[1].startswith("INSERT INTO global_test_sessions")
        conn.start_transaction.assert_called_once()
        conn.commit.assert_called_once()
        cursor.close.assert_called()
        conn.close.assert_called()

    def test_returns_blocking_session(self, mysql_store, cursor, conn):
        cursor.fetchall.return_value = [session_row()]

        blocking = mysql_store.insert_global_session(new_session(), NOW)

        assert blocking.module_attempt_id == "attempt-1"
        assert blocking.module is Module.LISTENING
        conn.rollback.assert_called_once()
        assert not any(s.startswith("INSERT") for s in executed_sql(cursor))

    def test_stale_row_is_closed_before_insert(self, mysql_store, cursor):
        cursor.fetchall.return_value = [session_row(expires_at=NOW - timedelta(seconds=1))]

        assert mysql_store.insert_global_session(new_session(), NOW) is None

        sql = executed_sql(cursor)
        assert sql[1].startswith("UPDATE global_test_sessions SET status = %s, is_active = FALSE")
        assert cursor.execute.call_args_list[1].args[1][0] == "EXPIRED"
        assert sql[2].startswith("UPDATE module_attempts SET status = %s, completed_at = %s WHERE id IN (%s)")
        assert cursor.execute.call_args_list[2].args[1][:3] == ("EXPIRED", NOW, "attempt-1")
        assert sql[3].startswith("INSERT INTO global_test_sessions")

    def test_duplicate_key_becomes_conflict(self, mysql_store, cursor, conn):
        def execute(sql, params=None):
            if sql.lstrip().startswith("INSERT INTO global_test_sessions"):
                raise mysql.connector.IntegrityError(msg="Duplicate entry", errno=errorcode.ER_DUP_ENTRY)

        cursor.execute.side_effect = execute
        cursor.fetchone.return_value = session_row(attempt_id="attempt-racer")

        blocking = mysql_store.insert_global_session(new_session(), NOW)

        assert blocking.module_attempt_id == "attempt-racer"
        conn.rollback.assert_called()

    @pytest.mark.parametrize("errno", [errorcode.ER_LOCK_DEADLOCK, errorcode.ER_LOCK_WAIT_TIMEOUT])
    def test_lock_contention_becomes_conflict(self, mysql_store, cursor, conn, errno):
        def execute(sql, params=None):
            if sql.lstrip().startswith("INSERT INTO global_test_sessions"):
                raise mysql.connector.DatabaseError(msg="Deadlock found", errno=errno)

        cursor.execute.side_effect = execute
        cursor.fetchone.return_value = session_row(attempt_id="attempt-racer")

        blocking = mysql_store.insert_global_session(new_session(), NOW)

        assert blocking.module_attempt_id == "attempt-racer"
        conn.rollback.assert_called()
        conn.commit.assert_not_called()

    def test_other_integrity_errors_propagate(self, mysql_store, cursor):
        def execute(sql, params=None):
            if sql.lstrip().startswith("INSERT INTO global_test_sessions"):
                raise mysql.connector.IntegrityError(msg="Bad column", errno=errorcode.ER_BAD_NULL_ERROR)

        cursor.execute.side_effect = execute

        with pytest.raises(mysql.connector.IntegrityError):
            mysql_store.insert_global_session(new_session(), NOW)


class TestAttempts:
    def test_get_attempt_maps_row(self, mysql_store, cursor):
        cursor.fetchone.return_value = {
            'id': "attempt-1",
            'user_id': "user-1",
            'module': "READING",
            'test_id': "reading-sample-1",
            'status': "IN_PROGRESS",
            'started_at': NOW,
            'expires_at': NOW + timedelta(hours=1),
            'completed_at': None,
            'submitted_at': None,
            'time_spent': 30,
            'score': None,
            'total_score': None,
            'band_score': None,
            'percentage': None,
            'progress': json.dumps({"current_passage": 2}),
        }

        attempt = mysql_store.get_attempt("attempt-1")

        assert attempt.module is Module.READING
        assert attempt.status is SessionStatus.IN_PROGRESS
        assert attempt.progress == {"current_passage": 2}

    def test_transition_is_conditional(self, mysql_store, cursor):
        cursor.rowcount = 0

        changed = mysql_store.transition_attempt(
            "attempt-1", {SessionStatus.IN_PROGRESS}, SessionStatus.EXPIRED, completed_at=NOW
        )

        assert changed is False
        sql = executed_sql(cursor)[0]
        assert sql.startswith("UPDATE module_attempts SET status = %s, completed_at = %s")
        assert "status IN (%s)" in sql

    def test_transition_rejects_unknown_fields(self, mysql_store):
        with pytest.raises(ValueError):
            mysql_store.transition_attempt("attempt-1", {SessionStatus.IN_PROGRESS}, SessionStatus.EXPIRED, user_id="x")

    def test_save_answer_refused_after_completion(self, mysql_store, cursor, conn):
        cursor.fetchone.return_value = {'status': "COMPLETED"}

        assert mysql_store.save_answer("attempt-1", "q1", 1, "Paris", 3) is None
        conn.rollback.assert_called_once()
        assert not any(s.startswith("INSERT INTO answers") for s in executed_sql(cursor))

    def test_open_attempt_lookup_skips_expired(self, mysql_store, cursor):
        assert mysql_store.find_open_attempt("user-1", Module.LISTENING, NOW) is None

        sql = executed_sql(cursor)[0]
        assert "expires_at > %s" in sql
        assert sql.endswith("ORDER BY started_at DESC LIMIT 1")
        assert cursor.execute.call_args.args[1][-1] == NOW


class TestCatalog:
    def test_list_tests_filters_active(self, mysql_store, cursor):
        cursor.fetchall.return_value = [{'id': "listening-sample-1"}]
        mysql_store.get_test = MagicMock(return_value="content")

        assert mysql_store.list_tests(Module.LISTENING) == ["content"]

        sql = executed_sql(cursor)[0]
        assert "module = %s AND is_active = TRUE" in sql
        mysql_store.get_test.assert_called_once_with("listening-sample-1")

    def test_list_tests_can_include_inactive(self, mysql_store, cursor):
        mysql_store.list_tests(Module.READING, active_only=False)

        assert "is_active" not in executed_sql(cursor)[0]


class TestCommitResult:
    @pytest.fixture
    def result(self):
        return TestResult(
            id="result-1",
            attempt_id="attempt-1",
            user_id="user-1",
            test_id="listening-sample-1",
            module=Module.LISTENING,
            score=1,
            total_score=1,
            band_score=1.0,
            percentage=100.0,
            correct_answers=1,
            wrong_answers=0,
            skipped_answers=0,
            section_scores={"section1": {"correct": 1, "total": 1, "percentage": 100.0}},
            question_type_scores={},
            strengths=("Strong performance in section1",),
            weaknesses=(),
            time_spent=60,
            completion_rate=100.0,
            created_at=NOW,
        )

    @staticmethod
    def bump(previous):
        return PerformanceAnalytics(user_id="user-1", module=Module.LISTENING, total_tests=1)

    def test_commits_result_and_analytics_together(self, mysql_store, cursor, conn, result):
        analytics = mysql_store.commit_result(
            result, {"q1": Evaluation(True, 1)}, {"completed_at": NOW, "band_score": 1.0}, self.bump
        )

        assert analytics.total_tests == 1
        sql = executed_sql(cursor)
        assert sql[0].startswith("UPDATE module_attempts SET status = %s, completed_at = %s, band_score = %s")
        assert sql[1].startswith("INSERT INTO test_results")
        assert sql[2].startswith("INSERT IGNORE INTO performance_analytics")
        assert sql[3].endswith("FOR UPDATE")
        assert sql[4].startswith("UPDATE performance_analytics SET")
        cursor.executemany.assert_called_once()
        conn.start_transaction.assert_called_once()
        conn.commit.assert_called_once()

    def test_lost_race_rolls_back(self, mysql_store, cursor, conn, result):
        cursor.rowcount = 0

        analytics = mysql_store.commit_result(
            result, {"q1": Evaluation(True, 1)}, {"completed_at": NOW}, self.bump
        )

        assert analytics is None
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        assert len(executed_sql(cursor)) == 1

    def test_duplicate_result_rolls_back(self, mysql_store, cursor, conn, result):
        def execute(sql, params=None):
            if sql.lstrip().startswith("INSERT INTO test_results"):
                raise mysql.connector.IntegrityError(msg="Duplicate entry", errno=errorcode.ER_DUP_ENTRY)

        cursor.execute.side_effect = execute

        assert mysql_store.commit_result(result, {}, {"completed_at": NOW}, self.bump) is None
        conn.rollback.assert_called_once()

    def test_analytics_failure_rolls_back_everything(self, mysql_store, cursor, conn, result):
        def broken(previous):
            raise RuntimeError("analytics unavailable")

        with pytest.raises(RuntimeError):
            mysql_store.commit_result(result, {"q1": Evaluation(True, 1)}, {"completed_at": NOW}, broken)

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()


class TestAnalytics:
    def test_apply_analytics_locks_and_updates(self, mysql_store, cursor, conn):
        cursor.fetchone.return_value = None
        seen = []

        def update(previous):
            seen.append(previous)
            return PerformanceAnalytics(user_id="user-1", module=Module.WRITING, total_tests=1)

        analytics = mysql_store.apply_analytics("user-1", Module.WRITING, update)

        assert analytics.total_tests == 1
        assert seen == [None]
        sql = executed_sql(cursor)
        assert sql[0].startswith("INSERT IGNORE INTO performance_analytics")
        assert sql[1].endswith("FOR UPDATE")
        assert sql[2].startswith("UPDATE performance_analytics SET")
