import json
import logging
from contextlib import contextmanager

import mysql.connector
from mysql.connector import errorcode, pooling

from ielts_core.models import (
    Answer,
    GlobalSession,
    Module,
    ModuleAttempt,
    PerformanceAnalytics,
    Question,
    Section,
    SessionStatus,
    SubscriptionTier,
    TestContent,
    TestResult,
)

logger = logging.getLogger(__name__)

TABLES = {}

TABLES['users'] = '''
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(100) PRIMARY KEY,
        subscription_tier VARCHAR(20) NOT NULL DEFAULT 'FREE',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
'''

TABLES['tests'] = '''
    CREATE TABLE IF NOT EXISTS tests (
        id VARCHAR(100) PRIMARY KEY,
        module VARCHAR(20) NOT NULL,
        title VARCHAR(255) NOT NULL,
        description TEXT,
        time_limit_seconds INT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        audio_url VARCHAR(500),
        audio_duration INT NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
'''

TABLES['test_sections'] = '''
    CREATE TABLE IF NOT EXISTS test_sections (
        id VARCHAR(100) PRIMARY KEY,
        test_id VARCHAR(100) NOT NULL,
        number INT NOT NULL,
        title VARCHAR(255) NOT NULL,
        instructions TEXT,
        KEY idx_sections_test (test_id)
    )
'''

TABLES['questions'] = '''
    CREATE TABLE IF NOT EXISTS questions (
        id VARCHAR(100) PRIMARY KEY,
        section_id VARCHAR(100) NOT NULL,
        question_number INT NOT NULL,
        question_type VARCHAR(50) NOT NULL,
        prompt TEXT,
        options TEXT,
        correct_answer VARCHAR(500) NOT NULL DEFAULT '',
        acceptable_answers TEXT,
        case_sensitive BOOLEAN NOT NULL DEFAULT FALSE,
        points INT NOT NULL DEFAULT 1,
        KEY idx_questions_section (section_id)
    )
'''

# active_user_id is NULL for closed rows, so the unique key allows at most one
# active global session per user while keeping the full history.
TABLES['global_test_sessions'] = '''
    CREATE TABLE IF NOT EXISTS global_test_sessions (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(100) NOT NULL,
        module VARCHAR(20) NOT NULL,
        module_test_id VARCHAR(100) NOT NULL,
        module_attempt_id VARCHAR(36) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'NOT_STARTED',
        started_at DATETIME NOT NULL,
        last_activity_at DATETIME NOT NULL,
        expires_at DATETIME NOT NULL,
        time_limit_seconds INT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        active_user_id VARCHAR(100) AS (IF(is_active, user_id, NULL)) STORED,
        UNIQUE KEY uq_global_sessions_active_user (active_user_id),
        KEY idx_global_sessions_user (user_id),
        KEY idx_global_sessions_attempt (module_attempt_id)
    )
'''

TABLES['module_attempts'] = '''
    CREATE TABLE IF NOT EXISTS module_attempts (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(100) NOT NULL,
        module VARCHAR(20) NOT NULL,
        test_id VARCHAR(100) NOT NULL,
        status VARCHAR(20) NOT NULL,
        started_at DATETIME NOT NULL,
        expires_at DATETIME NOT NULL,
        completed_at DATETIME NULL,
        submitted_at DATETIME NULL,
        time_spent INT NOT NULL DEFAULT 0,
        score INT NULL,
        total_score INT NULL,
        band_score FLOAT NULL,
        percentage FLOAT NULL,
        progress TEXT,
        KEY idx_attempts_user_module (user_id, module, status)
    )
'''

TABLES['answers'] = '''
    CREATE TABLE IF NOT EXISTS answers (
        id INT AUTO_INCREMENT PRIMARY KEY,
        attempt_id VARCHAR(36) NOT NULL,
        question_id VARCHAR(100) NOT NULL,
        question_number INT NOT NULL,
        user_answer TEXT NOT NULL,
        time_spent INT NOT NULL DEFAULT 0,
        is_correct BOOLEAN NULL,
        points_earned INT NOT NULL DEFAULT 0,
        UNIQUE KEY uq_answers_attempt_question (attempt_id, question_id)
    )
'''

TABLES['test_results'] = '''
    CREATE TABLE IF NOT EXISTS test_results (
        id VARCHAR(36) PRIMARY KEY,
        attempt_id VARCHAR(36) NOT NULL,
        user_id VARCHAR(100) NOT NULL,
        test_id VARCHAR(100) NOT NULL,
        module VARCHAR(20) NOT NULL,
        score INT NOT NULL,
        total_score INT NOT NULL,
        band_score FLOAT NOT NULL,
        percentage FLOAT NOT NULL,
        correct_answers INT NOT NULL,
        wrong_answers INT NOT NULL,
        skipped_answers INT NOT NULL,
        section_scores TEXT,
        question_type_scores TEXT,
        strengths TEXT,
        weaknesses TEXT,
        time_spent INT NOT NULL DEFAULT 0,
        audio_time_spent INT NOT NULL DEFAULT 0,
        audio_utilization FLOAT NOT NULL DEFAULT 0,
        completion_rate FLOAT NOT NULL DEFAULT 0,
        ai_feedback TEXT,
        recommendations TEXT,
        next_level_suggestion VARCHAR(255),
        task_bands TEXT,
        created_at DATETIME NOT NULL,
        UNIQUE KEY uq_results_attempt (attempt_id)
    )
'''

TABLES['performance_analytics'] = '''
    CREATE TABLE IF NOT EXISTS performance_analytics (
        user_id VARCHAR(100) NOT NULL,
        module VARCHAR(20) NOT NULL,
        total_tests INT NOT NULL DEFAULT 0,
        average_band_score FLOAT NOT NULL DEFAULT 0,
        best_band_score FLOAT NOT NULL DEFAULT 0,
        latest_band_score FLOAT NOT NULL DEFAULT 0,
        average_time_spent FLOAT NOT NULL DEFAULT 0,
        average_audio_time FLOAT NOT NULL DEFAULT 0,
        audio_utilization_rate FLOAT NOT NULL DEFAULT 0,
        completion_rate FLOAT NOT NULL DEFAULT 0,
        last_test_date DATETIME NULL,
        next_allowed_attempt_at DATETIME NULL,
        PRIMARY KEY (user_id, module)
    )
'''

SESSION_COLUMNS = (
    "id, user_id, module, module_test_id, module_attempt_id, status, started_at, "
    "last_activity_at, expires_at, time_limit_seconds, is_active"
)

# Two first-time starts for one user collide on the unique key or on gap locks
START_RACE_ERRORS = frozenset({
    errorcode.ER_DUP_ENTRY,
    errorcode.ER_LOCK_DEADLOCK,
    errorcode.ER_LOCK_WAIT_TIMEOUT,
})

ATTEMPT_FIELDS = frozenset({
    "completed_at", "submitted_at", "time_spent", "score", "total_score",
    "band_score", "percentage",
})


def _session_from_row(row):
    return GlobalSession(
        id=row['id'],
        user_id=row['user_id'],
        module=Module(row['module']),
        module_test_id=row['module_test_id'],
        module_attempt_id=row['module_attempt_id'],
        status=SessionStatus(row['status']),
        started_at=row['started_at'],
        last_activity_at=row['last_activity_at'],
        expires_at=row['expires_at'],
        time_limit_seconds=row['time_limit_seconds'],
        is_active=bool(row['is_active']),
    )


def _attempt_from_row(row):
    return ModuleAttempt(
        id=row['id'],
        user_id=row['user_id'],
        module=Module(row['module']),
        test_id=row['test_id'],
        status=SessionStatus(row['status']),
        started_at=row['started_at'],
        expires_at=row['expires_at'],
        completed_at=row['completed_at'],
        submitted_at=row['submitted_at'],
        time_spent=row['time_spent'],
        score=row['score'],
        total_score=row['total_score'],
        band_score=row['band_score'],
        percentage=row['percentage'],
        progress=json.loads(row['progress'] or '{}'),
    )


def _answer_from_row(row):
    return Answer(
        attempt_id=row['attempt_id'],
        question_id=row['question_id'],
        question_number=row['question_number'],
        user_answer=row['user_answer'],
        time_spent=row['time_spent'],
        is_correct=None if row['is_correct'] is None else bool(row['is_correct']),
        points_earned=row['points_earned'],
    )


def _result_from_row(row):
    return TestResult(
        id=row['id'],
        attempt_id=row['attempt_id'],
        user_id=row['user_id'],
        test_id=row['test_id'],
        module=Module(row['module']),
        score=row['score'],
        total_score=row['total_score'],
        band_score=row['band_score'],
        percentage=row['percentage'],
        correct_answers=row['correct_answers'],
        wrong_answers=row['wrong_answers'],
        skipped_answers=row['skipped_answers'],
        section_scores=json.loads(row['section_scores'] or '{}'),
        question_type_scores=json.loads(row['question_type_scores'] or '{}'),
        strengths=tuple(json.loads(row['strengths'] or '[]')),
        weaknesses=tuple(json.loads(row['weaknesses'] or '[]')),
        time_spent=row['time_spent'],
        completion_rate=row['completion_rate'],
        created_at=row['created_at'],
        audio_time_spent=row['audio_time_spent'],
        audio_utilization=row['audio_utilization'],
        ai_feedback=json.loads(row['ai_feedback'] or '{}'),
        recommendations=tuple(json.loads(row['recommendations'] or '[]')),
        next_level_suggestion=row['next_level_suggestion'] or '',
        task_bands=json.loads(row['task_bands'] or '{}'),
    )


def _analytics_from_row(row):
    return PerformanceAnalytics(
        user_id=row['user_id'],
        module=Module(row['module']),
        total_tests=row['total_tests'],
        average_band_score=row['average_band_score'],
        best_band_score=row['best_band_score'],
        latest_band_score=row['latest_band_score'],
        average_time_spent=row['average_time_spent'],
        average_audio_time=row['average_audio_time'],
        audio_utilization_rate=row['audio_utilization_rate'],
        completion_rate=row['completion_rate'],
        last_test_date=row['last_test_date'],
        next_allowed_attempt_at=row['next_allowed_attempt_at'],
    )


class MySQLStore:
    """Durable storage on a mysql.connector connection pool."""

    def __init__(self, db_config, pool=None):
        self.db_config = dict(db_config)
        self.connection_pool = pool

    def init_db(self):
        """Initialize database and create tables"""
        # First connect without database to create it if needed
        conn = mysql.connector.connect(
            host=self.db_config['host'],
            user=self.db_config['user'],
            password=self.db_config['password']
        )
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"CREATE DATABASE IF NOT EXISTS {self.db_config['database']} "
                "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
            )
            cursor.close()
        finally:
            conn.close()

        self.connection_pool = pooling.MySQLConnectionPool(**self.db_config)
        self.create_tables()

    def get_connection(self):
        """Get connection from pool"""
        if self.connection_pool is None:
            self.init_db()
        return self.connection_pool.get_connection()

    @contextmanager
    def _cursor(self):
        conn = self.get_connection()
        cursor = conn.cursor(dictionary=True)
        try:
            yield conn, cursor
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    def create_tables(self):
        """Create all necessary tables"""
        with self._cursor() as (conn, cursor):
            for name, ddl in TABLES.items():
                logger.debug("Ensuring table %s", name)
                cursor.execute(ddl)
            conn.commit()

    # User operations
    def upsert_user(self, user_id, tier=SubscriptionTier.FREE):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                INSERT INTO users (id, subscription_tier) VALUES (%s, %s)
                ON DUPLICATE KEY UPDATE subscription_tier = VALUES(subscription_tier)
            ''', (user_id, SubscriptionTier(tier).value))
            conn.commit()

    def get_subscription_tier(self, user_id):
        with self._cursor() as (conn, cursor):
            cursor.execute("SELECT subscription_tier FROM users WHERE id = %s", (user_id,))
            row = cursor.fetchone()
        return SubscriptionTier(row['subscription_tier']) if row else None

    # Test content operations
    def add_test(self, content):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                INSERT INTO tests
                (id, module, title, description, time_limit_seconds, is_active, audio_url, audio_duration)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ''', (content.id, content.module.value, content.title, content.description,
                  content.time_limit_seconds, content.is_active, content.audio_url, content.audio_duration))
            for section in content.sections:
                cursor.execute('''
                    INSERT INTO test_sections (id, test_id, number, title, instructions)
                    VALUES (%s, %s, %s, %s, %s)
                ''', (section.id, content.id, section.number, section.title, section.instructions))
                cursor.executemany('''
                    INSERT INTO questions
                    (id, section_id, question_number, question_type, prompt, options,
                     correct_answer, acceptable_answers, case_sensitive, points)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ''', [
                    (q.id, section.id, q.question_number, q.question_type, q.prompt,
                     json.dumps(q.options) if q.options is not None else None,
                     q.correct_answer, json.dumps(list(q.acceptable_answers)),
                     q.case_sensitive, q.points)
                    for q in section.questions
                ])
            conn.commit()

    def get_test(self, test_id):
        with self._cursor() as (conn, cursor):
            cursor.execute("SELECT * FROM tests WHERE id = %s", (test_id,))
            test = cursor.fetchone()
            if test is None:
                return None
            cursor.execute(
                "SELECT * FROM test_sections WHERE test_id = %s ORDER BY number", (test_id,)
            )
            section_rows = cursor.fetchall()
            cursor.execute('''
                SELECT q.* FROM questions q
                JOIN test_sections s ON s.id = q.section_id
                WHERE s.test_id = %s ORDER BY q.question_number
            ''', (test_id,))
            question_rows = cursor.fetchall()

        sections = []
        for row in section_rows:
            questions = [
                Question(
                    id=q['id'],
                    section_id=q['section_id'],
                    question_number=q['question_number'],
                    question_type=q['question_type'],
                    correct_answer=q['correct_answer'],
                    acceptable_answers=tuple(json.loads(q['acceptable_answers'] or '[]')),
                    case_sensitive=bool(q['case_sensitive']),
                    points=q['points'],
                    prompt=q['prompt'] or '',
                    options=json.loads(q['options']) if q['options'] else None,
                )
                for q in question_rows if q['section_id'] == row['id']
            ]
            sections.append(Section(
                id=row['id'],
                number=row['number'],
                title=row['title'],
                instructions=row['instructions'] or '',
                questions=questions,
            ))

        return TestContent(
            id=test['id'],
            module=Module(test['module']),
            title=test['title'],
            time_limit_seconds=test['time_limit_seconds'],
            sections=sections,
            is_active=bool(test['is_active']),
            description=test['description'] or '',
            audio_url=test['audio_url'],
            audio_duration=test['audio_duration'],
        )

    def list_tests(self, module, active_only=True):
        query = "SELECT id FROM tests WHERE module = %s"
        if active_only:
            query += " AND is_active = TRUE"
        with self._cursor() as (conn, cursor):
            cursor.execute(query + " ORDER BY created_at, id", (module.value,))
            test_ids = [row['id'] for row in cursor.fetchall()]
        return [self.get_test(test_id) for test_id in test_ids]

    # Global session operations
    def insert_global_session(self, session, now):
        """Insert ``session`` unless the user already holds a live one.

        Returns the blocking session, or None when the insert went through.
        The row lock taken by SELECT ... FOR UPDATE serialises concurrent
        starts for the same user; the unique key on active_user_id catches
        anything that slips past it. A stale claim is closed together with
        its module attempt.
        """
        for _ in range(2):
            with self._cursor() as (conn, cursor):
                try:
                    conn.start_transaction()
                    cursor.execute(
                        f"SELECT {SESSION_COLUMNS} FROM global_test_sessions "
                        "WHERE user_id = %s AND is_active = TRUE FOR UPDATE",
                        (session.user_id,),
                    )
                    rows = [_session_from_row(row) for row in cursor.fetchall()]
                    for existing in rows:
                        if existing.blocks(now):
                            conn.rollback()
                            return existing
                    if rows:
                        cursor.execute('''
                            UPDATE global_test_sessions
                            SET status = %s, is_active = FALSE, last_activity_at = %s
                            WHERE user_id = %s AND is_active = TRUE
                        ''', (SessionStatus.EXPIRED.value, now, session.user_id))
                        stale_ids = [existing.module_attempt_id for existing in rows]
                        placeholders = ', '.join(['%s'] * len(stale_ids))
                        cursor.execute(
                            "UPDATE module_attempts SET status = %s, completed_at = %s "
                            f"WHERE id IN ({placeholders}) AND status IN (%s, %s)",
                            (SessionStatus.EXPIRED.value, now, *stale_ids,
                             SessionStatus.NOT_STARTED.value, SessionStatus.IN_PROGRESS.value),
                        )
                    cursor.execute(f'''
                        INSERT INTO global_test_sessions ({SESSION_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ''', (session.id, session.user_id, session.module.value, session.module_test_id,
                          session.module_attempt_id, session.status.value, session.started_at,
                          session.last_activity_at, session.expires_at, session.time_limit_seconds,
                          session.is_active))
                    conn.commit()
                    return None
                except mysql.connector.DatabaseError as e:
                    if e.errno not in START_RACE_ERRORS:
                        raise
                    conn.rollback()
                    logger.warning(
                        "Concurrent session start for user %s lost the race (errno %s)",
                        session.user_id, e.errno,
                    )

            blocking = self.find_open_global_session(session.user_id)
            if blocking is not None:
                return blocking
        raise RuntimeError(f"Could not acquire a global session for user {session.user_id}")

    def find_open_global_session(self, user_id):
        with self._cursor() as (conn, cursor):
            cursor.execute(
                f"SELECT {SESSION_COLUMNS} FROM global_test_sessions "
                "WHERE user_id = %s AND is_active = TRUE AND status IN (%s, %s) "
                "ORDER BY started_at DESC LIMIT 1",
                (user_id, SessionStatus.NOT_STARTED.value, SessionStatus.IN_PROGRESS.value),
            )
            row = cursor.fetchone()
        return _session_from_row(row) if row else None

    def update_global_session(self, user_id, module_attempt_id, status, is_active, now):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                UPDATE global_test_sessions
                SET status = %s, is_active = %s, last_activity_at = %s
                WHERE user_id = %s AND module_attempt_id = %s AND is_active = TRUE
            ''', (status.value, is_active, now, user_id, module_attempt_id))
            conn.commit()
            return cursor.rowcount

    def expire_global_sessions(self, now):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                UPDATE global_test_sessions
                SET status = %s, is_active = FALSE
                WHERE is_active = TRUE AND expires_at < %s
            ''', (SessionStatus.EXPIRED.value, now))
            conn.commit()
            return cursor.rowcount

    def close_all_global_sessions(self, user_id, now):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                UPDATE global_test_sessions
                SET status = %s, is_active = FALSE, last_activity_at = %s
                WHERE user_id = %s AND is_active = TRUE
            ''', (SessionStatus.EXPIRED.value, now, user_id))
            conn.commit()
            return cursor.rowcount

    def list_global_sessions(self, user_id, offset, limit):
        with self._cursor() as (conn, cursor):
            cursor.execute(
                f"SELECT {SESSION_COLUMNS} FROM global_test_sessions WHERE user_id = %s "
                "ORDER BY started_at DESC LIMIT %s OFFSET %s",
                (user_id, limit, offset),
            )
            sessions = [_session_from_row(row) for row in cursor.fetchall()]
            cursor.execute(
                "SELECT COUNT(*) as count FROM global_test_sessions WHERE user_id = %s", (user_id,)
            )
            total = cursor.fetchone()['count']
        return sessions, total

    # Attempt operations
    def create_attempt(self, attempt):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                INSERT INTO module_attempts
                (id, user_id, module, test_id, status, started_at, expires_at, time_spent, progress)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ''', (attempt.id, attempt.user_id, attempt.module.value, attempt.test_id,
                  attempt.status.value, attempt.started_at, attempt.expires_at,
                  attempt.time_spent, json.dumps(attempt.progress, default=str)))
            conn.commit()

    def get_attempt(self, attempt_id):
        with self._cursor() as (conn, cursor):
            cursor.execute("SELECT * FROM module_attempts WHERE id = %s", (attempt_id,))
            row = cursor.fetchone()
        return _attempt_from_row(row) if row else None

    def find_open_attempt(self, user_id, module, now):
        with self._cursor() as (conn, cursor):
            cursor.execute('''
                SELECT * FROM module_attempts
                WHERE user_id = %s AND module = %s AND status IN (%s, %s) AND expires_at > %s
                ORDER BY started_at DESC LIMIT 1
            ''', (user_id, module.value, SessionStatus.NOT_STARTED.value,
                  SessionStatus.IN_PROGRESS.value, now))
            row = cursor.fetchone()
        return _attempt_from_row(row) if row else None

    def count_attempts(self, user_id, module, statuses):
        placeholders = ', '.join(['%s'] * len(statuses))
        with self._cursor() as (conn, cursor):
            cursor.execute(
                "SELECT COUNT(*) as count FROM module_attempts "
                f"WHERE user_id = %s AND module = %s AND status IN ({placeholders})",
                (user_id, module.value, *[s.value for s in statuses]),
            )
            return cursor.fetchone()['count']

    def transition_attempt(self, attempt_id, from_statuses, to_status, **fields):
        """Conditional status update; returns False when the attempt moved on already."""
        unknown = set(fields) - ATTEMPT_FIELDS
        if unknown:
            raise ValueError(f"Unknown attempt fields: {sorted(unknown)}")

        updates = ["status = %s"]
        values = [to_status.value]
        for key, value in fields.items():
            updates.append(f"{key} = %s")
            values.append(value)
        statuses = [s.value for s in from_statuses]
        placeholders = ', '.join(['%s'] * len(statuses))

        with self._cursor() as (conn, cursor):
            cursor.execute(
                f"UPDATE module_attempts SET {', '.join(updates)} "
                f"WHERE id = %s AND status IN ({placeholders})",
                (*values, attempt_id, *statuses),
            )
            conn.commit()
            return cursor.rowcount == 1

    def update_attempt_progress(self, attempt_id, progress, time_spent=None):
        with self._cursor() as (conn, cursor):
            conn.start_transaction()
            cursor.execute(
                "SELECT * FROM module_attempts WHERE id = %s AND status = %s FOR UPDATE",
                (attempt_id, SessionStatus.IN_PROGRESS.value),
            )
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return None
            attempt = _attempt_from_row(row)
            attempt.progress.update(progress)
            if time_spent is not None:
                attempt.time_spent = time_spent
            cursor.execute(
                "UPDATE module_attempts SET progress = %s, time_spent = %s WHERE id = %s",
                (json.dumps(attempt.progress, default=str), attempt.time_spent, attempt_id),
            )
            conn.commit()
        return attempt

    # Answer operations
    def save_answer(self, attempt_id, question_id, question_number, user_answer, time_spent):
        """Upsert an answer; None when the attempt is no longer in progress."""
        with self._cursor() as (conn, cursor):
            conn.start_transaction()
            # Shares the attempt row lock with commit_result
            cursor.execute(
                "SELECT status FROM module_attempts WHERE id = %s FOR UPDATE", (attempt_id,)
            )
            row = cursor.fetchone()
            if row is None or row['status'] != SessionStatus.IN_PROGRESS.value:
                conn.rollback()
                return None
            cursor.execute('''
                INSERT INTO answers (attempt_id, question_id, question_number, user_answer, time_spent)
                VALUES (%s, %s, %s, %s, %s)
                ON DUPLICATE KEY UPDATE
                    user_answer = VALUES(user_answer),
                    time_spent = time_spent + VALUES(time_spent)
            ''', (attempt_id, question_id, question_number, user_answer, time_spent))
            cursor.execute(
                "SELECT * FROM answers WHERE attempt_id = %s AND question_id = %s",
                (attempt_id, question_id),
            )
            row = cursor.fetchone()
            conn.commit()
        return _answer_from_row(row)

    def get_answers(self, attempt_id):
        with self._cursor() as (conn, cursor):
            cursor.execute("SELECT * FROM answers WHERE attempt_id = %s", (attempt_id,))
            rows = cursor.fetchall()
        return {row['question_id']: _answer_from_row(row) for row in rows}

    # Result operations
    def commit_result(self, result, evaluations, attempt_fields, analytics_update):
        """Complete the attempt, finalise answers, store the result and update analytics.

        Everything runs in one transaction. Returns the new analytics, or None
        when the attempt had already left IN_PROGRESS. An exception raised by
        ``analytics_update`` rolls the whole unit back.
        """
        unknown = set(attempt_fields) - ATTEMPT_FIELDS
        if unknown:
            raise ValueError(f"Unknown attempt fields: {sorted(unknown)}")
        updates = ', '.join(f"{key} = %s" for key in attempt_fields)

        with self._cursor() as (conn, cursor):
            conn.start_transaction()
            cursor.execute(
                f"UPDATE module_attempts SET status = %s, {updates} WHERE id = %s AND status = %s",
                (SessionStatus.COMPLETED.value, *attempt_fields.values(),
                 result.attempt_id, SessionStatus.IN_PROGRESS.value),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None

            cursor.executemany('''
                UPDATE answers SET is_correct = %s, points_earned = %s
                WHERE attempt_id = %s AND question_id = %s
            ''', [
                (evaluation.is_correct, evaluation.points_earned, result.attempt_id, question_id)
                for question_id, evaluation in evaluations.items()
            ])

            try:
                cursor.execute('''
                    INSERT INTO test_results
                    (id, attempt_id, user_id, test_id, module, score, total_score, band_score,
                     percentage, correct_answers, wrong_answers, skipped_answers, section_scores,
                     question_type_scores, strengths, weaknesses, time_spent, audio_time_spent,
                     audio_utilization, completion_rate, ai_feedback, recommendations,
                     next_level_suggestion, task_bands, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ''', (
                    result.id, result.attempt_id, result.user_id, result.test_id, result.module.value,
                    result.score, result.total_score, result.band_score, result.percentage,
                    result.correct_answers, result.wrong_answers, result.skipped_answers,
                    json.dumps(result.section_scores), json.dumps(result.question_type_scores),
                    json.dumps(list(result.strengths)), json.dumps(list(result.weaknesses)),
                    result.time_spent, result.audio_time_spent, result.audio_utilization,
                    result.completion_rate, json.dumps(result.ai_feedback, default=str),
                    json.dumps(list(result.recommendations)), result.next_level_suggestion,
                    json.dumps(result.task_bands), result.created_at,
                ))
            except mysql.connector.IntegrityError as e:
                if e.errno != errorcode.ER_DUP_ENTRY:
                    raise
                conn.rollback()
                return None

            analytics = self._write_analytics(cursor, result.user_id, result.module, analytics_update)
            conn.commit()
        return analytics

    def get_result(self, attempt_id):
        with self._cursor() as (conn, cursor):
            cursor.execute("SELECT * FROM test_results WHERE attempt_id = %s", (attempt_id,))
            row = cursor.fetchone()
        return _result_from_row(row) if row else None

    # Analytics operations
    def get_analytics(self, user_id, module):
        with self._cursor() as (conn, cursor):
            cursor.execute(
                "SELECT * FROM performance_analytics WHERE user_id = %s AND module = %s",
                (user_id, module.value),
            )
            row = cursor.fetchone()
        return _analytics_from_row(row) if row else None

    def apply_analytics(self, user_id, module, update):
        """Run ``update(previous)`` under the analytics row lock and persist the outcome."""
        with self._cursor() as (conn, cursor):
            conn.start_transaction()
            analytics = self._write_analytics(cursor, user_id, module, update)
            conn.commit()
        return analytics

    def _write_analytics(self, cursor, user_id, module, update):
        # Seed an empty row first so FOR UPDATE always has a row to lock
        cursor.execute(
            "INSERT IGNORE INTO performance_analytics (user_id, module) VALUES (%s, %s)",
            (user_id, module.value),
        )
        cursor.execute(
            "SELECT * FROM performance_analytics WHERE user_id = %s AND module = %s FOR UPDATE",
            (user_id, module.value),
        )
        row = cursor.fetchone()
        previous = _analytics_from_row(row) if row else None
        analytics = update(previous)
        cursor.execute('''
            UPDATE performance_analytics SET
                total_tests = %s, average_band_score = %s, best_band_score = %s,
                latest_band_score = %s, average_time_spent = %s, average_audio_time = %s,
                audio_utilization_rate = %s, completion_rate = %s, last_test_date = %s,
                next_allowed_attempt_at = %s
            WHERE user_id = %s AND module = %s
        ''', (
            analytics.total_tests, analytics.average_band_score, analytics.best_band_score,
            analytics.latest_band_score, analytics.average_time_spent, analytics.average_audio_time,
            analytics.audio_utilization_rate, analytics.completion_rate, analytics.last_test_date,
            analytics.next_allowed_attempt_at, user_id, module.value,
        ))
        return analytics
