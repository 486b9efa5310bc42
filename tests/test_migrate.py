"""Unit tests for migrate.py - Database migration runner."""

import hashlib
import re

import pytest
from unittest.mock import AsyncMock, MagicMock
from contextlib import asynccontextmanager

import migrate
from migrate import (
    MIGRATION_LOCK_KEY,
    Migration,
    apply_migration,
    discover_migrations,
    ensure_migration_table,
    get_applied_checksums,
    run_migrations,
)


def make_conn(applied=None):
    """Create a mock connection with a working transaction() context."""
    conn = AsyncMock()
    conn.fetch = AsyncMock(return_value=applied or [])
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


def make_pool(conn):
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_returns_sorted_list(self, tmp_path, monkeypatch):
        """Test migrations are discovered and sorted by version."""
        (tmp_path / "002_add_index.sql").write_text("CREATE INDEX idx ON t(id);")
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert [m.version for m in result] == ["001", "002"]
        assert result[0].filename == "001_initial.sql"
        assert result[0].path == tmp_path / "001_initial.sql"

    def test_skips_non_matching_files(self, tmp_path, monkeypatch):
        """Test that only NNN_name.sql files are picked up."""
        (tmp_path / "001_valid.sql").write_text("SELECT 1;")
        (tmp_path / "002_readme.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_too_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_dir.sql").mkdir()
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert [m.filename for m in result] == ["001_valid.sql"]

    def test_missing_directory(self, tmp_path, monkeypatch):
        """Test missing directory raises FileNotFoundError."""
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path / "nonexistent")

        with pytest.raises(FileNotFoundError):
            discover_migrations()

    def test_bundled_migrations_exist(self):
        """Test the package ships its status tracking schema."""
        filenames = [m.filename for m in discover_migrations()]
        assert "001_status_tracking.sql" in filenames

    def test_bundled_schema_tables(self):
        """Test the bundled schema creates both tables."""
        sql = discover_migrations()[0].sql
        assert "instance_status_cache" in sql
        assert "service_logs" in sql

    @pytest.mark.parametrize("column", ["status", "from_status", "to_status"])
    def test_bundled_schema_status_columns_unbounded(self, column):
        """Test status columns accept any status token length."""
        sql = discover_migrations()[0].sql
        match = re.search(rf"^\s*{column}\s+([A-Z]+(?:\(\d+\))?)", sql, re.MULTILINE)

        assert match is not None
        assert match.group(1) == "TEXT"


class TestMigration:
    """Tests for the Migration value."""

    def test_sql_and_checksum(self, tmp_path):
        """Test SQL text and its sha256 checksum are read from the file."""
        path = tmp_path / "001_initial.sql"
        path.write_text("CREATE TABLE t (id INT);")
        migration = Migration("001", "001_initial.sql", path)

        assert migration.sql == "CREATE TABLE t (id INT);"
        assert migration.checksum == sha256("CREATE TABLE t (id INT);")


@pytest.mark.asyncio
class TestMigrationTable:
    """Tests for schema_migrations helpers."""

    async def test_executes_create_table(self):
        """Test the migrations table is created with a checksum column."""
        conn = AsyncMock()

        await ensure_migration_table(conn)

        sql = conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in sql
        assert "checksum" in sql

    async def test_applied_checksums(self):
        """Test applied versions map to their checksums."""
        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[{"version": "001", "checksum": "aa"}, {"version": "002", "checksum": "bb"}]
        )

        assert await get_applied_checksums(conn) == {"001": "aa", "002": "bb"}


@pytest.mark.asyncio
class TestApplyMigration:
    """Tests for apply_migration function."""

    async def test_executes_sql_and_records(self, tmp_path):
        """Test migration SQL runs and is recorded in a transaction."""
        path = tmp_path / "001_initial.sql"
        path.write_text("CREATE TABLE t (id INT);")
        conn = make_conn()

        await apply_migration(conn, Migration("001", "001_initial.sql", path))

        conn.transaction.assert_called_once()
        conn.execute.assert_any_call("CREATE TABLE t (id INT);")
        conn.execute.assert_any_call(
            "INSERT INTO schema_migrations (version, filename, checksum) VALUES ($1, $2, $3)",
            "001",
            "001_initial.sql",
            sha256("CREATE TABLE t (id INT);"),
        )

    async def test_propagates_exception(self, tmp_path):
        """Test SQL errors propagate."""
        path = tmp_path / "001_bad.sql"
        path.write_text("INVALID SQL;")
        conn = make_conn()
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(conn, Migration("001", "001_bad.sql", path))


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations function."""

    async def test_applies_pending_migrations(self, tmp_path, monkeypatch):
        """Test only unapplied migrations run."""
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        (tmp_path / "002_update.sql").write_text("ALTER TABLE t1 ADD col TEXT;")
        (tmp_path / "003_index.sql").write_text("CREATE INDEX idx ON t1(id);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = make_conn(
            applied=[{"version": "001", "checksum": sha256("CREATE TABLE t1 (id INT);")}]
        )

        result = await run_migrations(make_pool(conn))

        assert result == 2
        conn.execute.assert_any_call("ALTER TABLE t1 ADD col TEXT;")
        conn.execute.assert_any_call("CREATE INDEX idx ON t1(id);")

    async def test_no_pending_migrations(self, tmp_path, monkeypatch):
        """Test nothing runs when all migrations are applied."""
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = make_conn(
            applied=[{"version": "001", "checksum": sha256("CREATE TABLE t1 (id INT);")}]
        )

        assert await run_migrations(make_pool(conn)) == 0

    async def test_changed_migration_is_not_rerun(self, tmp_path, monkeypatch, caplog):
        """Test a changed migration is reported, not re-run."""
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id BIGINT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = make_conn(applied=[{"version": "001", "checksum": "stale"}])

        assert await run_migrations(make_pool(conn)) == 0
        assert "changed after it was applied" in caplog.text

    async def test_holds_advisory_lock(self, tmp_path, monkeypatch):
        """Test the run is wrapped in an advisory lock."""
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = make_conn()

        await run_migrations(make_pool(conn))

        calls = [c.args for c in conn.execute.call_args_list]
        assert calls[0] == ("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in calls[1][0]
        assert calls[-1] == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    async def test_releases_lock_on_failure(self, tmp_path, monkeypatch):
        """Test the advisory lock is released when a migration fails."""
        (tmp_path / "001_bad.sql").write_text("INVALID SQL;")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = make_conn()

        async def execute(sql, *args):
            if sql == "INVALID SQL;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(make_pool(conn))

        conn.execute.assert_any_call("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)
