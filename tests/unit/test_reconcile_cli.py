"""
Unit tests for the reconciliation CLI.

Tests cover:
- Mode flag handling
- Dry-run and confirmed runs against a SQLite store
- Exit codes
"""

import asyncio
import tempfile

import pytest

from sharing.access_sync.store.base import Experience, Grant, GrantScope
from sharing.access_sync.store.sqlite import SqliteStore
from sharing.access_sync.tools.reconcile_cli import build_parser, main


@pytest.fixture
def data_dir():
    """Temporary data directory holding a seeded store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SqliteStore(tmpdir)

        async def seed():
            await store.initialize()
            await store.put_experience(
                Experience("e1", owner="u1", primary_category="catA", created_at=1)
            )
            await store.put_experience(
                Experience("e2", owner="u1", access_set=frozenset({"u9"}), created_at=2)
            )
            await store.put_grant(Grant("g1", "u1", GrantScope.CATEGORY, "catA", "u2"))

        asyncio.run(seed())
        yield tmpdir


def read_access(data_dir, experience_id):
    async def read():
        return (await SqliteStore(data_dir).get_experience(experience_id)).access_set

    return asyncio.run(read())


class TestReconcileCli:
    """Tests for the access-sync-reconcile entry point."""

    def test_mode_is_required(self, data_dir):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir])
        assert exc_info.value.code == 2

    def test_modes_are_exclusive(self, data_dir):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "--dry-run", "--confirm"])
        assert exc_info.value.code == 2

    def test_defaults(self):
        args = build_parser().parse_args(["--data-dir", "/tmp/x", "--dry-run"])

        assert args.batch_size == 100
        assert args.max_items == 1000
        assert args.db_filename == "access.db"
        assert args.cursor is None

    def test_dry_run(self, data_dir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "--dry-run", "--page-delay-ms", "0"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "Reconciliation dry run" in out
        assert "Processed: 2" in out
        assert "Would update: 2" in out
        assert "Next cursor: 2:e2" in out
        assert "Done: yes" in out
        assert read_access(data_dir, "e1") == frozenset()

    def test_confirmed_run(self, data_dir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "--confirm", "--page-delay-ms", "0"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "Reconciliation completed" in out
        assert "Updated: 2" in out
        assert "Failed pages: none" in out
        assert read_access(data_dir, "e1") == frozenset({"u2"})
        assert read_access(data_dir, "e2") == frozenset()

    def test_resume_cursor(self, data_dir, capsys):
        with pytest.raises(SystemExit):
            main(["--data-dir", data_dir, "--dry-run", "--cursor", "1:e1"])

        assert "Processed: 1" in capsys.readouterr().out

    def test_bad_cursor_exits_nonzero(self, data_dir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "--dry-run", "--cursor", "garbage"])

        assert exc_info.value.code == 1
        assert "Reconciliation failed" in capsys.readouterr().err
