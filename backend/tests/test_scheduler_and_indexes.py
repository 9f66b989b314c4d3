"""
Startup wiring tests - reconcile sweep registration and index bootstrap.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_wallet.config import COLLECTIONS
from media_wallet.db_init import REQUIRED_INDEXES, check_environment, ensure_indexes
from media_wallet.scheduler import setup_scheduler, sweep_interval_minutes


class TestSweepRegistration:

    def test_registers_interval_job(self, fake_db, monkeypatch):
        monkeypatch.setenv("RECONCILE_SWEEP_MINUTES", "10")
        scheduler = MagicMock()

        assert setup_scheduler(scheduler, fake_db) is True

        args, kwargs = scheduler.add_job.call_args
        assert args[1] == "interval"
        assert kwargs["minutes"] == 10
        assert kwargs["id"] == "subscription_reconcile_sweep"

    def test_zero_disables_sweep(self, fake_db, monkeypatch):
        monkeypatch.setenv("RECONCILE_SWEEP_MINUTES", "0")
        scheduler = MagicMock()

        assert setup_scheduler(scheduler, fake_db) is False
        scheduler.add_job.assert_not_called()

    def test_invalid_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("RECONCILE_SWEEP_MINUTES", "soon")
        assert sweep_interval_minutes() == 15

    @pytest.mark.asyncio
    async def test_job_runs_sweep(self, fake_db, monkeypatch):
        monkeypatch.setenv("RECONCILE_SWEEP_MINUTES", "5")
        scheduler = MagicMock()
        setup_scheduler(scheduler, fake_db)
        job = scheduler.add_job.call_args.args[0]

        # Empty store: nothing due, must not raise
        await job()


class TestIndexes:

    @pytest.mark.asyncio
    async def test_ensure_indexes_is_idempotent(self, fake_db):
        first = await ensure_indexes(fake_db)
        second = await ensure_indexes(fake_db)

        assert len(first) == len(REQUIRED_INDEXES)
        assert all(line.strip().startswith("[CREATE]") for line in first)
        assert all(line.strip().startswith("[SKIP]") for line in second)

    @pytest.mark.asyncio
    async def test_single_active_subscription_index(self, fake_db):
        await ensure_indexes(fake_db)
        index = fake_db.indexes["subscriptions"]["idx_single_active_subscription"]
        assert index["unique"] is True
        assert index["partialFilterExpression"] == {"status": "active"}

    @pytest.mark.asyncio
    async def test_every_collection_is_indexed(self, fake_db):
        await ensure_indexes(fake_db)
        assert set(fake_db.indexes) == set(COLLECTIONS.values())

    @pytest.mark.asyncio
    async def test_dry_run_creates_nothing(self, fake_db):
        lines = await ensure_indexes(fake_db, dry_run=True)
        assert all("[DRY-RUN]" in line for line in lines)
        assert fake_db.indexes == {}

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.delenv("MEDIA_WALLET_INIT_CONFIRM", raising=False)
        allowed, _ = check_environment()
        assert allowed is False

        monkeypatch.setenv("MEDIA_WALLET_INIT_CONFIRM", "YES")
        allowed, _ = check_environment()
        assert allowed is True
