"""
Tests for the sync orchestrator: idempotence, failure isolation,
cancellation, timeouts and demo protection.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from connectors.mock import MockConnector
from core.sync_orchestrator import COOLDOWN_SKIP_REASON, DEMO_SKIP_REASON, SyncOrchestrator
from utils.errors import AuthError, ConfigError, TransientError
from utils.schemas import AuthStatus, DailyMetricRow, PairStatus, Platform, SyncResult

from conftest import FakeConnector, FakeRegistry

TODAY = date(2026, 3, 15)


def _orchestrator(repo, *connectors, **kwargs):
    kwargs.setdefault("lookback_days", 7)
    return SyncOrchestrator(repo, FakeRegistry(*connectors), **kwargs)


class TestTenantSync:
    @pytest.mark.asyncio
    async def test_success_writes_daily_rows_and_posts(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1")

        report = await _orchestrator(repo, FakeConnector(followers=250)).sync_tenant("t1", today=TODAY)

        assert report.scope == "tenant:t1"
        assert report.platform == "all"
        assert (report.succeeded, report.failed) == (1, 0)
        assert report.outcomes[0].rows_upserted == 8
        assert len(repo.daily) == 7
        assert len(repo.posts) == 1
        assert repo.accounts[account.id].last_sync_at is not None
        [log] = repo.sync_logs.values()
        assert log["status"] == "success"
        assert log["rows_upserted"] == 8

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1")
        orchestrator = _orchestrator(repo, FakeConnector(followers=250))

        await orchestrator.sync_tenant("t1", today=TODAY)
        await orchestrator.sync_tenant("t1", today=TODAY)

        keys = [k for k in repo.daily if k[2] == account.id]
        assert len(keys) == 7
        assert len({k[3] for k in keys}) == 7
        assert all(repo.daily[k].followers == 250 for k in keys)

    @pytest.mark.asyncio
    async def test_platform_filter(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", Platform.INSTAGRAM)
        repo.add_account("t1", Platform.TIKTOK)
        instagram, tiktok = FakeConnector(Platform.INSTAGRAM), FakeConnector(Platform.TIKTOK)

        report = await _orchestrator(repo, instagram, tiktok).sync_tenant(
            "t1", Platform.TIKTOK, today=TODAY
        )

        assert report.platform == "tiktok"
        assert len(report.outcomes) == 1
        assert instagram.fetch_calls == []
        assert len(tiktok.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_only_active_accounts_are_synced(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", status=AuthStatus.EXPIRED)
        report = await _orchestrator(repo, FakeConnector()).sync_tenant("t1", today=TODAY)
        assert report.outcomes == []

    @pytest.mark.asyncio
    async def test_connector_sync_result_is_persisted(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1")

        class SnapshotConnector(FakeConnector):
            async def sync(self, account, date_range):
                self.fetch_calls.append(account)
                return SyncResult(daily_metrics=[DailyMetricRow(date=date_range.end, followers=42)])

        connector = SnapshotConnector()
        report = await _orchestrator(repo, connector).sync_tenant("t1", today=TODAY)

        assert report.outcomes[0].rows_upserted == 1
        assert len(connector.fetch_calls) == 1
        assert repo.daily[("t1", Platform.INSTAGRAM, account.id, TODAY)].followers == 42
        assert repo.posts == {}


class TestDemoTenant:
    @pytest.mark.asyncio
    async def test_demo_tenant_skipped_without_writes(self, repo):
        repo.add_tenant("demo", is_demo=True)
        repo.add_account("demo")
        connector = FakeConnector()

        report = await _orchestrator(repo, connector).sync_tenant("demo", today=TODAY)

        assert report.skipped == DEMO_SKIP_REASON
        assert report.outcomes == []
        assert connector.fetch_calls == []
        assert repo.mutating_calls == []

    @pytest.mark.asyncio
    async def test_global_run_excludes_demo_tenants(self, repo):
        repo.add_tenant("demo", is_demo=True)
        repo.add_tenant("real")
        repo.add_account("demo")
        repo.add_account("real")

        report = await _orchestrator(repo, FakeConnector()).sync_global(today=TODAY)

        assert [o.tenant_id for o in report.outcomes] == ["real"]


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_two_of_five_transient_failures(self, repo):
        failing = {"t2", "t4"}
        for n in range(1, 6):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")

        def behaviour(account):
            if account.tenant_id in failing:
                raise TransientError("upstream 503", status_code=503)

        report = await _orchestrator(repo, FakeConnector(behaviour=behaviour), concurrency=2).sync_global(
            today=TODAY
        )

        assert report.scope == "global"
        assert (report.succeeded, report.failed) == (3, 2)
        assert [o.tenant_id for o in report.outcomes] == ["t1", "t2", "t3", "t4", "t5"]
        failed = {o.tenant_id: o.error for o in report.outcomes if o.status == PairStatus.FAILED}
        assert failed == {"t2": "transient_error", "t4": "transient_error"}
        assert all(a.auth_status == AuthStatus.ACTIVE for a in repo.accounts.values())

    @pytest.mark.asyncio
    async def test_auth_error_marks_account_expired(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1")

        def behaviour(_account):
            raise AuthError("token rejected")

        report = await _orchestrator(repo, FakeConnector(behaviour=behaviour)).sync_tenant("t1", today=TODAY)

        assert report.outcomes[0].error == "auth_error"
        assert repo.accounts[account.id].auth_status == AuthStatus.EXPIRED
        assert repo.accounts[account.id].last_error == "auth_error"

    @pytest.mark.asyncio
    async def test_status_write_failure_stays_on_its_pair(self, repo, monkeypatch):
        for n in range(1, 4):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")

        def behaviour(account):
            if account.tenant_id == "t1":
                raise AuthError("token rejected")

        async def broken_status_write(account_id, status, error=None):
            raise TransientError("db down")

        monkeypatch.setattr(repo, "update_account_status", broken_status_write)
        report = await _orchestrator(repo, FakeConnector(behaviour=behaviour), concurrency=1).sync_global(
            today=TODAY
        )

        assert (report.succeeded, report.failed) == (2, 1)
        assert report.outcomes[0].error == "auth_error"

    @pytest.mark.asyncio
    async def test_sync_log_failure_fails_only_that_pair(self, repo, monkeypatch):
        for n in range(1, 4):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")
        original_start = repo.start_sync_log

        async def flaky_start(tenant_id, account_id, platform):
            if tenant_id == "t2":
                raise TransientError("db down")
            return await original_start(tenant_id, account_id, platform)

        monkeypatch.setattr(repo, "start_sync_log", flaky_start)
        report = await _orchestrator(repo, FakeConnector(), concurrency=1).sync_global(today=TODAY)

        assert [o.status for o in report.outcomes] == [
            PairStatus.SUCCESS,
            PairStatus.FAILED,
            PairStatus.SUCCESS,
        ]
        assert report.outcomes[1].error == "transient_error"

    @pytest.mark.asyncio
    async def test_mark_synced_failure_fails_pair(self, repo, monkeypatch):
        repo.add_tenant("t1")
        repo.add_account("t1")

        async def broken_mark(account_id, synced_at):
            raise TransientError("db down")

        monkeypatch.setattr(repo, "mark_account_synced", broken_mark)
        report = await _orchestrator(repo, FakeConnector()).sync_tenant("t1", today=TODAY)

        assert report.failed == 1
        [log] = repo.sync_logs.values()
        assert log["status"] == "failed"

    @pytest.mark.asyncio
    async def test_corrupted_credential_expires_account(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1")
        repo.accounts[account.id] = account.model_copy(update={"token_encrypted": "AAAA"})
        connector = FakeConnector()

        report = await _orchestrator(repo, connector).sync_tenant("t1", today=TODAY)

        assert report.outcomes[0].status == PairStatus.FAILED
        assert report.outcomes[0].error == "integrity_error"
        assert repo.accounts[account.id].auth_status == AuthStatus.EXPIRED
        assert connector.fetch_calls == []
        assert not any(c.startswith("upsert_") for c in repo.calls)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1")

        def behaviour(_account):
            raise ValueError("boom")

        report = await _orchestrator(repo, FakeConnector(behaviour=behaviour)).sync_tenant("t1", today=TODAY)
        assert report.outcomes[0].error == "internal_error"

    @pytest.mark.asyncio
    async def test_missing_connector_fails_pair(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", Platform.YOUTUBE)
        report = await _orchestrator(repo, FakeConnector()).sync_tenant("t1", today=TODAY)
        assert report.outcomes[0].error == "unknown_platform"

    @pytest.mark.asyncio
    async def test_config_error_aborts_run(self, repo):
        for n in range(1, 4):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")

        def behaviour(_account):
            raise ConfigError("missing secret")

        with pytest.raises(ConfigError):
            await _orchestrator(repo, FakeConnector(behaviour=behaviour), concurrency=1).sync_global(
                today=TODAY
            )


class TestTimeoutAndCancellation:
    @pytest.mark.asyncio
    async def test_slow_pair_times_out(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1")
        connector = FakeConnector(behaviour=lambda _account: asyncio.sleep(5))

        report = await _orchestrator(repo, connector, pair_timeout=0.05).sync_tenant("t1", today=TODAY)

        assert report.outcomes[0].status == PairStatus.TIMEOUT
        assert report.failed == 1
        assert repo.daily == {}
        [log] = repo.sync_logs.values()
        assert log["error"] == "timeout"

    @pytest.mark.asyncio
    async def test_preset_cancel_starts_nothing(self, repo):
        for n in range(1, 4):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")
        connector = FakeConnector()
        cancel = asyncio.Event()
        cancel.set()

        report = await _orchestrator(repo, connector).sync_global(cancel_event=cancel, today=TODAY)

        assert report.cancelled == 3
        assert connector.fetch_calls == []
        assert repo.mutating_calls == []

    @pytest.mark.asyncio
    async def test_cancel_mid_run_lets_inflight_pair_finish(self, repo):
        for n in range(1, 4):
            repo.add_tenant(f"t{n}")
            repo.add_account(f"t{n}")
        cancel = asyncio.Event()
        connector = FakeConnector(behaviour=lambda _account: cancel.set())

        report = await _orchestrator(repo, connector, concurrency=1).sync_global(
            cancel_event=cancel, today=TODAY
        )

        assert [o.status for o in report.outcomes] == [
            PairStatus.SUCCESS,
            PairStatus.CANCELLED,
            PairStatus.CANCELLED,
        ]
        assert len(connector.fetch_calls) == 1


class TestAdsAccounts:
    @pytest.mark.asyncio
    async def test_campaigns_and_daily_rollup_written(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", Platform.META_ADS, "act_42")

        report = await _orchestrator(repo, MockConnector(Platform.META_ADS)).sync_tenant("t1", today=TODAY)

        assert report.succeeded == 1
        assert len(repo.campaigns) == 14
        assert len(repo.daily) == 7
        assert repo.posts == {}
        assert report.outcomes[0].rows_upserted == 21
        day = repo.daily[("t1", Platform.META_ADS, account.id, TODAY)]
        same_day = [r for k, r in repo.campaigns.items() if k[4] == TODAY]
        assert day.impressions == sum(r.impressions for r in same_day)


class TestCooldown:
    def _synced(self, repo, ago):
        repo.add_tenant("t1")
        account = repo.add_account("t1")
        repo.accounts[account.id] = account.model_copy(
            update={"last_sync_at": datetime.now(timezone.utc) - ago}
        )
        return account

    @pytest.mark.asyncio
    async def test_recent_sync_is_skipped(self, repo):
        self._synced(repo, timedelta(minutes=2))
        connector = FakeConnector()

        report = await _orchestrator(repo, connector).sync_tenant(
            "t1", today=TODAY, cooldown=timedelta(minutes=10)
        )

        assert report.skipped == COOLDOWN_SKIP_REASON
        assert 470 <= report.retry_after_seconds <= 480
        assert connector.fetch_calls == []
        assert repo.mutating_calls == []

    @pytest.mark.asyncio
    async def test_stale_sync_runs(self, repo):
        self._synced(repo, timedelta(minutes=30))
        report = await _orchestrator(repo, FakeConnector()).sync_tenant(
            "t1", today=TODAY, cooldown=timedelta(minutes=10)
        )
        assert report.skipped is None
        assert report.succeeded == 1

    @pytest.mark.asyncio
    async def test_no_cooldown_ignores_recent_sync(self, repo):
        self._synced(repo, timedelta(seconds=5))
        report = await _orchestrator(repo, FakeConnector()).sync_tenant("t1", today=TODAY)
        assert report.succeeded == 1
