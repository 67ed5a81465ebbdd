"""
Tests for the token refresh scheduler state machine.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from config.settings import config
from connectors.encryption import decrypt_token
from core.token_refresh import TokenRefreshScheduler
from utils.errors import AuthError, ConfigError, RateLimitedError, TransientError
from utils.schemas import AuthStatus, Platform, RefreshStatus, TokenGrant

from conftest import FakeConnector, FakeRegistry

ONE_HOUR = timedelta(hours=1)
THIRTY_DAYS = timedelta(days=30)


class SlowConnector(FakeConnector):
    async def refresh_access_token(self, account):
        await asyncio.sleep(5)


def _scheduler(repo, *connectors, **kwargs):
    return TokenRefreshScheduler(repo, FakeRegistry(*connectors), **kwargs)


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_expiring_account_is_refreshed(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        connector = FakeConnector()

        report = await _scheduler(repo, connector).run()

        assert (report.refreshed, report.failed, report.skipped) == (1, 0, 0)
        stored = repo.accounts[account.id]
        assert stored.auth_status == AuthStatus.ACTIVE
        assert decrypt_token(stored.token_encrypted) == "new-access-token"
        assert stored.token_expires_at > datetime.now(timezone.utc) + timedelta(days=59)
        assert connector.refresh_calls[0].refresh_token == "refresh-token"

    @pytest.mark.asyncio
    async def test_omitted_refresh_token_is_retained(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR, refresh_token="keep-me")
        await _scheduler(repo, FakeConnector()).run()
        assert decrypt_token(repo.accounts[account.id].refresh_token_encrypted) == "keep-me"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        grant = TokenGrant(access_token="a2", refresh_token="r2", expires_at=None)
        await _scheduler(repo, FakeConnector(grant=grant)).run()
        assert decrypt_token(repo.accounts[account.id].refresh_token_encrypted) == "r2"

    @pytest.mark.asyncio
    async def test_auth_error_revokes(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        connector = FakeConnector(refresh_error=AuthError("bad refresh token", platform="instagram"))

        report = await _scheduler(repo, connector).run()

        assert (report.refreshed, report.failed) == (0, 1)
        assert report.outcomes[0].reason == "auth_error"
        assert repo.accounts[account.id].auth_status == AuthStatus.REVOKED

    @pytest.mark.asyncio
    async def test_far_expiry_is_skipped_without_network(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=THIRTY_DAYS)
        connector = FakeConnector()

        outcome = await _scheduler(repo, connector).refresh_account(account)

        assert outcome.status == RefreshStatus.SKIPPED
        assert outcome.reason == "not_due"
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_far_expiry_not_listed_by_run(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", expires_in=THIRTY_DAYS)
        connector = FakeConnector()
        report = await _scheduler(repo, connector).run()
        assert report.outcomes == []
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [TransientError("5xx", status_code=503), RateLimitedError("slow down", retry_after=60)],
    )
    async def test_transient_failure_leaves_status(self, repo, error):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        report = await _scheduler(repo, FakeConnector(refresh_error=error)).run()
        assert report.failed == 1
        assert repo.accounts[account.id].auth_status == AuthStatus.ACTIVE
        assert repo.mutating_calls == []

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        report = await _scheduler(repo, SlowConnector(), call_timeout=0.05).run()
        assert report.outcomes[0].reason == "timeout"
        assert repo.accounts[account.id].auth_status == AuthStatus.ACTIVE


class TestEdgeCases:
    @pytest.mark.asyncio
    async def test_demo_tenant_skipped(self, repo):
        repo.add_tenant("demo", is_demo=True)
        repo.add_account("demo", expires_in=ONE_HOUR)
        connector = FakeConnector()

        report = await _scheduler(repo, connector).run()

        assert report.skipped == 1
        assert report.outcomes[0].reason == "demo_tenant"
        assert connector.refresh_calls == []
        assert repo.mutating_calls == []

    @pytest.mark.asyncio
    async def test_missing_refresh_token_expires_account(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR, refresh_token=None)
        report = await _scheduler(repo, FakeConnector()).run()
        assert report.outcomes[0].reason == "missing_refresh_token"
        assert repo.accounts[account.id].auth_status == AuthStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_validation_platform_needs_no_refresh_token(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", expires_in=ONE_HOUR, refresh_token=None)
        report = await _scheduler(repo, FakeConnector(uses_refresh_token=False)).run()
        assert report.refreshed == 1

    @pytest.mark.asyncio
    async def test_corrupted_credential_expires_account(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", expires_in=ONE_HOUR)
        repo.accounts[account.id] = account.model_copy(update={"token_encrypted": "AAAA"})
        report = await _scheduler(repo, FakeConnector()).run()
        assert report.outcomes[0].reason == "integrity_error"
        assert repo.accounts[account.id].auth_status == AuthStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_platform_fails_without_status_change(self, repo):
        repo.add_tenant("t1")
        account = repo.add_account("t1", platform=Platform.TIKTOK, expires_in=ONE_HOUR)
        report = await _scheduler(repo, FakeConnector(Platform.INSTAGRAM)).run()
        assert report.outcomes[0].reason == "unknown_platform"
        assert repo.accounts[account.id].auth_status == AuthStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_scan(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", Platform.INSTAGRAM, expires_in=ONE_HOUR)
        repo.add_account("t1", Platform.TIKTOK, expires_in=ONE_HOUR)
        repo.add_account("t1", Platform.YOUTUBE, expires_in=ONE_HOUR)
        registry = FakeRegistry(
            FakeConnector(Platform.INSTAGRAM),
            FakeConnector(Platform.TIKTOK, refresh_error=TransientError("down")),
            FakeConnector(Platform.YOUTUBE),
        )
        report = await TokenRefreshScheduler(repo, registry).run()
        assert (report.refreshed, report.failed) == (2, 1)

    @pytest.mark.asyncio
    async def test_unexpected_connector_error_is_isolated(self, repo):
        repo.add_tenant("t1")
        repo.add_account("t1", Platform.INSTAGRAM, expires_in=ONE_HOUR)
        repo.add_account("t1", Platform.TIKTOK, expires_in=ONE_HOUR)
        registry = FakeRegistry(
            FakeConnector(Platform.INSTAGRAM, refresh_error=AttributeError("'str' object has no attribute 'get'")),
            FakeConnector(Platform.TIKTOK),
        )

        report = await TokenRefreshScheduler(repo, registry).run()

        assert (report.refreshed, report.failed) == (1, 1)
        failed = [o for o in report.outcomes if o.status == RefreshStatus.FAILED]
        assert failed[0].platform == Platform.INSTAGRAM
        assert failed[0].reason == "internal_error"

    @pytest.mark.asyncio
    async def test_storage_failure_is_isolated(self, repo, monkeypatch):
        repo.add_tenant("t1")
        repo.add_account("t1", Platform.INSTAGRAM, expires_in=ONE_HOUR)
        repo.add_account("t1", Platform.TIKTOK, expires_in=ONE_HOUR)
        original_upsert = repo.upsert_account

        async def flaky_upsert(tenant_id, account, status):
            if account.platform == Platform.INSTAGRAM:
                raise TransientError("db down")
            return await original_upsert(tenant_id, account, status)

        monkeypatch.setattr(repo, "upsert_account", flaky_upsert)
        registry = FakeRegistry(FakeConnector(Platform.INSTAGRAM), FakeConnector(Platform.TIKTOK))

        report = await TokenRefreshScheduler(repo, registry).run()

        assert (report.refreshed, report.failed) == (1, 1)
        assert [o.reason for o in report.outcomes if o.status == RefreshStatus.FAILED] == ["transient_error"]

    @pytest.mark.asyncio
    async def test_missing_secret_aborts_run(self, repo, monkeypatch):
        repo.add_tenant("t1")
        repo.add_account("t1", expires_in=ONE_HOUR)
        monkeypatch.setattr(config, "encryption_secret", "")
        with pytest.raises(ConfigError):
            await _scheduler(repo, FakeConnector()).run()
