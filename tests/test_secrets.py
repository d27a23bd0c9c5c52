"""Tests for secret providers, scoped resolution, masking and auditing."""

import os

import pytest

from pipelines_mcp.engine.secrets import (
    EnvVarSecretProvider,
    InMemorySecretProvider,
    ScopedSecretResolver,
    SecretAuditLog,
    SecretMasker,
    SecretNotFoundError,
)

# =============================================================================
# Providers
# =============================================================================


@pytest.mark.asyncio
async def test_env_var_provider_reads_repository_secrets():
    """Secrets configured by the session fixture in conftest.py."""
    provider = EnvVarSecretProvider()

    assert await provider.get_secret("DEPLOY_TOKEN") == "s3cr3t"
    assert await provider.get_secret("deploy_token") == "s3cr3t"
    assert "deploy_token" in await provider.list_secret_keys()


@pytest.mark.asyncio
async def test_env_var_provider_missing_secret():
    provider = EnvVarSecretProvider()

    with pytest.raises(SecretNotFoundError) as exc_info:
        await provider.get_secret("NOT_CONFIGURED")
    assert "PIPELINE_SECRET_NOT_CONFIGURED" in str(exc_info.value)


@pytest.mark.asyncio
async def test_environment_provider_prefix(monkeypatch):
    monkeypatch.setenv("PIPELINE_ENV_PROD_EU_SECRET_DB_PASSWORD", "hunter2")
    provider = EnvVarSecretProvider.for_environment("prod-eu")

    assert provider.prefix == "PIPELINE_ENV_PROD_EU_SECRET_"
    assert await provider.get_secret("db_password") == "hunter2"


@pytest.mark.asyncio
async def test_in_memory_provider():
    provider = InMemorySecretProvider({"Token": "abc"})
    provider.set("other", "xyz")

    assert await provider.get_secret("TOKEN") == "abc"
    assert sorted(await provider.list_secret_keys()) == ["other", "token"]
    with pytest.raises(SecretNotFoundError):
        await provider.get_secret("missing")


# =============================================================================
# Scoped resolution
# =============================================================================


@pytest.mark.asyncio
async def test_environment_scope_shadows_repository_scope():
    audit_log = SecretAuditLog()
    resolver = ScopedSecretResolver(
        InMemorySecretProvider({"API_KEY": "repo-key", "SHARED": "repo-shared"}),
        environments={"production": InMemorySecretProvider({"API_KEY": "prod-key"})},
        audit_log=audit_log,
    )

    assert await resolver.resolve("production", "API_KEY") == ("prod-key", True)
    assert await resolver.resolve("production", "SHARED") == ("repo-shared", True)
    assert await resolver.resolve(None, "API_KEY") == ("repo-key", True)
    assert await resolver.resolve("production", "MISSING") == (None, False)

    scopes = [(e.scope, e.secret_key, e.success) for e in audit_log.events]
    assert scopes == [
        ("production", "API_KEY", True),
        ("repository", "SHARED", True),
        ("repository", "API_KEY", True),
        ("production", "MISSING", False),
    ]


@pytest.mark.asyncio
async def test_unknown_environment_uses_env_var_factory(monkeypatch):
    monkeypatch.setenv("PIPELINE_ENV_STAGING_SECRET_API_KEY", "staging-key")
    resolver = ScopedSecretResolver(InMemorySecretProvider({"API_KEY": "repo-key"}))

    assert await resolver.resolve("staging", "API_KEY") == ("staging-key", True)
    assert await resolver.resolve("qa", "API_KEY") == ("repo-key", True)


@pytest.mark.asyncio
async def test_audit_log_never_records_values():
    audit_log = SecretAuditLog()
    resolver = ScopedSecretResolver(
        InMemorySecretProvider({"TOKEN": "super-secret-value"}), audit_log=audit_log
    )

    await resolver.resolve(None, "TOKEN", run_id="run-1", job_id="deploy")

    events = audit_log.get_events(run_id="run-1", job_id="deploy")
    assert len(events) == 1
    assert "super-secret-value" not in events[0].model_dump_json()
    assert audit_log.get_summary()["successful_accesses"] == 1


# =============================================================================
# Masking
# =============================================================================


def test_masker_replaces_registered_values():
    masker = SecretMasker()
    assert masker.add_secret("s3cr3t")

    assert masker.mask("token=s3cr3t!") == "token=***!"
    assert masker.mask({"a": ["s3cr3t", 1], "b": ("xs3cr3tx",)}) == {
        "a": ["***", 1],
        "b": ("x***x",),
    }


def test_masker_prefers_longest_match():
    masker = SecretMasker()
    masker.add_secret("abc")
    masker.add_secret("abcdef")

    assert masker.mask("abcdef abc") == "*** ***"


def test_masker_registers_each_line_of_multiline_secrets():
    masker = SecretMasker()
    masker.add_secret("line-one\nline-two")

    assert masker.mask("printed line-two alone") == "printed *** alone"


def test_masker_ignores_blank_values():
    masker = SecretMasker()

    assert not masker.add_secret("")
    assert not masker.add_secret("   ")
    assert len(masker) == 0
    assert masker.mask("unchanged") == "unchanged"


@pytest.mark.asyncio
async def test_masker_load_from_provider():
    masker = SecretMasker()
    count = await masker.load_from(InMemorySecretProvider({"A": "alpha", "B": "beta"}))

    assert count == 2
    assert masker.mask("alpha beta gamma") == "*** *** gamma"


def test_session_secrets_are_configured():
    assert os.environ["PIPELINE_SECRET_DEPLOY_TOKEN"] == "s3cr3t"
