"""Secret providers and the scoped resolver.

Providers:
    - SecretProvider: Abstract base class defining the provider interface
    - EnvVarSecretProvider: Secrets from prefixed environment variables
    - InMemorySecretProvider: Secrets from a dict (embedding and tests)

Scopes:
    Secrets live either at repository scope or at the scope of a named
    deployment environment. ``ScopedSecretResolver.resolve(scope, key)`` looks
    in the environment scope first and falls back to the repository scope, so
    an environment secret shadows a repository secret with the same name for
    the duration of a job bound to that environment.

Environment Variable Format:
    PIPELINE_SECRET_{KEY}                  repository scope
    PIPELINE_ENV_{ENVIRONMENT}_SECRET_{KEY}  environment scope

Example:
    >>> resolver = ScopedSecretResolver(EnvVarSecretProvider())
    >>> value, found = await resolver.resolve("production", "deploy_token")
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping

from .audit import SecretAuditLog
from .exceptions import SecretError, SecretNotFoundError

logger = logging.getLogger(__name__)

REPOSITORY_PREFIX = "PIPELINE_SECRET_"


class SecretProvider(ABC):
    """Abstract base class for secret providers.

    All methods are async to support both local and remote secret sources.
    """

    @abstractmethod
    async def get_secret(self, key: str) -> str:
        """Retrieve a secret value by key.

        Raises:
            SecretNotFoundError: If the secret key does not exist
        """

    @abstractmethod
    async def list_secret_keys(self) -> list[str]:
        """List all available secret keys."""


class EnvVarSecretProvider(SecretProvider):
    """Secret provider that reads prefixed environment variables.

    Keys are matched case-insensitively: ``get_secret("deploy_token")`` reads
    ``{prefix}DEPLOY_TOKEN``.

    Attributes:
        prefix: Environment variable prefix (default: "PIPELINE_SECRET_")
    """

    def __init__(self, prefix: str = REPOSITORY_PREFIX) -> None:
        self.prefix = prefix

    @classmethod
    def for_environment(cls, environment: str) -> "EnvVarSecretProvider":
        """Provider for an environment scope (``PIPELINE_ENV_<NAME>_SECRET_``)."""
        slug = re.sub(r"[^A-Za-z0-9]", "_", environment).upper()
        return cls(prefix=f"PIPELINE_ENV_{slug}_SECRET_")

    def _get_env_var_name(self, key: str) -> str:
        return f"{self.prefix}{key.upper()}"

    async def get_secret(self, key: str) -> str:
        env_var_name = self._get_env_var_name(key)
        value = os.environ.get(env_var_name)

        if value is None:
            raise SecretNotFoundError(
                key=key,
                provider_hint=f"Set environment variable: {env_var_name}=<secret_value>",
            )

        return value

    async def list_secret_keys(self) -> list[str]:
        return [
            name[len(self.prefix) :].lower()
            for name in os.environ.keys()
            if name.startswith(self.prefix)
        ]


class InMemorySecretProvider(SecretProvider):
    """Secret provider backed by a dict (keys compared case-insensitively)."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = {key.upper(): value for key, value in (secrets or {}).items()}

    def set(self, key: str, value: str) -> None:
        self._secrets[key.upper()] = value

    async def get_secret(self, key: str) -> str:
        try:
            return self._secrets[key.upper()]
        except KeyError:
            raise SecretNotFoundError(key=key) from None

    async def list_secret_keys(self) -> list[str]:
        return [key.lower() for key in self._secrets]


class ScopedSecretResolver:
    """
    Resolves secrets with environment scope overriding repository scope.

    Environment providers come from the ``environments`` mapping when the
    environment is listed there, otherwise from ``environment_factory``
    (defaults to ``EnvVarSecretProvider.for_environment``).

    Every lookup is recorded in the optional audit log. Values never are.
    """

    def __init__(
        self,
        repository: SecretProvider,
        environments: Mapping[str, SecretProvider] | None = None,
        environment_factory: Callable[[str], SecretProvider] | None = None,
        audit_log: SecretAuditLog | None = None,
    ) -> None:
        self.repository = repository
        self._environments = dict(environments or {})
        self._factory = environment_factory or EnvVarSecretProvider.for_environment
        self.audit_log = audit_log

    def environment_provider(self, environment: str) -> SecretProvider:
        if environment not in self._environments:
            self._environments[environment] = self._factory(environment)
        return self._environments[environment]

    async def resolve(
        self,
        scope: str | None,
        key: str,
        run_id: str = "",
        job_id: str = "",
    ) -> tuple[str | None, bool]:
        """
        Resolve a secret for a job.

        Args:
            scope: Environment name the job is bound to (None for repository only)
            key: Secret name as written in ``secrets.<name>``
            run_id: Run id for the audit record
            job_id: Job id for the audit record

        Returns:
            (value, found). ``value`` is None when not found.
        """
        providers: list[tuple[str, SecretProvider]] = []
        if scope:
            providers.append((scope, self.environment_provider(scope)))
        providers.append(("repository", self.repository))

        for scope_name, provider in providers:
            try:
                value = await provider.get_secret(key)
            except SecretNotFoundError:
                continue
            except SecretError as e:
                logger.warning(f"Secret provider failed for '{key}' in scope {scope_name}: {e}")
                await self._audit(run_id, job_id, scope_name, key, False, str(e))
                continue

            await self._audit(run_id, job_id, scope_name, key, True)
            return value, True

        await self._audit(run_id, job_id, scope or "repository", key, False, "Secret not found")
        return None, False

    async def _audit(
        self,
        run_id: str,
        job_id: str,
        scope: str,
        key: str,
        success: bool,
        error_message: str | None = None,
    ) -> None:
        if self.audit_log is None:
            return
        await self.audit_log.log_access(
            run_id=run_id,
            job_id=job_id,
            scope=scope,
            secret_key=key,
            success=success,
            error_message=error_message,
        )
