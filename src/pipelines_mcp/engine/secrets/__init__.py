"""Secrets management for pipeline runs.

Core Components:
    - SecretProvider: Abstract base class for secret sources
    - EnvVarSecretProvider / InMemorySecretProvider: concrete sources
    - ScopedSecretResolver: environment scope over repository scope
    - SecretMasker: replaces resolved values with ``***`` in anything emitted
    - SecretAuditLog: record of every lookup (keys only)
"""

from .audit import SecretAccessEvent, SecretAuditLog
from .exceptions import SecretError, SecretNotFoundError
from .masker import SecretMasker
from .provider import (
    EnvVarSecretProvider,
    InMemorySecretProvider,
    ScopedSecretResolver,
    SecretProvider,
)

__all__ = [
    # Exceptions
    "SecretError",
    "SecretNotFoundError",
    # Providers
    "SecretProvider",
    "EnvVarSecretProvider",
    "InMemorySecretProvider",
    "ScopedSecretResolver",
    # Masking
    "SecretMasker",
    # Audit
    "SecretAccessEvent",
    "SecretAuditLog",
]
