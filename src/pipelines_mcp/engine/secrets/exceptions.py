"""Exceptions for the secrets subsystem.

Exception Hierarchy:
    SecretError (base)
    └── SecretNotFoundError (missing secret)

Example:
    >>> try:
    ...     secret = await provider.get_secret("deploy_key")
    ... except SecretNotFoundError as e:
    ...     print(f"Secret {e.key} not found. {e.provider_hint}")
"""


class SecretError(Exception):
    """Base exception for all secrets-related errors."""


class SecretNotFoundError(SecretError):
    """
    A requested secret does not exist in the provider.

    Attributes:
        key: The secret key that was not found
        provider_hint: Optional hint about where to configure the secret
    """

    def __init__(self, key: str, provider_hint: str | None = None) -> None:
        self.key = key
        self.provider_hint = provider_hint

        message = f"Secret '{key}' not found"
        if provider_hint:
            message += f". {provider_hint}"
        super().__init__(message)

