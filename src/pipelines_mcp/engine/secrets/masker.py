"""Secret masking for step output, logs, results and events.

Every secret value resolved during a run is registered with the run's
``SecretMasker``. Anything that leaves the engine (captured lines, step
outputs written to the output store, events, the final result tree) passes
through ``mask()`` first, which replaces each registered value with ``***``.

Features:
    - Recursive masking of nested data structures (type-preserving)
    - Longest value matched first, so a secret containing another secret is
      masked as a whole
    - Multi-line secrets also register each line, since output is captured
      line by line
    - Thread-safe registration (jobs run concurrently)

Example:
    >>> masker = SecretMasker()
    >>> masker.add_secret("s3cr3t")
    >>> masker.mask({"line": "token=s3cr3t"})
    {'line': 'token=***'}
"""

import re
import threading
from enum import Enum
from typing import Any

from .provider import SecretProvider


class SecretMasker:
    """Replaces registered secret values with the mask token."""

    MASK = "***"

    def __init__(self) -> None:
        self._values: set[str] = set()
        self._pattern: re.Pattern[str] | None = None
        self._lock = threading.Lock()

    async def load_from(self, provider: SecretProvider) -> int:
        """
        Register every secret a provider can list.

        Returns:
            Number of values registered
        """
        count = 0
        for key in await provider.list_secret_keys():
            value = await provider.get_secret(key)
            if self.add_secret(value):
                count += 1
        return count

    def add_secret(self, value: str) -> bool:
        """
        Register a value for masking.

        Whitespace-only values are ignored since masking them would corrupt
        every line of output.

        Returns:
            True if the value was registered
        """
        if not value or not value.strip():
            return False

        candidates = {value}
        if "\n" in value:
            candidates.update(line for line in value.splitlines() if line.strip())

        with self._lock:
            new = candidates - self._values
            if not new:
                return False
            self._values.update(new)
            ordered = sorted(self._values, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(v) for v in ordered))
        return True

    def mask(self, data: Any) -> Any:  # noqa: ANN401
        """Mask secrets in strings, dicts, lists and tuples (recursively)."""
        if isinstance(data, Enum):
            return data
        if isinstance(data, str):
            return self._mask_string(data)
        if isinstance(data, dict):
            return {key: self.mask(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.mask(item) for item in data]
        if isinstance(data, tuple):
            return tuple(self.mask(item) for item in data)
        return data

    def _mask_string(self, text: str) -> str:
        pattern = self._pattern
        if pattern is None:
            return text
        return pattern.sub(self.MASK, text)

    def __len__(self) -> int:
        return len(self._values)
