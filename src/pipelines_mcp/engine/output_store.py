"""
Per-run store of step and job outputs.

Outputs are namespaced by job id (and step id for step outputs). Each job has
a single writer: the task running it. Any number of jobs may read
concurrently.

Publish-on-completion:
    ``set_job_output`` writes to a private staging area. ``publish(job_id)``
    freezes the staged values into an immutable snapshot, and only published
    snapshots are visible through ``get_job_outputs``. The scheduler publishes
    before it sets the job's terminal status, and dependents read only after
    observing that status, so a dependent never sees a half-written output set.

Every value passes through the secret masker on write, so nothing stored here
can leak a resolved secret.
"""

import threading
from collections.abc import Mapping
from types import MappingProxyType

from .secrets import SecretMasker

_EMPTY: Mapping[str, str] = MappingProxyType({})


class OutputStore:
    """Thread-safe output store with publish-on-completion."""

    def __init__(self, masker: SecretMasker | None = None) -> None:
        self._masker = masker
        self._lock = threading.Lock()
        self._step_outputs: dict[tuple[str, str], dict[str, str]] = {}
        self._staged: dict[str, dict[str, str]] = {}
        self._published: dict[str, Mapping[str, str]] = {}

    def _mask(self, value: str) -> str:
        return self._masker.mask(value) if self._masker is not None else value

    def _ensure_writable(self, job_id: str) -> None:
        if job_id in self._published:
            raise RuntimeError(f"Outputs of job '{job_id}' are already published")

    def set_step_output(self, job_id: str, step_id: str, key: str, value: str) -> None:
        """Record an output produced by a step (last write wins)."""
        masked = self._mask(value)
        with self._lock:
            self._ensure_writable(job_id)
            self._step_outputs.setdefault((job_id, step_id), {})[key] = masked

    def set_job_output(self, job_id: str, key: str, value: str) -> None:
        """Stage a declared job output (last write wins)."""
        masked = self._mask(value)
        with self._lock:
            self._ensure_writable(job_id)
            self._staged.setdefault(job_id, {})[key] = masked

    def publish(self, job_id: str) -> Mapping[str, str]:
        """
        Freeze the job's staged outputs; publishing twice is a no-op.

        Returns:
            The published snapshot
        """
        with self._lock:
            if job_id not in self._published:
                staged = self._staged.pop(job_id, {})
                self._published[job_id] = MappingProxyType(dict(staged))
            return self._published[job_id]

    def is_published(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._published

    def get_job_outputs(self, job_id: str) -> Mapping[str, str]:
        """Published outputs of a job (empty until the job is published)."""
        with self._lock:
            return self._published.get(job_id, _EMPTY)

    def get_step_outputs(self, job_id: str, step_id: str) -> Mapping[str, str]:
        """Snapshot of a step's outputs."""
        with self._lock:
            return MappingProxyType(dict(self._step_outputs.get((job_id, step_id), {})))

    def snapshot(self) -> dict[str, dict[str, str]]:
        """All published job outputs as plain dicts."""
        with self._lock:
            return {job_id: dict(values) for job_id, values in self._published.items()}
