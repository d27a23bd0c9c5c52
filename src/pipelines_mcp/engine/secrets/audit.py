"""Secret access audit logging.

Every secret lookup made for a job is recorded with the run, job, scope and
key, plus whether the lookup succeeded. Secret values are never recorded.

Example:
    >>> audit_log = SecretAuditLog()
    >>> await audit_log.log_access(
    ...     run_id="run_1a2b3c4d",
    ...     job_id="deploy",
    ...     scope="production",
    ...     secret_key="deploy_token",
    ...     success=True,
    ... )
    >>> audit_log.get_events(job_id="deploy")
"""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class SecretAccessEvent(BaseModel):
    """A single secret lookup."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(description="ISO 8601 timestamp of the access event")
    run_id: str = Field(description="Run that requested the secret")
    job_id: str = Field(description="Job that requested the secret")
    scope: str = Field(description="Scope the secret was resolved from (or looked up in)")
    secret_key: str = Field(description="Key of the secret that was accessed")
    success: bool = Field(description="Whether the secret was found")
    error_message: str | None = Field(default=None, description="Error if lookup failed")


class SecretAuditLog:
    """In-memory audit log of secret lookups.

    Attributes:
        events: Recorded access events, oldest first
    """

    def __init__(self) -> None:
        self.events: list[SecretAccessEvent] = []

    async def log_access(
        self,
        run_id: str,
        job_id: str,
        scope: str,
        secret_key: str,
        success: bool,
        error_message: str | None = None,
    ) -> None:
        """Record a secret lookup and log it to stderr (never the value)."""
        event = SecretAccessEvent(
            timestamp=datetime.now(UTC).isoformat(),
            run_id=run_id,
            job_id=job_id,
            scope=scope,
            secret_key=secret_key,
            success=success,
            error_message=error_message,
        )
        self.events.append(event)

        status = "SUCCESS" if success else "MISSING"
        message = (
            f"Secret access [{status}]: run={run_id}, job={job_id}, "
            f"scope={scope}, key={secret_key}"
        )
        if error_message:
            message += f", error={error_message}"
        logger.debug(message)

    def get_events(
        self,
        run_id: str | None = None,
        job_id: str | None = None,
        secret_key: str | None = None,
    ) -> list[SecretAccessEvent]:
        """Query events; filters combine with AND logic."""
        events = self.events
        if run_id is not None:
            events = [e for e in events if e.run_id == run_id]
        if job_id is not None:
            events = [e for e in events if e.job_id == job_id]
        if secret_key is not None:
            events = [e for e in events if e.secret_key == secret_key]
        return events

    def clear(self) -> None:
        self.events.clear()

    def get_summary(self) -> dict[str, Any]:
        """Aggregate statistics (counts and distinct keys)."""
        successful = sum(1 for e in self.events if e.success)
        return {
            "total_events": len(self.events),
            "successful_accesses": successful,
            "failed_accesses": len(self.events) - successful,
            "unique_secrets": len({e.secret_key for e in self.events}),
            "runs": sorted({e.run_id for e in self.events}),
        }
