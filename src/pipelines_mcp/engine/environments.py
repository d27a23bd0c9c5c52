"""
Environment protection rules and the gate coordinator.

A job bound to an environment passes through the gate once it becomes
eligible to run:

1. Deployment branches: when patterns are configured, the run's ref (with
   ``refs/heads/`` or ``refs/tags/`` stripped) must match one of them
   (fnmatch). Otherwise the job fails with EnvironmentRestricted.
2. Required reviewers: the job is suspended (``gated``) and the approval
   collaborator is notified. The job resumes when enough distinct reviewers
   approve, and fails on the first rejection or when ``approval_timeout``
   elapses.
3. Wait timer: the job stays gated for ``wait_timer`` seconds, counted from
   approval.

Every wait is cancellable through the run's cancel event. Environments that
are not configured are created on the fly without protection rules.

Environment configuration file (``PIPELINES_ENVIRONMENTS_FILE``):

    production:
      required_reviewers: 1
      wait_timer: 30
      deployment_branches: [main, "release/*"]
      prevent_self_review: true
    staging: {}
"""

import asyncio
import fnmatch
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ApprovalTimeoutError, DeploymentRejectedError, EnvironmentRestrictedError
from .load_result import LoadResult

logger = logging.getLogger(__name__)


class EnvironmentConfig(BaseModel):
    """Protection rules of one deployment environment."""

    name: str = Field(min_length=1)
    required_reviewers: int = Field(default=0, ge=0, description="Distinct approvals required")
    reviewers: list[str] = Field(
        default_factory=list, description="Who may review (empty means anyone)"
    )
    wait_timer: float = Field(default=0, ge=0, description="Seconds to wait after approval")
    deployment_branches: list[str] = Field(
        default_factory=list, description="Branch/tag patterns allowed to deploy (empty means any)"
    )
    prevent_self_review: bool = Field(
        default=False, description="Ignore approvals from the actor who triggered the run"
    )
    approval_timeout: float | None = Field(
        default=None, gt=0, description="Seconds to wait for a decision (None means forever)"
    )

    model_config = ConfigDict(extra="forbid")

    @property
    def requires_approval(self) -> bool:
        return self.required_reviewers > 0

    @property
    def is_protected(self) -> bool:
        return self.requires_approval or self.wait_timer > 0 or bool(self.deployment_branches)

    def allows_ref(self, ref: str) -> bool:
        if not self.deployment_branches:
            return True
        name = ref_name(ref)
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.deployment_branches)


def ref_name(ref: str) -> str:
    """``refs/heads/main`` -> ``main``; ``refs/tags/v1`` -> ``v1``."""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


def parse_environments(data: Mapping[str, Any] | None) -> dict[str, EnvironmentConfig]:
    """
    Build configs from a mapping of environment name to rules.

    Raises:
        ValueError: If a rule set is invalid
    """
    configs: dict[str, EnvironmentConfig] = {}
    for name, rules in (data or {}).items():
        if rules is None:
            rules = {}
        if not isinstance(rules, Mapping):
            raise ValueError(f"Environment '{name}' must be a mapping of protection rules")
        try:
            configs[str(name)] = EnvironmentConfig.model_validate({**rules, "name": str(name)})
        except ValidationError as e:
            raise ValueError(f"Invalid rules for environment '{name}': {e}") from e
    return configs


def load_environments_file(file_path: str | Path) -> LoadResult[dict[str, EnvironmentConfig]]:
    """
    Load environment protection rules from a YAML file.

    Returns:
        LoadResult.success({name: EnvironmentConfig})
        LoadResult.failure(error_message) if the file is missing or invalid
    """
    path = Path(file_path)
    if not path.is_file():
        return LoadResult.failure(f"Environments file not found: {file_path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        return LoadResult.failure(f"Failed to read environments file '{file_path}': {e}")

    if data is not None and not isinstance(data, dict):
        return LoadResult.failure(
            f"Environments file {file_path} must be a YAML mapping, got {type(data).__name__}"
        )

    try:
        configs = parse_environments(data)
    except ValueError as e:
        return LoadResult.failure(str(e))
    return LoadResult.success(configs, metadata={"source": str(path)})


class ApprovalCollaborator(Protocol):
    """External party notified when a job needs approval."""

    async def request_approval(self, job_id: str, environment: str, required_count: int) -> None:
        ...


class LoggingApprovalCollaborator:
    """Default collaborator: records the request in the log."""

    async def request_approval(self, job_id: str, environment: str, required_count: int) -> None:
        logger.info(
            f"Job '{job_id}' is waiting for {required_count} approval(s) "
            f"to deploy to '{environment}'"
        )


@dataclass
class PendingApproval:
    """A gated job waiting for reviewers."""

    job_id: str
    environment: str
    required_count: int
    actor: str
    decision: asyncio.Future[None]
    approvals: list[str] = field(default_factory=list)
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "environment": self.environment,
            "required_approvals": self.required_count,
            "approvals": list(self.approvals),
            "requested_at": self.requested_at.isoformat(),
        }


class EnvironmentGateCoordinator:
    """
    Suspends jobs bound to protected environments until they are cleared.

    Example:
        gate = EnvironmentGateCoordinator(
            {"production": EnvironmentConfig(name="production", required_reviewers=1)}
        )
        # in the job task
        cleared = await gate.clear("deploy", "production", ref="refs/heads/main", actor="ci")
        # from outside
        gate.approve("deploy", reviewer="alice")
    """

    def __init__(
        self,
        environments: Mapping[str, EnvironmentConfig] | None = None,
        collaborator: ApprovalCollaborator | None = None,
    ):
        self._environments: dict[str, EnvironmentConfig] = dict(environments or {})
        self._collaborator: ApprovalCollaborator = collaborator or LoggingApprovalCollaborator()
        self._pending: dict[str, PendingApproval] = {}

    def config_for(self, environment: str) -> EnvironmentConfig:
        """Rules for an environment; unknown environments are created unprotected."""
        if environment not in self._environments:
            logger.info(f"Creating environment '{environment}' without protection rules")
            self._environments[environment] = EnvironmentConfig(name=environment)
        return self._environments[environment]

    async def clear(
        self,
        job_id: str,
        environment: str,
        ref: str = "",
        actor: str = "",
        cancel_event: asyncio.Event | None = None,
        on_gated: Callable[[str], None] | None = None,
    ) -> bool:
        """
        Wait until the job may deploy to the environment.

        Args:
            job_id: Job bound to the environment
            environment: Environment name
            ref: Ref the run was triggered for
            actor: Who triggered the run (for prevent_self_review)
            cancel_event: Run-wide cancellation signal
            on_gated: Called once with a message when the job becomes gated

        Returns:
            True if cleared, False if the run was cancelled while gated

        Raises:
            EnvironmentRestrictedError: The ref may not deploy to the environment
            DeploymentRejectedError: A reviewer rejected the deployment
            ApprovalTimeoutError: No decision within approval_timeout
        """
        config = self.config_for(environment)
        cancel_event = cancel_event or asyncio.Event()

        if not config.allows_ref(ref):
            raise EnvironmentRestrictedError(environment, ref, config.deployment_branches)

        if config.requires_approval:
            if on_gated is not None:
                on_gated(f"Waiting for {config.required_reviewers} approval(s) for '{environment}'")
            if not await self._await_approval(job_id, config, actor, cancel_event):
                return False

        if config.wait_timer > 0:
            if on_gated is not None and not config.requires_approval:
                on_gated(f"Waiting {config.wait_timer:g}s before deploying to '{environment}'")
            logger.info(
                f"Job '{job_id}' waiting {config.wait_timer:g}s (wait timer of '{environment}')"
            )
            if await _wait_for_event(cancel_event, config.wait_timer):
                return False

        return True

    async def _await_approval(
        self,
        job_id: str,
        config: EnvironmentConfig,
        actor: str,
        cancel_event: asyncio.Event,
    ) -> bool:
        decision: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        pending = PendingApproval(
            job_id=job_id,
            environment=config.name,
            required_count=config.required_reviewers,
            actor=actor,
            decision=decision,
        )
        self._pending[job_id] = pending

        try:
            await self._collaborator.request_approval(
                job_id, config.name, config.required_reviewers
            )

            watcher = asyncio.create_task(cancel_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {decision, watcher},
                    timeout=config.approval_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)

            if decision in done:
                decision.result()
                logger.info(f"Job '{job_id}' approved for '{config.name}' by {pending.approvals}")
                return True
            if watcher in done:
                logger.info(f"Run cancelled while job '{job_id}' was waiting for approval")
                return False
            raise ApprovalTimeoutError(job_id, config.name, config.approval_timeout or 0)
        finally:
            self._pending.pop(job_id, None)
            if not decision.done():
                decision.cancel()

    def approve(self, job_id: str, reviewer: str) -> bool:
        """
        Record an approval.

        Returns:
            True if the job has now collected enough approvals

        Raises:
            KeyError: If the job is not waiting for approval
            PermissionError: If the reviewer is not allowed to review
        """
        pending = self._get_pending(job_id)
        config = self.config_for(pending.environment)

        if config.reviewers and reviewer not in config.reviewers:
            raise PermissionError(
                f"'{reviewer}' is not a reviewer for environment '{pending.environment}'"
            )
        if config.prevent_self_review and reviewer == pending.actor:
            logger.warning(
                f"Ignoring self-approval of job '{job_id}' by run actor '{reviewer}'"
            )
            return False
        if reviewer not in pending.approvals:
            pending.approvals.append(reviewer)

        if len(pending.approvals) >= pending.required_count:
            if not pending.decision.done():
                pending.decision.set_result(None)
            return True
        logger.info(
            f"Job '{job_id}' has {len(pending.approvals)}/{pending.required_count} approvals"
        )
        return False

    def reject(self, job_id: str, reviewer: str, comment: str | None = None) -> None:
        """
        Reject a gated deployment; the job fails with DeploymentRejected.

        Raises:
            KeyError: If the job is not waiting for approval
            PermissionError: If the reviewer is not allowed to review
        """
        pending = self._get_pending(job_id)
        config = self.config_for(pending.environment)
        if config.reviewers and reviewer not in config.reviewers:
            raise PermissionError(
                f"'{reviewer}' is not a reviewer for environment '{pending.environment}'"
            )
        if not pending.decision.done():
            pending.decision.set_exception(
                DeploymentRejectedError(job_id, pending.environment, reviewer, comment)
            )

    def pending(self) -> list[PendingApproval]:
        """Jobs currently waiting for approval."""
        return list(self._pending.values())

    def is_pending(self, job_id: str) -> bool:
        return job_id in self._pending

    def _get_pending(self, job_id: str) -> PendingApproval:
        if job_id not in self._pending:
            waiting = sorted(self._pending) or "none"
            raise KeyError(f"Job '{job_id}' is not waiting for approval (waiting: {waiting})")
        return self._pending[job_id]


async def _wait_for_event(event: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds. Returns True if the event fired."""
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
    except TimeoutError:
        return False
    return True
