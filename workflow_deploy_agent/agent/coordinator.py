"""DeploymentCoordinator — submits definitions to the engine with retry and healing.

    attempt n ──submit──► accepted?  ─yes─► SUCCEEDED (definition frozen as ACCEPTED)
                            │ no
                        classify()
                            │
           ┌────────────────┼─────────────────────┐
         HEAL             RETRY                  FAIL
     heal(), resubmit   backoff(n), resubmit    terminal FAILED
           └──── n == max_attempts → terminal EXHAUSTED ────┘

The RetryPolicy value object decides which classes heal, which retry and how
long to wait; nothing else in here encodes retry behaviour. Each submission
gets one DeploymentAttempt record, written to the store before the request
goes out and updated when it resolves.

Cancellation: deploy() accepts an asyncio.Event. Setting it aborts the
in-flight request (the request task is cancelled), skips any pending backoff,
and returns a FAILED result with cancelled=True and no further retries.
Cancelling the task running deploy() (e.g. a session deadline) records the
in-flight attempt as a Timeout and re-raises CancelledError.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from workflow_deploy_agent.agent.healer import classify, heal
from workflow_deploy_agent.client.engine_client import EngineClient, is_error
from workflow_deploy_agent.config import RetryAction, RetryPolicy
from workflow_deploy_agent.errors import (
    ImmutableDefinitionError,
    TenantIsolationError,
    UnrepairableDefinitionError,
)
from workflow_deploy_agent.models import (
    AttemptStatus,
    DefinitionStatus,
    DeploymentAttempt,
    DeploymentResult,
    ErrorClass,
    TenantSlot,
    WorkflowDefinition,
    owns_workflow_name,
)
from workflow_deploy_agent.persistence.base import Store

logger = logging.getLogger("workflow_deploy_agent.agent.coordinator")

Sleep = Callable[[float], Awaitable[Any]]


class DeploymentCoordinator:
    """Drives one definition to a terminal DeploymentResult.

    Args:
        client: engine API client.
        store:  persistence for attempt records and definitions.
        policy: retry/heal policy; defaults to RetryPolicy().
        sleep:  backoff sleeper, injectable for tests.
    """

    def __init__(
        self,
        client: EngineClient,
        store: Store,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(
        self,
        slot: TenantSlot,
        definition: WorkflowDefinition,
        cancel: asyncio.Event | None = None,
    ) -> DeploymentResult:
        """Submit definition into slot's tenant namespace.

        Raises:
            TenantIsolationError:     the name does not carry the slot tenant's tag.
            ImmutableDefinitionError: the definition was already accepted.
        """
        tenant_id = slot.tenant_id
        if not tenant_id:
            raise TenantIsolationError(f"slot {slot.folder_tag} is not assigned to a tenant")
        if definition.tenant_id != tenant_id or not owns_workflow_name(definition.name, tenant_id):
            raise TenantIsolationError(
                f"workflow {definition.name!r} does not belong to tenant {tenant_id}"
            )
        if definition.status != DefinitionStatus.PENDING:
            raise ImmutableDefinitionError(f"{definition.name!r} was already accepted by the engine")

        current = definition
        attempts: list[DeploymentAttempt] = []
        await self._store.save_definition(current)

        for number in range(1, self._policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                return self._cancelled(current, attempts)

            attempt = DeploymentAttempt(workflow_id=definition.id, attempt_number=number, tenant_id=tenant_id)
            attempts.append(attempt)
            await self._store.save_attempt(attempt)
            logger.info("Submitting %r (attempt %d/%d)", current.name, number, self._policy.max_attempts)

            try:
                finished, response = await self._race(
                    self._client.create_workflow(current.to_payload()), cancel
                )
            except asyncio.CancelledError:
                await self._close_attempt(
                    attempt, AttemptStatus.FAILED, ErrorClass.TIMEOUT, "deployment aborted: deadline exceeded"
                )
                raise
            if not finished:
                await self._close_attempt(
                    attempt, AttemptStatus.FAILED, ErrorClass.TIMEOUT, "deployment cancelled by caller"
                )
                return self._cancelled(current, attempts)

            if not is_error(response) and isinstance(response, dict) and response.get("id"):
                return await self._accept(current, attempt, attempts, response)
            if not is_error(response):
                response = {
                    "error": "engine accepted the request but returned no workflow id",
                    "detail": json.dumps(response, default=str)[:500],
                }

            diagnosis = classify(response)
            action = self._policy.action_for(diagnosis.error_class)

            if action is RetryAction.FAIL:
                await self._close_attempt(attempt, AttemptStatus.FAILED, diagnosis.error_class, diagnosis.message)
                logger.error("Deployment of %r failed fatally: %s", current.name, diagnosis.error_class.value)
                return self._failure(AttemptStatus.FAILED, current, attempts)

            if number == self._policy.max_attempts:
                await self._close_attempt(attempt, AttemptStatus.EXHAUSTED, diagnosis.error_class, diagnosis.message)
                logger.error(
                    "Deployment of %r exhausted %d attempts; last error %s",
                    current.name, number, diagnosis.error_class.value,
                )
                return self._failure(AttemptStatus.EXHAUSTED, current, attempts)

            if action is RetryAction.HEAL:
                try:
                    current = heal(current, diagnosis.error_class, diagnosis.fields)
                except UnrepairableDefinitionError as e:
                    await self._close_attempt(
                        attempt, AttemptStatus.FAILED, diagnosis.error_class, f"{diagnosis.message} ({e})"
                    )
                    logger.error("Definition %r cannot be healed: %s", current.name, e)
                    return self._failure(AttemptStatus.FAILED, current, attempts)
                await self._close_attempt(
                    attempt, AttemptStatus.HEALED_RETRY, diagnosis.error_class, diagnosis.message
                )
                await self._store.save_definition(current)
                logger.warning("Attempt %d rejected (%s); healed and resubmitting", number, diagnosis.error_class.value)
                continue

            await self._close_attempt(attempt, AttemptStatus.FAILED, diagnosis.error_class, diagnosis.message)
            delay = self._policy.backoff(number)
            if diagnosis.retry_after is not None:
                delay = min(max(delay, diagnosis.retry_after), self._policy.max_delay)
            logger.warning(
                "Attempt %d failed (%s); retrying in %.1fs", number, diagnosis.error_class.value, delay
            )
            finished, _ = await self._race(self._sleep(delay), cancel)
            if not finished:
                return self._cancelled(current, attempts)

        # max_attempts >= 1 and every branch above returns on the final attempt.
        raise AssertionError("unreachable")

    async def _race(self, aw: Awaitable[Any], cancel: asyncio.Event | None) -> tuple[bool, Any]:
        """Await aw unless cancel fires first. Returns (finished, result)."""
        task = asyncio.ensure_future(aw)
        if cancel is None:
            return True, await task
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return True, task.result()
        return False, None

    async def _close_attempt(
        self,
        attempt: DeploymentAttempt,
        status: AttemptStatus,
        error_class: ErrorClass | None,
        diagnostic: str | None,
    ) -> None:
        attempt.status = status
        attempt.error_class = error_class
        attempt.diagnostic = diagnostic
        attempt.ended_at = time.time()
        await self._store.save_attempt(attempt)

    async def _accept(
        self,
        current: WorkflowDefinition,
        attempt: DeploymentAttempt,
        attempts: list[DeploymentAttempt],
        response: dict[str, Any],
    ) -> DeploymentResult:
        await self._close_attempt(attempt, AttemptStatus.SUCCEEDED, None, None)
        accepted = copy.deepcopy(current)
        accepted.status = DefinitionStatus.ACCEPTED
        accepted.engine_id = str(response["id"])
        await self._store.save_definition(accepted)

        endpoint = None
        webhook_path = accepted.metadata.get("webhook_path")
        if webhook_path:
            endpoint = self._client.webhook_url(webhook_path)
        logger.info(
            "Deployed %r as %s after %d attempt(s)", accepted.name, accepted.engine_id, len(attempts)
        )
        return DeploymentResult(
            status=AttemptStatus.SUCCEEDED,
            definition=accepted,
            attempts=attempts,
            engine_id=accepted.engine_id,
            endpoint=endpoint,
            editor_url=self._client.editor_url(accepted.engine_id),
        )

    def _failure(
        self,
        status: AttemptStatus,
        current: WorkflowDefinition,
        attempts: list[DeploymentAttempt],
    ) -> DeploymentResult:
        last = attempts[-1]
        return DeploymentResult(
            status=status,
            definition=current,
            attempts=attempts,
            error_class=last.error_class,
            diagnostic=last.diagnostic,
        )

    def _cancelled(self, current: WorkflowDefinition, attempts: list[DeploymentAttempt]) -> DeploymentResult:
        logger.warning("Deployment of %r cancelled after %d attempt(s)", current.name, len(attempts))
        return DeploymentResult(
            status=AttemptStatus.FAILED,
            definition=current,
            attempts=attempts,
            error_class=ErrorClass.TIMEOUT,
            diagnostic="deployment cancelled by caller",
            cancelled=True,
        )

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    async def status(self, workflow_id: str, tenant_id: str | None = None) -> dict[str, Any]:
        """Engine-side status of a deployed workflow (or the engine's error dict).

        With tenant_id, raises TenantIsolationError if the workflow is not the tenant's.
        """
        result = await self._client.get_workflow(workflow_id)
        if is_error(result):
            return result
        if tenant_id is not None and not owns_workflow_name(result.get("name", ""), tenant_id):
            raise TenantIsolationError(f"workflow {workflow_id} does not belong to tenant {tenant_id}")
        try:
            definition = WorkflowDefinition.from_payload(result, tenant_id or "")
        except ValueError as e:
            logger.error("Engine returned a malformed workflow %s: %s", workflow_id, e)
            return {"error": "malformed workflow", "detail": str(e)}
        engine_id = str(result.get("id", workflow_id))
        return {
            "id": engine_id,
            "name": definition.name,
            "active": bool(result.get("active")),
            "updated_at": result.get("updatedAt"),
            "nodes": [n.name for n in definition.nodes],
            "editor_url": self._client.editor_url(engine_id),
        }

    async def teardown(self, workflow_id: str, tenant_id: str | None = None) -> dict[str, Any]:
        """Delete a workflow from the engine, checking ownership first when tenant_id is given."""
        if tenant_id is not None:
            current = await self.status(workflow_id, tenant_id)
            if is_error(current):
                return current
        result = await self._client.delete_workflow(workflow_id)
        if not is_error(result):
            logger.info("Deleted workflow %s", workflow_id)
        return result

    async def list_tenant_workflows(self, tenant_id: str) -> list[dict[str, Any]] | dict[str, Any]:
        """Engine workflows whose name carries tenant_id's tag."""
        workflows = await self._client.iter_workflows()
        if is_error(workflows):
            return workflows
        return [
            {"id": w.get("id"), "name": w.get("name"), "active": bool(w.get("active"))}
            for w in workflows
            if owns_workflow_name(w.get("name", ""), tenant_id)
        ]
