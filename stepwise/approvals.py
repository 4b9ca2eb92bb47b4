"""Approval gate: human decisions feeding back into execution control flow."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional, Union

from .contracts import utcnow
from .errors import ApprovalRequestNotFound, InvalidStateTransition
from .events import BaseEventSink
from .models import ApprovalRequest, ApprovalStatus, LifecycleEvent
from .persistence import WorkflowRepository

if TYPE_CHECKING:
    from .coordinator import ExecutionCoordinator

logger = logging.getLogger(__name__)


class ApprovalGateManager:
    """Creates approval requests and resolves them exactly once.

    Approving resumes the execution past its approval step; rejecting
    cancels the execution.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        events: BaseEventSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._events = events
        self._clock = clock
        self._coordinator: Optional["ExecutionCoordinator"] = None

    def attach(self, coordinator: "ExecutionCoordinator") -> None:
        self._coordinator = coordinator

    async def request(
        self, execution_id: str, step_id: str, approver_id: str
    ) -> ApprovalRequest:
        """Create the pending request for ``(execution_id, step_id)``.

        A pending request that already exists for the same step is returned
        unchanged, so a re-dispatched approval step never opens a second one.
        """
        existing = await self.pending_for_step(execution_id, step_id)
        if existing is not None:
            logger.info(
                f"Reusing pending approval request {existing.id} for execution {execution_id}"
            )
            return existing

        request = ApprovalRequest(
            execution_id=execution_id,
            step_id=step_id,
            approver_id=approver_id,
            requested_at=self._clock(),
        )
        await self._repository.save_approval(request)
        await self._notify_approver(request)
        logger.info(f"Created approval request: {request.id}")
        return request

    async def get(self, request_id: str) -> ApprovalRequest:
        request = await self._repository.get_approval(request_id)
        if request is None:
            raise ApprovalRequestNotFound(request_id)
        return request

    async def list_pending(self, approver_id: Optional[str] = None) -> list[ApprovalRequest]:
        return await self._repository.list_approvals(
            status=ApprovalStatus.PENDING, approver_id=approver_id
        )

    async def pending_for_step(
        self, execution_id: str, step_id: str
    ) -> Optional[ApprovalRequest]:
        for request in await self._repository.list_approvals(
            execution_id=execution_id, status=ApprovalStatus.PENDING
        ):
            if request.step_id == step_id:
                return request
        return None

    async def latest_for_step(
        self, execution_id: str, step_id: str
    ) -> Optional[ApprovalRequest]:
        requests = [
            r
            for r in await self._repository.list_approvals(execution_id=execution_id)
            if r.step_id == step_id
        ]
        return requests[-1] if requests else None

    async def respond(
        self,
        request_id: str,
        decision: Union[ApprovalStatus, str],
        comments: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record the approver's decision and drive the execution.

        Raises:
            ApprovalRequestNotFound: Unknown request id.
            InvalidStateTransition: The request was already resolved.
        """
        decision = ApprovalStatus(decision)
        if decision == ApprovalStatus.PENDING:
            raise ValueError("Decision must be 'approved' or 'rejected'")

        request = await self.get(request_id)
        if request.is_resolved:
            raise InvalidStateTransition(
                f"Approval request {request_id} already {request.status.value}"
            )

        request.status = decision
        request.responded_at = self._clock()
        request.comments = comments
        if not await self._repository.update_approval(
            request, expected_status=ApprovalStatus.PENDING
        ):
            current = await self.get(request_id)
            raise InvalidStateTransition(
                f"Approval request {request_id} already {current.status.value}"
            )
        await self._publish("approval.resolved", request)
        logger.info(f"Approval request {request_id} {decision.value}")

        coordinator = self._require_coordinator()
        if decision == ApprovalStatus.APPROVED:
            try:
                await coordinator.resume(request.execution_id)
            except InvalidStateTransition:
                execution = await coordinator.get_execution(request.execution_id)
                if not execution.is_terminal:
                    raise
                logger.warning(
                    f"Approval {request_id} arrived after execution "
                    f"{execution.id} ended ({execution.status.value})"
                )
        else:
            await coordinator.cancel(request.execution_id)
        return request

    async def reject_pending(self, execution_id: str, comments: str) -> int:
        """Resolve every pending request of an execution as rejected."""
        resolved = 0
        for request in await self._repository.list_approvals(
            execution_id=execution_id, status=ApprovalStatus.PENDING
        ):
            request.status = ApprovalStatus.REJECTED
            request.responded_at = self._clock()
            request.comments = comments
            if await self._repository.update_approval(
                request, expected_status=ApprovalStatus.PENDING
            ):
                resolved += 1
                await self._publish("approval.resolved", request)
        return resolved

    def _require_coordinator(self) -> "ExecutionCoordinator":
        if self._coordinator is None:
            raise RuntimeError("ApprovalGateManager is not attached to a coordinator")
        return self._coordinator

    async def _notify_approver(self, request: ApprovalRequest) -> None:
        logger.info(
            f"Notifying approver {request.approver_id} of approval request {request.id}"
        )
        await self._publish("approval.requested", request)

    async def _publish(self, topic: str, request: ApprovalRequest) -> None:
        event = LifecycleEvent(
            topic=topic,
            execution_id=request.execution_id,
            timestamp=self._clock(),
            data=request.model_dump(mode="json"),
        )
        try:
            await self._events.publish(event)
        except Exception:
            logger.exception(f"Failed to publish {topic} for request {request.id}")
