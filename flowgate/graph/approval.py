"""
Approval Gate - human decision points for paused runs.

Requesting an approval is idempotent per (execution, node) while the
request is pending. Resolving only flips the request's status; resuming
the run is a separate call on the executor.
"""

import logging

from flowgate.errors import AlreadyResolved, ApprovalNotFound
from flowgate.schemas.approval import ApprovalDecision, ApprovalRequest, ApprovalStatus
from flowgate.storage.backend import ApprovalStore

logger = logging.getLogger(__name__)

# responded_by for approvals the engine closes itself
SYSTEM_RESPONDER = "system"


class ApprovalGate:
    def __init__(self, store: ApprovalStore):
        self.store = store

    async def request_approval(
        self,
        execution_id: str,
        node_id: str,
        message: str,
        workflow_id: str = "",
    ) -> str:
        """Return the pending approval id for this pause point, creating it if needed."""
        request = await self.store.get_or_create_pending(
            ApprovalRequest(
                execution_id=execution_id,
                workflow_id=workflow_id,
                node_id=node_id,
                message=message,
            )
        )
        logger.info(f"Approval {request.approval_id} pending for node '{node_id}'")
        return request.approval_id

    async def resolve(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        responded_by: str | None = None,
    ) -> ApprovalRequest:
        """
        Record a human decision. Does not resume the run.

        Raises:
            ApprovalNotFound: if the approval does not exist
            AlreadyResolved: if it was already approved or rejected
            ValueError: if the decision is not approve/reject
        """
        decision = ApprovalDecision.parse(decision)
        request = await self.store.resolve(approval_id, decision.status, responded_by)
        logger.info(f"Approval {approval_id} {request.status.value} by {responded_by or 'unknown'}")
        return request

    async def withdraw(self, approval_id: str, reason: str) -> ApprovalRequest | None:
        """
        Reject a pending approval whose run can no longer resume, so it
        stops showing up as pending. A no-op if it was already resolved.
        """
        try:
            request = await self.store.resolve(
                approval_id, ApprovalStatus.REJECTED, SYSTEM_RESPONDER
            )
        except AlreadyResolved:
            return None
        logger.info(f"Approval {approval_id} withdrawn: {reason}")
        return request

    async def get(self, approval_id: str) -> ApprovalRequest:
        request = await self.store.get(approval_id)
        if request is None:
            raise ApprovalNotFound(approval_id)
        return request

    async def list_pending(self) -> list[ApprovalRequest]:
        return await self.store.list(status=ApprovalStatus.PENDING)

    async def list_for_workflow(
        self, workflow_id: str, status: ApprovalStatus | None = None
    ) -> list[ApprovalRequest]:
        return await self.store.list(status=status, workflow_id=workflow_id)

    async def list_for_execution(self, execution_id: str) -> list[ApprovalRequest]:
        return await self.store.list(execution_id=execution_id)

    async def list_requests(
        self,
        status: ApprovalStatus | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalRequest]:
        return await self.store.list(
            status=status, workflow_id=workflow_id, execution_id=execution_id
        )
