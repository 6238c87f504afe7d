"""
First-message automation flows.

When a chat receives its first customer message, every active
``automation_flows`` row of the tenant whose ``trigger_conditions`` ask for
``on_first_message`` is started once for that chat. The run is claimed by
inserting a ``flow_executions`` row; its unique (flow, chat, trigger) index
keeps concurrent deliveries from starting a flow twice. The executor call
itself happens after the webhook response, as a FlowJob, and is best effort.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..config import settings
from ..exceptions import ProviderError
from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger
from .directory import is_unique_violation
from .whatsapp import post_provider

logger = get_logger(__name__)

TRIGGER_FIRST_MESSAGE = "first_message"

EXECUTION_PENDING = "pending"
EXECUTION_FAILED = "failed"


@dataclass
class FlowJob:
    """A claimed flow execution waiting to be handed to the executor."""

    tenant_id: str
    flow_id: str
    execution_id: str
    customer_id: str
    chat_id: str


class FlowTrigger:
    def __init__(self, supabase: Client, clock: Clock = utc_now) -> None:
        self.supabase = supabase
        self.clock = clock

    async def is_first_message(self, chat_id: str, message_id: str) -> bool:
        """Whether ``message_id`` is the only message stored for the chat."""
        response = (
            self.supabase.table("messages")
            .select("id")
            .eq("chat_id", chat_id)
            .neq("id", message_id)
            .limit(1)
            .execute()
        )
        return not response.data

    async def claim_first_message_flows(
        self,
        tenant_id: str,
        customer_id: str,
        chat_id: str,
    ) -> List[FlowJob]:
        """
        Claim the tenant's first-message flows for a chat.

        Args:
            tenant_id: Tenant id
            customer_id: Customer who wrote
            chat_id: Chat that received its first message

        Returns:
            One FlowJob per flow claimed by this call; flows already run for
            the chat are left out
        """
        if not settings.flow_executor_url:
            return []

        flows = (
            self.supabase.table("automation_flows")
            .select("id, name, trigger_conditions")
            .eq("user_id", tenant_id)
            .eq("is_active", True)
            .execute()
        ).data or []

        jobs = []
        for flow in flows:
            conditions = flow.get("trigger_conditions") or {}
            if not conditions.get("on_first_message"):
                continue
            execution = self._claim(tenant_id, flow["id"], customer_id, chat_id)
            if execution is None:
                logger.info(
                    "Flow already ran for chat",
                    extra={"tenant_id": tenant_id, "flow_id": flow["id"], "chat_id": chat_id},
                )
                continue
            jobs.append(
                FlowJob(
                    tenant_id=tenant_id,
                    flow_id=flow["id"],
                    execution_id=execution["id"],
                    customer_id=customer_id,
                    chat_id=chat_id,
                )
            )

        if jobs:
            logger.info(
                "First-message flows claimed",
                extra={"tenant_id": tenant_id, "chat_id": chat_id, "flows": [job.flow_id for job in jobs]},
            )
        return jobs

    def _claim(self, tenant_id: str, flow_id: str, customer_id: str, chat_id: str) -> Optional[Dict[str, Any]]:
        try:
            created = (
                self.supabase.table("flow_executions")
                .insert(
                    {
                        "flow_id": flow_id,
                        "user_id": tenant_id,
                        "customer_id": customer_id,
                        "chat_id": chat_id,
                        "status": EXECUTION_PENDING,
                        "trigger_type": TRIGGER_FIRST_MESSAGE,
                        "created_at": to_iso(self.clock()),
                    }
                )
                .execute()
            )
        except APIError as e:
            if not is_unique_violation(e):
                raise
            return None
        return created.data[0]

    async def dispatch(self, job: FlowJob) -> bool:
        """
        Ask the flow executor to run a claimed flow.

        A failed call is logged and recorded on the execution, not raised.

        Returns:
            True when the executor accepted the request
        """
        headers = {"Content-Type": "application/json"}
        if settings.flow_executor_token:
            headers["Authorization"] = f"Bearer {settings.flow_executor_token}"
        try:
            await post_provider(
                "flows",
                settings.flow_executor_url or "",
                "execute-flow",
                {
                    "flowId": job.flow_id,
                    "executionId": job.execution_id,
                    "customerId": job.customer_id,
                    "chatId": job.chat_id,
                    "userId": job.tenant_id,
                    "triggerType": TRIGGER_FIRST_MESSAGE,
                },
                headers,
            )
        except ProviderError as e:
            logger.error(
                "Flow execution request failed",
                extra={"tenant_id": job.tenant_id, "flow_id": job.flow_id, "error": str(e)},
            )
            self.supabase.table("flow_executions").update(
                {
                    "status": EXECUTION_FAILED,
                    "error_message": str(e)[:500],
                    "completed_at": to_iso(self.clock()),
                }
            ).eq("id", job.execution_id).execute()
            return False

        logger.info(
            "Flow execution requested",
            extra={"tenant_id": job.tenant_id, "flow_id": job.flow_id, "chat_id": job.chat_id},
        )
        return True
