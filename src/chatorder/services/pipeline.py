"""
Inbound ingestion pipeline.

Wires the components together for each webhook delivery:

    normalize -> (outbound echo? -> Manual-Reply Detector)
              -> ensure customer/chat -> idempotency check -> resolve quote
              -> persist message -> buffer (text) or media turn + fetch job
              -> touch chat -> claim first-message automation flows

Messages are processed independently; a failure on one is logged and counted
but never fails the delivery, because providers answer a non-2xx with retries.
Media downloads (MediaJob) and claimed automation flows (FlowJob) are
returned for the router to run as background tasks after the response is sent.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..config import settings
from ..schemas import ChannelRef, NormalizedPayload, TenantConfig
from ..utils.clock import Clock, utc_now
from ..utils.logging import get_logger, log_error
from .agent import AgentBridge, AgentResponseHandler
from .automation import FlowJob, FlowTrigger
from .buffer import MEDIA_NONE, MEDIA_PENDING, GroupingBuffer
from .directory import CustomerDirectory, is_unique_violation
from .idempotency import is_duplicate
from .manual_reply import OUTBOUND_MANUAL, ManualReplyDetector
from .media import MediaFetcher, MediaJob
from .messages import SENDER_CUSTOMER, STATUS_RECEIVED, MessageLog
from .normalizer import normalize_bsp_payload, normalize_meta_payload, resolve_quote
from .orders import OrderMaterializer
from .outbound import OutboundSender
from .reactivation import reactivate_agents
from .scheduler import FlushScheduler
from .side_effects import SideEffectRunner
from .tenants import TenantResolver
from .whatsapp import ChannelResolver

logger = get_logger(__name__)


@dataclass
class IngestResult:
    """Counters for one webhook delivery, returned in the response body."""

    processed: int = 0
    duplicates: int = 0
    ignored: int = 0
    manual_replies: int = 0
    echoes: int = 0
    statuses: int = 0
    failed: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)
    media_jobs: List[MediaJob] = field(default_factory=list)
    flow_jobs: List[FlowJob] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "ignored": self.ignored,
            "manual_replies": self.manual_replies,
            "echoes": self.echoes,
            "statuses": self.statuses,
            "failed": self.failed,
            "messages": self.messages,
        }


class IngestionPipeline:
    """Per-process container for the pipeline components."""

    def __init__(
        self,
        supabase: Client,
        tenants: TenantResolver,
        directory: CustomerDirectory,
        messages: MessageLog,
        channels: ChannelResolver,
        buffer: GroupingBuffer,
        manual_replies: ManualReplyDetector,
        media: MediaFetcher,
        agent_responses: AgentResponseHandler,
        scheduler: FlushScheduler,
        flows: FlowTrigger,
        clock: Clock = utc_now,
    ) -> None:
        self.supabase = supabase
        self.tenants = tenants
        self.directory = directory
        self.messages = messages
        self.channels = channels
        self.buffer = buffer
        self.manual_replies = manual_replies
        self.media = media
        self.agent_responses = agent_responses
        self.scheduler = scheduler
        self.flows = flows
        self.clock = clock

    # -- entry points -------------------------------------------------------

    async def handle_bsp(self, tenant_id: str, payload: Dict[str, Any]) -> IngestResult:
        """Ingest one BSP webhook delivery for an already resolved tenant."""
        normalized = normalize_bsp_payload(payload)
        result = IngestResult(ignored=normalized.skipped)
        if not normalized.messages:
            return result
        config = await self.tenants.load_config(tenant_id)
        await self._ingest_payload(tenant_id, config, normalized, result)
        return result

    async def handle_meta(self, tenant_id: Optional[str], payload: Dict[str, Any]) -> IngestResult:
        """
        Ingest one Meta Cloud API webhook delivery.

        Args:
            tenant_id: Tenant from the URL; None to resolve each change by the
                ``phone_number_id`` it arrived on
            payload: Raw webhook JSON

        Raises:
            TenantNotFound: If no tenant was given and a phone_number_id is
                unknown
        """
        result = IngestResult()
        configs: Dict[str, TenantConfig] = {}
        for normalized in normalize_meta_payload(payload):
            result.ignored += normalized.skipped
            if not normalized.messages and not normalized.statuses:
                continue
            owner = tenant_id or await self.tenants.resolve_by_phone_number_id(
                normalized.channel.phone_number_id
            )
            if owner not in configs:
                configs[owner] = await self.tenants.load_config(owner)
            config = configs[owner]

            await self._ingest_payload(owner, config, normalized, result)
            for status in normalized.statuses:
                try:
                    await self.manual_replies.handle_status(owner, config, status, normalized.channel)
                    result.statuses += 1
                except Exception as e:
                    result.failed += 1
                    logger.error(
                        "Status callback handling failed",
                        extra={"tenant_id": owner, "error_type": type(e).__name__, "error": str(e)},
                        exc_info=True,
                    )
        return result

    async def sweep(self) -> Dict[str, Any]:
        """Run one flush sweep (cron hook)."""
        outcomes = await self.buffer.flush_due()
        return {
            "success": True,
            "flushed": len(outcomes),
            "invoked": sum(1 for outcome in outcomes if outcome.invoked),
            "groups": [outcome.group_id for outcome in outcomes],
        }

    async def reactivate(self) -> Dict[str, Any]:
        return {"success": True, **await reactivate_agents(self.supabase, self.clock)}

    # -- per message --------------------------------------------------------

    async def _ingest_payload(
        self,
        tenant_id: str,
        config: TenantConfig,
        normalized: NormalizedPayload,
        result: IngestResult,
    ) -> None:
        for message in normalized.messages:
            try:
                await self._ingest_message(tenant_id, config, normalized.channel, message, result)
            except Exception as e:
                result.failed += 1
                log_error(
                    logger,
                    e,
                    {
                        "tenant_id": tenant_id,
                        "provider_message_id": message.provider_message_id,
                        "customer_phone": message.customer_phone,
                    },
                )

    async def _ingest_message(
        self,
        tenant_id: str,
        config: TenantConfig,
        channel: ChannelRef,
        message: Any,
        result: IngestResult,
    ) -> None:
        if message.from_business:
            customer = await self.directory.ensure_customer(tenant_id, message.customer_phone)
            chat = await self.directory.ensure_chat(tenant_id, customer, channel.instance_name)
            outcome = await self.manual_replies.handle_outbound_message(
                config, customer, chat, message
            )
            if outcome.kind == OUTBOUND_MANUAL:
                result.manual_replies += 1
            else:
                result.echoes += 1
            return

        customer = await self.directory.ensure_customer(
            tenant_id, message.customer_phone, message.display_name
        )
        chat = await self.directory.ensure_chat(tenant_id, customer, channel.instance_name)

        provider_id = message.provider_message_id
        if await is_duplicate(self.supabase, tenant_id, chat["id"], provider_id):
            result.duplicates += 1
            return

        quote: Optional[Dict[str, Any]] = None
        if message.quoted is not None:
            resolved = await resolve_quote(
                self.supabase, chat["id"], message.quoted, message.sender_phone
            )
            quote = resolved.model_dump()

        media_status = MEDIA_PENDING if message.is_media else MEDIA_NONE
        metadata: Dict[str, Any] = {
            "provider": channel.kind,
            "instance_name": channel.instance_name,
            "media_status": media_status,
        }
        if quote is not None:
            metadata["quoted_message"] = quote
        if message.is_media:
            metadata["mime_type"] = message.media.mime_type
            metadata["media_url"] = None

        try:
            row = await self.messages.insert(
                chat_id=chat["id"],
                content=message.content,
                sender_type=SENDER_CUSTOMER,
                message_type=message.message_type,
                provider_message_id=provider_id,
                status=STATUS_RECEIVED,
                metadata=metadata,
                created_at=message.timestamp,
            )
        except APIError as e:
            if not is_unique_violation(e):
                raise
            # Concurrent retry of the same delivery won the insert
            result.duplicates += 1
            return

        if message.is_media:
            queued = await self.buffer.open_media_turn(
                tenant_id, customer["id"], chat["id"], row, provider_id, quote
            )
            result.media_jobs.append(
                MediaJob(
                    tenant_id=tenant_id,
                    chat_id=chat["id"],
                    instance_name=channel.instance_name,
                    message_id=row["id"],
                    entry_id=queued.entry_id,
                    group_id=queued.group_id,
                    provider_message_id=provider_id,
                    message_type=message.message_type,
                    media=message.media,
                )
            )
        else:
            await self.buffer.append_text(
                tenant_id,
                config.buffer_seconds,
                customer["id"],
                chat["id"],
                row,
                provider_id,
                quote,
            )

        await self.directory.touch_chat(chat["id"])
        result.processed += 1
        await self._start_first_message_flows(tenant_id, customer["id"], chat["id"], row["id"], result)
        result.messages.append(
            {"message_id": row["id"], "type": message.message_type, "media_status": media_status}
        )

    async def _start_first_message_flows(
        self,
        tenant_id: str,
        customer_id: str,
        chat_id: str,
        message_id: str,
        result: IngestResult,
    ) -> None:
        """Claim first-message flows; the message is already stored and buffered."""
        try:
            if await self.flows.is_first_message(chat_id, message_id):
                result.flow_jobs.extend(
                    await self.flows.claim_first_message_flows(tenant_id, customer_id, chat_id)
                )
        except Exception as e:
            logger.warning(
                "First-message flows not started",
                extra={"tenant_id": tenant_id, "chat_id": chat_id, "error": str(e)},
                exc_info=True,
            )

def build_pipeline(supabase: Client, clock: Clock = utc_now) -> IngestionPipeline:
    """
    Build the pipeline and its scheduler for one process.

    The scheduler is returned unstarted; the application lifespan starts it.
    """
    scheduler = FlushScheduler(enabled=settings.scheduler_enabled)
    tenants = TenantResolver(supabase)
    directory = CustomerDirectory(supabase, clock)
    messages = MessageLog(supabase, clock)
    channels = ChannelResolver(supabase)
    outbound = OutboundSender(messages, channels, directory)
    bridge = AgentBridge(supabase, directory, outbound, clock)
    buffer = GroupingBuffer(supabase, tenants, bridge, messages, scheduler, clock)
    orders = OrderMaterializer(
        supabase, tenants, directory, SideEffectRunner(supabase, directory, outbound), clock
    )

    scheduler.bind(buffer.flush_group)
    scheduler.add_periodic("flush-sweep", buffer.flush_due, settings.flush_sweep_interval_seconds)
    scheduler.add_periodic(
        "agent-reactivation",
        lambda: reactivate_agents(supabase, clock),
        settings.reactivation_interval_seconds,
    )

    return IngestionPipeline(
        supabase=supabase,
        tenants=tenants,
        directory=directory,
        messages=messages,
        channels=channels,
        buffer=buffer,
        manual_replies=ManualReplyDetector(messages, directory, clock=clock),
        media=MediaFetcher(supabase, channels, messages, buffer),
        agent_responses=AgentResponseHandler(directory, outbound, orders),
        scheduler=scheduler,
        flows=FlowTrigger(supabase, clock),
        clock=clock,
    )
