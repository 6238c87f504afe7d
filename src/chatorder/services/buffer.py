"""
Grouping/debounce buffer.

Consecutive customer text messages are collected into one ``message_groups``
row per (tenant, customer) and handed to the agent as a single turn once the
customer has been quiet for the tenant's buffer window.

Group lifecycle::

    open ──(quiet window elapsed, claim)──> flushing ──> sent
      ^                                        │
      └── retry <──(agent call failed)─────────┘──> failed (attempts exhausted)

The timer is durable. Each append stores ``flush_after`` and a fresh
``flush_token`` on the group. A flush claims the group with a conditional
update (status open/retry, matching token), so a superseded timer, or a
sweeper racing a timer, finds nothing to claim. The in-process FlushScheduler
only shortens latency; the sweeper (``flush_due``) flushes anything a
restarted process forgot.

At most one *open* text group exists per (tenant, customer), enforced by a
partial unique index. Groups in ``retry`` are outside that index, so a failed
flush never blocks new messages from starting a fresh group.

Turns of one customer are delivered in ``created_at`` order. A group whose
customer still has an earlier group in ``retry`` or ``flushing`` is deferred
(left claimable); when the earlier group finishes, the next waiting group is
re-armed. Entries that miss their group (appended after the claim) move to a
rescue group that inherits the origin's ``created_at``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..config import settings
from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger
from .directory import is_unique_violation
from .messages import MessageLog, media_error_placeholder
from .tenants import TenantResolver

if TYPE_CHECKING:
    from .agent import AgentBridge
    from .scheduler import FlushScheduler

logger = get_logger(__name__)

GROUP_OPEN = "open"
GROUP_RETRY = "retry"
GROUP_FLUSHING = "flushing"
GROUP_SENT = "sent"
GROUP_FAILED = "failed"
CLAIMABLE = [GROUP_OPEN, GROUP_RETRY]

KIND_TEXT = "text"
KIND_MEDIA = "media"

MEDIA_NONE = "none"
MEDIA_PENDING = "pending"
MEDIA_READY = "ready"
MEDIA_FAILED = "failed"

_INSERT_ATTEMPTS = 5


def _new_token() -> str:
    return uuid.uuid4().hex


@dataclass
class QueuedEntry:
    """Where an accepted message landed in the buffer."""

    group_id: str
    entry_id: str
    sequence_number: int
    flush_token: Optional[str]
    flush_after: datetime
    armed: bool = True


@dataclass
class FlushOutcome:
    """Result of one flush attempt."""

    group_id: str
    status: str
    entries: int = 0
    invoked: bool = False
    reason: Optional[str] = None


class GroupingBuffer:
    """Appends messages to groups and flushes due groups to the agent bridge."""

    def __init__(
        self,
        supabase: Client,
        tenants: TenantResolver,
        bridge: "AgentBridge",
        messages: MessageLog,
        scheduler: Optional["FlushScheduler"] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.supabase = supabase
        self.tenants = tenants
        self.bridge = bridge
        self.messages = messages
        self.scheduler = scheduler
        self.clock = clock

    # -- appending ----------------------------------------------------------

    async def append_text(
        self,
        tenant_id: str,
        buffer_seconds: float,
        customer_id: str,
        chat_id: str,
        message_row: Dict[str, Any],
        provider_message_id: Optional[str],
        quoted: Optional[Dict[str, Any]] = None,
    ) -> QueuedEntry:
        """
        Append a text message to the customer's open group and re-arm its timer.

        Args:
            tenant_id: Tenant id
            buffer_seconds: Tenant's quiet window
            customer_id: Customer the group belongs to
            chat_id: Chat the reply will go to
            message_row: The persisted ``messages`` row
            provider_message_id: Provider id, kept on the entry for idempotency
            quoted: Resolved quote, if the message was a reply

        Returns:
            QueuedEntry describing the group, sequence and armed timer
        """
        group = await self._open_text_group(tenant_id, customer_id, chat_id)
        entry = await self._insert_entry(
            group,
            message_row,
            provider_message_id,
            media_status=MEDIA_NONE,
            quoted=quoted,
        )

        now = self.clock()
        flush_after = now + timedelta(seconds=buffer_seconds)
        token = _new_token()
        response = (
            self.supabase.table("message_groups")
            .update(
                {
                    "flush_after": to_iso(flush_after),
                    "flush_token": token,
                    "last_message_at": to_iso(now),
                }
            )
            .eq("id", group["id"])
            .eq("status", GROUP_OPEN)
            .execute()
        )

        if not response.data:
            return await self._place_late_entry(group, entry, now)

        self._arm(group["id"], token, buffer_seconds)
        logger.info(
            "Message buffered",
            extra={
                "tenant_id": tenant_id,
                "group_id": group["id"],
                "sequence_number": entry["sequence_number"],
                "buffer_seconds": buffer_seconds,
            },
        )
        return QueuedEntry(
            group_id=group["id"],
            entry_id=entry["id"],
            sequence_number=entry["sequence_number"],
            flush_token=token,
            flush_after=flush_after,
        )

    async def _place_late_entry(
        self,
        group: Dict[str, Any],
        entry: Dict[str, Any],
        now: datetime,
    ) -> QueuedEntry:
        """
        Make sure an entry whose group was claimed before the re-arm is delivered.

        A group that is still flushing or waiting to retry reads the entry
        itself: leftovers are rescued once its flush ends, and a retry reads
        every unsent entry. A group that is already closed is never read
        again, so the entry moves to a rescue group of its own.
        """
        response = (
            self.supabase.table("message_groups")
            .select("status")
            .eq("id", group["id"])
            .limit(1)
            .execute()
        )
        status = response.data[0]["status"] if response.data else GROUP_SENT

        if status in (GROUP_SENT, GROUP_FAILED):
            rescue = await self._rescue_entries(group, [entry])
            if rescue is not None:
                return QueuedEntry(
                    group_id=rescue["id"],
                    entry_id=entry["id"],
                    sequence_number=entry["sequence_number"],
                    flush_token=rescue["flush_token"],
                    flush_after=now,
                )

        logger.info(
            "Group closed while appending; entry left to its flush",
            extra={"group_id": group["id"], "entry_id": entry["id"], "status": status},
        )
        return QueuedEntry(
            group_id=group["id"],
            entry_id=entry["id"],
            sequence_number=entry["sequence_number"],
            flush_token=None,
            flush_after=now,
            armed=False,
        )

    async def open_media_turn(
        self,
        tenant_id: str,
        customer_id: str,
        chat_id: str,
        message_row: Dict[str, Any],
        provider_message_id: Optional[str],
        quoted: Optional[Dict[str, Any]] = None,
    ) -> QueuedEntry:
        """
        Create a single-member group for a media message.

        Media bypasses the debounce window. No timer is armed: the media
        fetcher flushes the group as soon as the file is resolved. The group's
        ``flush_after`` is the media timeout, after which the sweeper flushes
        it with an error placeholder.
        """
        now = self.clock()
        flush_after = now + timedelta(seconds=settings.media_timeout_seconds)
        token = _new_token()
        response = (
            self.supabase.table("message_groups")
            .insert(
                {
                    "user_id": tenant_id,
                    "customer_id": customer_id,
                    "chat_id": chat_id,
                    "kind": KIND_MEDIA,
                    "status": GROUP_OPEN,
                    "flush_after": to_iso(flush_after),
                    "flush_token": token,
                    "last_message_at": to_iso(now),
                    "created_at": to_iso(now),
                    "attempts": 0,
                    "usage_recorded": False,
                }
            )
            .execute()
        )
        group = response.data[0]
        entry = await self._insert_entry(
            group,
            message_row,
            provider_message_id,
            media_status=MEDIA_PENDING,
            quoted=quoted,
        )
        logger.info(
            "Media turn opened",
            extra={
                "tenant_id": tenant_id,
                "group_id": group["id"],
                "message_type": message_row.get("message_type"),
            },
        )
        return QueuedEntry(
            group_id=group["id"],
            entry_id=entry["id"],
            sequence_number=entry["sequence_number"],
            flush_token=token,
            flush_after=flush_after,
            armed=False,
        )

    async def update_entry_media(
        self,
        entry_id: str,
        media_status: str,
        media_url: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        updates: Dict[str, Any] = {"media_status": media_status}
        if media_url is not None:
            updates["media_url"] = media_url
        if content is not None:
            updates["content"] = content
        self.supabase.table("message_queue").update(updates).eq("id", entry_id).eq(
            "sent", False
        ).execute()

    async def _open_text_group(
        self,
        tenant_id: str,
        customer_id: str,
        chat_id: str,
    ) -> Dict[str, Any]:
        """
        Find the customer's open text group, else create one.

        A concurrent creator loses on the partial unique index and re-reads
        the winner's group.
        """
        last_error: Optional[APIError] = None
        for _ in range(_INSERT_ATTEMPTS):
            response = (
                self.supabase.table("message_groups")
                .select("*")
                .eq("user_id", tenant_id)
                .eq("customer_id", customer_id)
                .eq("kind", KIND_TEXT)
                .eq("status", GROUP_OPEN)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
            if response.data:
                return response.data[0]

            now = self.clock()
            try:
                created = (
                    self.supabase.table("message_groups")
                    .insert(
                        {
                            "user_id": tenant_id,
                            "customer_id": customer_id,
                            "chat_id": chat_id,
                            "kind": KIND_TEXT,
                            "status": GROUP_OPEN,
                            "flush_after": to_iso(now),
                            "flush_token": _new_token(),
                            "last_message_at": to_iso(now),
                            "created_at": to_iso(now),
                            "attempts": 0,
                            "usage_recorded": False,
                        }
                    )
                    .execute()
                )
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                last_error = e
                logger.info(
                    "Open group created concurrently, re-reading",
                    extra={"tenant_id": tenant_id, "customer_id": customer_id},
                )
                continue

            group = created.data[0]
            logger.info(
                "Group opened",
                extra={"tenant_id": tenant_id, "group_id": group["id"]},
            )
            return group

        raise RuntimeError(
            f"no open group after {_INSERT_ATTEMPTS} attempts for customer {customer_id}"
        ) from last_error

    async def _insert_entry(
        self,
        group: Dict[str, Any],
        message_row: Dict[str, Any],
        provider_message_id: Optional[str],
        media_status: str,
        quoted: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Insert a queue entry with the group's next sequence number."""
        last_error: Optional[APIError] = None
        for _ in range(_INSERT_ATTEMPTS):
            response = (
                self.supabase.table("message_queue")
                .select("sequence_number")
                .eq("group_id", group["id"])
                .order("sequence_number", desc=True)
                .limit(1)
                .execute()
            )
            sequence = (response.data[0]["sequence_number"] + 1) if response.data else 1
            try:
                created = (
                    self.supabase.table("message_queue")
                    .insert(
                        {
                            "group_id": group["id"],
                            "user_id": group["user_id"],
                            "chat_id": message_row["chat_id"],
                            "message_id": message_row["id"],
                            "sequence_number": sequence,
                            "whatsapp_message_id": provider_message_id,
                            "message_type": message_row.get("message_type", "text"),
                            "content": message_row.get("content", ""),
                            "media_status": media_status,
                            "media_url": None,
                            "quoted": quoted,
                            "received_at": to_iso(self.clock()),
                            "sent": False,
                        }
                    )
                    .execute()
                )
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                last_error = e
                continue
            return created.data[0]

        raise RuntimeError(
            f"no free sequence number after {_INSERT_ATTEMPTS} attempts in group {group['id']}"
        ) from last_error

    def _arm(self, group_id: str, token: str, delay: float) -> None:
        if self.scheduler is not None:
            self.scheduler.arm(group_id, token, delay)

    # -- flushing -----------------------------------------------------------

    async def flush_group(
        self,
        group_id: str,
        token: Optional[str] = None,
        force: bool = False,
    ) -> FlushOutcome:
        """
        Claim a group and hand its entries to the agent bridge.

        Args:
            group_id: Group to flush
            token: Timer token. When given, the claim only succeeds if no newer
                message re-armed the group since.
            force: Skip the ``flush_after`` check (media resolved, operator
                request). Ignored when a token is given.

        Returns:
            FlushOutcome; status "skipped" when there was nothing to claim,
            "deferred" when an earlier group of the customer is still unsent
        """
        if await self._older_turn_pending(group_id):
            if force and not token:
                self.supabase.table("message_groups").update({"flush_after": to_iso(self.clock())}).eq(
                    "id", group_id
                ).in_("status", CLAIMABLE).execute()
            logger.debug(
                "Flush deferred: an earlier turn of this customer is still pending",
                extra={"group_id": group_id},
            )
            return FlushOutcome(group_id=group_id, status="deferred")

        now = self.clock()
        claim = (
            self.supabase.table("message_groups")
            .update({"status": GROUP_FLUSHING, "processing_started_at": to_iso(now)})
            .eq("id", group_id)
            .in_("status", CLAIMABLE)
        )
        if token:
            claim = claim.eq("flush_token", token)
        elif not force:
            claim = claim.lte("flush_after", to_iso(now))
        claimed = claim.execute().data

        if not claimed:
            logger.debug(
                "Flush skipped: group superseded or already claimed",
                extra={"group_id": group_id},
            )
            return FlushOutcome(group_id=group_id, status="skipped")

        group = claimed[0]
        entries = await self._unsent_entries(group_id)
        entries = await self._settle_pending_media(entries)

        if not entries:
            await self._finish(group, [], invoked=False, reason="empty")
            return FlushOutcome(group_id=group_id, status="empty")

        try:
            config = await self.tenants.load_config(group["user_id"])
            invocation = await self.bridge.invoke_group(config, group, entries)
        except Exception as e:
            return await self._record_failure(group, entries, e)

        await self._finish(group, entries, invoked=invocation.invoked, reason=invocation.reason)
        await self._rescue_leftovers(group, {entry["id"] for entry in entries})
        await self._arm_next_waiting(group)

        logger.info(
            "Group flushed",
            extra={
                "tenant_id": group["user_id"],
                "group_id": group_id,
                "entries": len(entries),
                "invoked": invocation.invoked,
                "reason": invocation.reason,
            },
        )
        return FlushOutcome(
            group_id=group_id,
            status=GROUP_SENT,
            entries=len(entries),
            invoked=invocation.invoked,
            reason=invocation.reason,
        )

    async def _unsent_entries(self, group_id: str) -> List[Dict[str, Any]]:
        response = (
            self.supabase.table("message_queue")
            .select("*")
            .eq("group_id", group_id)
            .eq("sent", False)
            .order("sequence_number")
            .order("received_at")
            .execute()
        )
        return response.data or []

    async def _settle_pending_media(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace still-pending media with the error placeholder before sending."""
        settled = []
        for entry in entries:
            if entry.get("media_status") != MEDIA_PENDING:
                settled.append(entry)
                continue
            placeholder = media_error_placeholder(entry.get("message_type") or "media")
            await self.update_entry_media(entry["id"], MEDIA_FAILED, content=placeholder)
            if entry.get("message_id"):
                message = await self.messages.get(entry["message_id"])
                metadata = {**((message or {}).get("metadata") or {}), "media_status": MEDIA_FAILED}
                await self.messages.update_media(entry["message_id"], metadata, content=placeholder)
            logger.warning(
                "Media still pending at flush; marked failed",
                extra={"entry_id": entry["id"], "group_id": entry["group_id"]},
            )
            settled.append({**entry, "media_status": MEDIA_FAILED, "content": placeholder})
        return settled

    async def _finish(
        self,
        group: Dict[str, Any],
        entries: List[Dict[str, Any]],
        invoked: bool,
        reason: Optional[str],
    ) -> None:
        now = to_iso(self.clock())
        if entries:
            self.supabase.table("message_queue").update({"sent": True}).in_(
                "id", [entry["id"] for entry in entries]
            ).execute()
        self.supabase.table("message_groups").update(
            {
                "status": GROUP_SENT,
                "sent_at": now,
                "outcome": "invoked" if invoked else (reason or "skipped"),
            }
        ).eq("id", group["id"]).execute()

    async def _rescue_leftovers(self, group: Dict[str, Any], flushed_ids: set) -> None:
        """
        Move entries appended after the claim into a new group.

        They are flushed as their own turn right away so they are never
        dropped or merged into an unrelated later group.
        """
        leftovers = [
            entry for entry in await self._unsent_entries(group["id"])
            if entry["id"] not in flushed_ids
        ]
        if leftovers:
            await self._rescue_entries(group, leftovers)

    async def _rescue_entries(
        self, group: Dict[str, Any], entries: List[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """
        Re-home unsent entries of a closed group into a fresh retry group.

        The move only takes entries still attached to ``group`` and unsent, so
        a flush and a late append racing to rescue the same entry cannot both
        win. The new group keeps the origin's ``created_at`` so it sorts ahead
        of any later turn of the same customer.

        Returns:
            The rescue group row, or None when another path moved the entries
        """
        now = self.clock()
        token = _new_token()
        created = (
            self.supabase.table("message_groups")
            .insert(
                {
                    "user_id": group["user_id"],
                    "customer_id": group["customer_id"],
                    "chat_id": group["chat_id"],
                    "kind": group.get("kind", KIND_TEXT),
                    "status": GROUP_RETRY,
                    "flush_after": to_iso(now),
                    "flush_token": token,
                    "last_message_at": to_iso(now),
                    "created_at": group.get("created_at") or to_iso(now),
                    "attempts": 0,
                    "usage_recorded": False,
                }
            )
            .execute()
        )
        rescue = created.data[0]
        moved = (
            self.supabase.table("message_queue")
            .update({"group_id": rescue["id"]})
            .in_("id", [entry["id"] for entry in entries])
            .eq("group_id", group["id"])
            .eq("sent", False)
            .execute()
        ).data
        if not moved:
            await self._finish(rescue, [], invoked=False, reason="empty")
            return None

        logger.info(
            "Late entries moved to rescue group",
            extra={
                "group_id": group["id"],
                "rescue_group_id": rescue["id"],
                "entries": len(moved),
            },
        )
        self._arm(rescue["id"], token, 0)
        return rescue

    async def _older_turn_pending(self, group_id: str) -> bool:
        """Whether an earlier group of the same customer is still being delivered."""
        found = (
            self.supabase.table("message_groups")
            .select("user_id, customer_id, created_at")
            .eq("id", group_id)
            .execute()
        ).data
        if not found or not found[0].get("created_at"):
            return False
        group = found[0]
        older = (
            self.supabase.table("message_groups")
            .select("id")
            .eq("user_id", group["user_id"])
            .eq("customer_id", group["customer_id"])
            .in_("status", [GROUP_RETRY, GROUP_FLUSHING])
            .lt("created_at", group["created_at"])
            .neq("id", group_id)
            .limit(1)
            .execute()
        ).data
        return bool(older)

    async def _arm_next_waiting(self, group: Dict[str, Any]) -> None:
        """Re-arm the next due group of the customer that waited on this one."""
        waiting = (
            self.supabase.table("message_groups")
            .select("id, flush_token")
            .eq("user_id", group["user_id"])
            .eq("customer_id", group["customer_id"])
            .in_("status", CLAIMABLE)
            .lte("flush_after", to_iso(self.clock()))
            .neq("id", group["id"])
            .order("created_at")
            .limit(1)
            .execute()
        ).data
        for row in waiting or []:
            self._arm(row["id"], row["flush_token"], 0)

    async def _record_failure(
        self,
        group: Dict[str, Any],
        entries: List[Dict[str, Any]],
        error: Exception,
    ) -> FlushOutcome:
        attempts = int(group.get("attempts") or 0) + 1
        error_text = f"{type(error).__name__}: {error}"[:500]

        if attempts >= settings.flush_max_attempts:
            self.supabase.table("message_groups").update(
                {"status": GROUP_FAILED, "attempts": attempts, "last_error": error_text}
            ).eq("id", group["id"]).execute()
            logger.error(
                "Group flush failed permanently",
                extra={
                    "tenant_id": group["user_id"],
                    "group_id": group["id"],
                    "attempts": attempts,
                    "entries": len(entries),
                    "error": error_text,
                },
            )
            await self._rescue_leftovers(group, {entry["id"] for entry in entries})
            await self._arm_next_waiting(group)
            return FlushOutcome(
                group_id=group["id"], status=GROUP_FAILED, entries=len(entries), reason=error_text
            )

        delay = settings.flush_retry_backoff_seconds * attempts
        token = _new_token()
        self.supabase.table("message_groups").update(
            {
                "status": GROUP_RETRY,
                "attempts": attempts,
                "last_error": error_text,
                "flush_token": token,
                "flush_after": to_iso(self.clock() + timedelta(seconds=delay)),
            }
        ).eq("id", group["id"]).execute()
        logger.warning(
            "Group flush failed; will retry",
            extra={
                "tenant_id": group["user_id"],
                "group_id": group["id"],
                "attempts": attempts,
                "retry_in_seconds": delay,
                "error": error_text,
            },
        )
        self._arm(group["id"], token, delay)
        return FlushOutcome(
            group_id=group["id"], status=GROUP_RETRY, entries=len(entries), reason=error_text
        )

    # -- sweeping -----------------------------------------------------------

    async def flush_due(self, limit: int = 50) -> List[FlushOutcome]:
        """
        Flush every group whose window has elapsed.

        Also returns abandoned ``flushing`` groups (process died mid-flush) to
        ``retry`` so they are picked up. Safe to run concurrently with timers
        and with other sweepers.

        Args:
            limit: Maximum groups flushed per sweep

        Returns:
            Outcomes of the groups this sweep claimed
        """
        now = self.clock()
        stale_cutoff = now - timedelta(seconds=settings.flush_lock_timeout_seconds)
        reclaimed = (
            self.supabase.table("message_groups")
            .update({"status": GROUP_RETRY, "flush_after": to_iso(now)})
            .eq("status", GROUP_FLUSHING)
            .lt("processing_started_at", to_iso(stale_cutoff))
            .execute()
        )
        if reclaimed.data:
            logger.warning(
                "Abandoned flushes reclaimed",
                extra={"groups": [row["id"] for row in reclaimed.data]},
            )

        due = (
            self.supabase.table("message_groups")
            .select("id, flush_token")
            .in_("status", CLAIMABLE)
            .lte("flush_after", to_iso(now))
            .order("created_at")
            .limit(limit)
            .execute()
        )

        outcomes = []
        for row in due.data or []:
            outcome = await self.flush_group(row["id"], token=row.get("flush_token"))
            if outcome.status not in ("skipped", "deferred"):
                outcomes.append(outcome)

        if outcomes:
            logger.info(
                "Sweep flushed groups",
                extra={"flushed": len(outcomes), "due": len(due.data or [])},
            )
        return outcomes
