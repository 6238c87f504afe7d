"""
WhatsApp provider clients.

Two transports are supported:

- Meta Cloud API: bearer-token auth, ``POST /{phone_number_id}/messages``.
- BSP (Evolution-style) gateway: ``apikey`` header auth,
  ``POST /message/sendText/{instance}`` and ``/message/sendMedia/{instance}``.

ChannelResolver picks the right client for a chat from the tenant's stored
credentials. Network errors are retried with tenacity; HTTP error statuses are
not retried and surface as ProviderError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx
from supabase import Client
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings
from ..exceptions import ChannelNotConfigured, ProviderError
from ..utils.logging import get_logger, log_api_call
from ..utils.phone import digits_only
from .normalizer import META_INSTANCE_PREFIX, meta_instance_name

logger = get_logger(__name__)

SEND_TIMEOUT = httpx.Timeout(15.0)


@retry(
    retry=retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    before_sleep=before_sleep_log(logger, logging.INFO),
    reraise=True,
)
async def _post_json(
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: httpx.Timeout = SEND_TIMEOUT,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout) as client:
        return await client.post(url, json=payload, headers=headers)


async def post_provider(
    provider: str,
    url: str,
    endpoint: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> Dict[str, Any]:
    """
    POST to a provider API and return the decoded JSON body.

    Args:
        provider: "meta" or "bsp", for logging and errors
        url: Full request URL
        endpoint: URL path without host or credentials, for logging
        payload: JSON body
        headers: Auth headers

    Returns:
        Decoded response body (empty dict when the body is not JSON)

    Raises:
        ProviderError: On network failure after retries or a non-2xx status
    """
    start = time.monotonic()
    try:
        response = await _post_json(url, payload, headers)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        log_api_call(
            service=provider,
            endpoint=endpoint,
            method="POST",
            status_code=e.response.status_code,
            duration_ms=(time.monotonic() - start) * 1000,
            error_type="HTTPStatusError",
        )
        logger.error(
            "Provider API returned error status",
            extra={
                "provider": provider,
                "status_code": e.response.status_code,
                "response": e.response.text[:500],
            },
        )
        raise ProviderError(
            provider, f"HTTP {e.response.status_code}", status_code=e.response.status_code
        ) from e
    except httpx.RequestError as e:
        log_api_call(
            service=provider,
            endpoint=endpoint,
            method="POST",
            status_code=0,
            duration_ms=(time.monotonic() - start) * 1000,
            error_type=type(e).__name__,
        )
        logger.error(
            "Provider API unreachable",
            extra={"provider": provider, "error": str(e)},
            exc_info=True,
        )
        raise ProviderError(provider, f"request failed: {e}") from e

    log_api_call(
        service=provider,
        endpoint=endpoint,
        method="POST",
        status_code=response.status_code,
        duration_ms=(time.monotonic() - start) * 1000,
    )
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


class MetaCloudClient:
    """Sends messages through the Meta WhatsApp Cloud API."""

    provider = "meta"

    def __init__(self, phone_number_id: str, access_token: str) -> None:
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.base_url = settings.meta_graph_base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _send(self, payload: Dict[str, Any]) -> Optional[str]:
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        data = await post_provider(
            self.provider,
            url,
            f"/{self.phone_number_id}/messages",
            {"messaging_product": "whatsapp", "recipient_type": "individual", **payload},
            self._headers(),
        )
        messages = data.get("messages") or [{}]
        return messages[0].get("id")

    async def send_text(self, to: str, text: str) -> Optional[str]:
        """
        Send a text message.

        Returns:
            The provider message id (``wamid...``), if the API returned one
        """
        return await self._send(
            {"to": digits_only(to), "type": "text", "text": {"preview_url": True, "body": text}}
        )

    async def send_media(
        self,
        to: str,
        kind: str,
        link: str,
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[str]:
        """Send an image, video, audio or document by public URL."""
        media: Dict[str, Any] = {"link": link}
        if caption and kind != "audio":
            media["caption"] = caption
        if filename and kind == "document":
            media["filename"] = filename
        return await self._send({"to": digits_only(to), "type": kind, kind: media})


class BspClient:
    """Sends messages through a BSP gateway instance."""

    provider = "bsp"

    def __init__(self, api_url: str, api_key: str, instance_name: str) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name

    def _headers(self) -> Dict[str, str]:
        return {"apikey": self.api_key, "Content-Type": "application/json"}

    async def _send(self, action: str, payload: Dict[str, Any]) -> Optional[str]:
        endpoint = f"/message/{action}/{self.instance_name}"
        data = await post_provider(
            self.provider, f"{self.api_url}{endpoint}", endpoint, payload, self._headers()
        )
        return (data.get("key") or {}).get("id")

    async def send_text(self, to: str, text: str) -> Optional[str]:
        return await self._send("sendText", {"number": digits_only(to), "text": text})

    async def send_media(
        self,
        to: str,
        kind: str,
        link: str,
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[str]:
        payload: Dict[str, Any] = {
            "number": digits_only(to),
            "mediatype": kind,
            "media": link,
        }
        if caption:
            payload["caption"] = caption
        if filename:
            payload["fileName"] = filename
        return await self._send("sendMedia", payload)


ProviderClient = Union[MetaCloudClient, BspClient]


@dataclass
class ChannelCredentials:
    """Credentials of one connected WhatsApp number."""

    kind: str
    instance_name: str
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None
    access_token: Optional[str] = None
    api_url: Optional[str] = None
    api_key: Optional[str] = None

    def client(self) -> ProviderClient:
        if self.kind == "meta":
            return MetaCloudClient(self.phone_number_id or "", self.access_token or "")
        return BspClient(self.api_url or "", self.api_key or "", self.instance_name)


class ChannelResolver:
    """Looks up a tenant's provider credentials."""

    def __init__(self, supabase: Client) -> None:
        self.supabase = supabase

    def _meta(self, row: Dict[str, Any]) -> ChannelCredentials:
        return ChannelCredentials(
            kind="meta",
            instance_name=meta_instance_name(row["phone_number_id"]),
            phone_number_id=str(row["phone_number_id"]),
            display_phone_number=row.get("display_phone_number"),
            access_token=row.get("access_token"),
        )

    def _bsp(self, row: Dict[str, Any]) -> ChannelCredentials:
        return ChannelCredentials(
            kind="bsp",
            instance_name=row["instance_name"],
            api_url=row.get("api_url"),
            api_key=row.get("api_key"),
        )

    def _first(self, query: Any) -> Optional[Dict[str, Any]]:
        response = query.limit(1).execute()
        return response.data[0] if response.data else None

    async def resolve(
        self,
        tenant_id: str,
        instance_name: Optional[str] = None,
    ) -> ChannelCredentials:
        """
        Find credentials for a chat's channel instance.

        ``meta_<phone_number_id>`` instances use the matching Meta credentials.
        Other instance names match BSP credentials. Without an instance, or
        when the instance is no longer configured, the tenant's most recent
        Meta number is used, then its default BSP instance.

        Raises:
            ChannelNotConfigured: If the tenant has no usable credentials
        """
        meta_table = self.supabase.table("whatsapp_meta_credentials")
        bsp_table = self.supabase.table("whatsapp_bsp_credentials")

        if instance_name and instance_name.startswith(META_INSTANCE_PREFIX):
            phone_number_id = instance_name[len(META_INSTANCE_PREFIX):]
            row = self._first(
                meta_table.select("*")
                .eq("user_id", tenant_id)
                .eq("phone_number_id", phone_number_id)
            )
            if row:
                return self._meta(row)
        elif instance_name:
            row = self._first(
                bsp_table.select("*").eq("user_id", tenant_id).eq("instance_name", instance_name)
            )
            if row:
                return self._bsp(row)

        row = self._first(
            self.supabase.table("whatsapp_meta_credentials")
            .select("*")
            .eq("user_id", tenant_id)
            .order("created_at", desc=True)
        )
        if row:
            return self._meta(row)

        row = self._first(
            self.supabase.table("whatsapp_bsp_credentials")
            .select("*")
            .eq("user_id", tenant_id)
            .order("is_default", desc=True)
        )
        if row:
            return self._bsp(row)

        logger.warning(
            "No WhatsApp credentials for tenant",
            extra={"tenant_id": tenant_id, "instance_name": instance_name},
        )
        raise ChannelNotConfigured(tenant_id, instance_name)

    async def client_for(
        self,
        tenant_id: str,
        instance_name: Optional[str] = None,
    ) -> ProviderClient:
        credentials = await self.resolve(tenant_id, instance_name)
        return credentials.client()

    async def verify_token_matches(self, token: str, tenant_id: Optional[str] = None) -> bool:
        """
        Check a Meta ``hub.verify_token`` against stored credentials.

        Args:
            token: Token from the verification request
            tenant_id: Restrict the match to one tenant's numbers

        Returns:
            True when a credential row carries the token
        """
        if not token:
            return False
        query = (
            self.supabase.table("whatsapp_meta_credentials")
            .select("user_id")
            .eq("verify_token", token)
        )
        if tenant_id:
            query = query.eq("user_id", tenant_id)
        return self._first(query) is not None
