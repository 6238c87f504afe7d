"""
Background media fetcher.

Runs after the webhook response has been sent (FastAPI BackgroundTasks). For
each pending media message it:

1. resolves the provider handle to bytes (Meta: look up the download URL,
   then fetch it with the bearer token; BSP: request a base64 payload);
2. uploads the bytes to Supabase Storage under
   ``{tenant}/{chat}/{type}/{provider id}.{ext}``;
3. writes the public URL onto the message and its buffer entry;
4. flushes the media turn to the agent.

Any failure leaves the error placeholder "[could not process <type>]" on the
message instead of a permanent "pending".
"""

import base64
import binascii
import logging
import mimetypes
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

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
from ..exceptions import ProviderError
from ..schemas import MediaReference
from ..utils.logging import get_logger, log_api_call
from .buffer import MEDIA_FAILED, MEDIA_READY, GroupingBuffer
from .messages import MessageLog, media_error_placeholder
from .whatsapp import ChannelCredentials, ChannelResolver

logger = get_logger(__name__)

FETCH_TIMEOUT = httpx.Timeout(30.0)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}
_DEFAULT_EXTENSIONS = {
    "image": "jpg",
    "audio": "ogg",
    "video": "mp4",
    "document": "bin",
}
_DEFAULT_MIME = {
    "image": "image/jpeg",
    "audio": "audio/ogg",
    "video": "video/mp4",
    "document": "application/octet-stream",
}
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def extension_for(mime_type: Optional[str], message_type: str) -> str:
    """
    File extension for a mime type, falling back to the message type default.

    Examples:
        >>> extension_for("audio/ogg; codecs=opus", "audio")
        'ogg'
        >>> extension_for(None, "image")
        'jpg'
    """
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    if base in _EXTENSIONS:
        return _EXTENSIONS[base]
    guessed = mimetypes.guess_extension(base) if base else None
    if guessed:
        return guessed.lstrip(".")
    return _DEFAULT_EXTENSIONS.get(message_type, "bin")


def storage_path(
    tenant_id: str,
    chat_id: str,
    message_type: str,
    provider_message_id: Optional[str],
    extension: str,
) -> str:
    name = _UNSAFE_PATH_CHARS.sub("_", provider_message_id or uuid.uuid4().hex)
    return f"{tenant_id}/{chat_id}/{message_type}/{name}.{extension}"


@dataclass
class MediaJob:
    """A media message waiting to be resolved."""

    tenant_id: str
    chat_id: str
    instance_name: Optional[str]
    message_id: str
    entry_id: str
    group_id: str
    provider_message_id: Optional[str]
    message_type: str
    media: MediaReference


@retry(
    retry=retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    before_sleep=before_sleep_log(logger, logging.INFO),
    reraise=True,
)
async def _request(
    method: str,
    url: str,
    headers: Dict[str, str],
    json: Optional[Dict[str, Any]] = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=FETCH_TIMEOUT, follow_redirects=True) as client:
        return await client.request(method, url, headers=headers, json=json)


async def _checked(provider: str, endpoint: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    start = time.monotonic()
    try:
        response = await _request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        log_api_call(
            service=provider,
            endpoint=endpoint,
            method=method,
            status_code=e.response.status_code,
            duration_ms=(time.monotonic() - start) * 1000,
            error_type="HTTPStatusError",
        )
        raise ProviderError(
            provider, f"media HTTP {e.response.status_code}", status_code=e.response.status_code
        ) from e
    except httpx.RequestError as e:
        raise ProviderError(provider, f"media request failed: {e}") from e

    log_api_call(
        service=provider,
        endpoint=endpoint,
        method=method,
        status_code=response.status_code,
        duration_ms=(time.monotonic() - start) * 1000,
    )
    return response


class MetaMediaSource:
    """Two-step download: media id -> short-lived URL -> bytes."""

    def __init__(self, access_token: str) -> None:
        self.access_token = access_token
        self.base_url = settings.meta_graph_base_url.rstrip("/")

    async def fetch(self, media: MediaReference) -> Tuple[bytes, Optional[str]]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        lookup = await _checked(
            "meta", "/{media_id}", "GET", f"{self.base_url}/{media.handle}", headers=headers
        )
        info = lookup.json()
        download_url = info.get("url")
        if not download_url:
            raise ProviderError("meta", "media lookup returned no url")

        download = await _checked("meta", "/media/download", "GET", download_url, headers=headers)
        return download.content, info.get("mime_type") or media.mime_type


class BspMediaSource:
    """Asks the BSP instance to decrypt the media and return it as base64."""

    def __init__(self, api_url: str, api_key: str, instance_name: str) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name

    async def fetch(self, media: MediaReference) -> Tuple[bytes, Optional[str]]:
        endpoint = f"/chat/getBase64FromMediaMessage/{self.instance_name}"
        response = await _checked(
            "bsp",
            endpoint,
            "POST",
            f"{self.api_url}{endpoint}",
            headers={"apikey": self.api_key, "Content-Type": "application/json"},
            json={"message": {"key": {"id": media.handle}}, "convertToMp4": False},
        )
        body = response.json()
        if isinstance(body, list):
            body = body[0] if body else {}
        encoded = body.get("base64") or body.get("data")
        if not encoded or not isinstance(encoded, str):
            raise ProviderError("bsp", "media response carried no base64 payload")

        mime_type = body.get("mimetype") or media.mime_type
        if encoded.startswith("data:"):
            header, _, encoded = encoded.partition(",")
            mime_type = mime_type or header[5:].split(";", 1)[0]
        try:
            return base64.b64decode(encoded, validate=False), mime_type
        except (binascii.Error, ValueError) as e:
            raise ProviderError("bsp", f"invalid base64 media: {e}") from e


def source_for(credentials: ChannelCredentials) -> Any:
    if credentials.kind == "meta":
        return MetaMediaSource(credentials.access_token or "")
    return BspMediaSource(
        credentials.api_url or "", credentials.api_key or "", credentials.instance_name
    )


class MediaFetcher:
    """Resolves pending media and flushes the media turn."""

    def __init__(
        self,
        supabase: Client,
        channels: ChannelResolver,
        messages: MessageLog,
        buffer: GroupingBuffer,
        bucket: Optional[str] = None,
    ) -> None:
        self.supabase = supabase
        self.channels = channels
        self.messages = messages
        self.buffer = buffer
        self.bucket = bucket or settings.media_bucket

    def _upload(self, job: MediaJob, data: bytes, mime_type: str) -> str:
        path = storage_path(
            job.tenant_id,
            job.chat_id,
            job.message_type,
            job.provider_message_id,
            extension_for(mime_type, job.message_type),
        )
        bucket = self.supabase.storage.from_(self.bucket)
        bucket.upload(path, data, {"content-type": mime_type, "upsert": "true"})
        return bucket.get_public_url(path)

    async def process(self, job: MediaJob) -> Optional[str]:
        """
        Resolve one media message end to end.

        Never raises; the outcome is recorded on the message.

        Returns:
            The public URL, or None when the media could not be processed
        """
        url: Optional[str] = None
        mime_type = job.media.mime_type or _DEFAULT_MIME.get(job.message_type)
        try:
            credentials = await self.channels.resolve(job.tenant_id, job.instance_name)
            data, fetched_mime = await source_for(credentials).fetch(job.media)
            if not data:
                raise ProviderError(credentials.kind, "empty media payload")
            mime_type = fetched_mime or mime_type or "application/octet-stream"
            url = self._upload(job, data, mime_type)
        except Exception as e:
            logger.error(
                "Media processing failed",
                extra={
                    "tenant_id": job.tenant_id,
                    "message_id": job.message_id,
                    "message_type": job.message_type,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self._record(job, MEDIA_FAILED, None, mime_type)
        else:
            await self._record(job, MEDIA_READY, url, mime_type)
            logger.info(
                "Media stored",
                extra={
                    "tenant_id": job.tenant_id,
                    "message_id": job.message_id,
                    "message_type": job.message_type,
                    "size_bytes": len(data),
                },
            )

        try:
            await self.buffer.flush_group(job.group_id, force=True)
        except Exception as e:
            # The sweeper flushes the group once its media timeout passes
            logger.error(
                "Flush after media failed",
                extra={"group_id": job.group_id, "error": str(e)},
                exc_info=True,
            )
        return url

    async def _record(
        self,
        job: MediaJob,
        status: str,
        url: Optional[str],
        mime_type: Optional[str],
    ) -> None:
        message = await self.messages.get(job.message_id)
        metadata = {
            **((message or {}).get("metadata") or {}),
            "media_status": status,
            "media_url": url,
            "mime_type": mime_type,
        }
        content = media_error_placeholder(job.message_type) if status == MEDIA_FAILED else None
        await self.messages.update_media(job.message_id, metadata, content=content)
        await self.buffer.update_entry_media(job.entry_id, status, media_url=url, content=content)
