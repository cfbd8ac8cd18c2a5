"""
Ingestion orchestrator: message listing and full-message assembly.

list_messages
    One page of ids, then metadata for each id fetched concurrently
    (at most METADATA_CONCURRENCY in flight). Results keep the provider's
    order. A message whose metadata fetch fails transiently is dropped from
    the page; revocation aborts the whole listing.

get_message
    Full message -> MIME walk -> content normalization -> attachment
    materialization -> frozen NormalizedEmail. Attachment failures only cost
    a downloadUrl; a failure fetching the message itself propagates.

get_attachment
    Re-materializes one attachment on demand, for when a signed URL from an
    earlier get_message has expired. Provider failures propagate; a storage
    failure raises AttachmentMaterializationError.
"""

import asyncio
import logging
from typing import Optional

from app.errors import AttachmentMaterializationError, TransientProviderError
from app.models.mail import (
    DEFAULT_MIME_TYPE,
    AttachmentDescriptor,
    MessagePage,
    MessageSummary,
    NormalizedEmail,
    RawMessagePart,
)
from app.services.attachment_materializer import materialize_attachment, materialize_attachments
from app.services.content_normalizer import normalize_content
from app.services.gmail_client import GmailClient
from app.services.mime_walker import walk_message

logger = logging.getLogger(__name__)

METADATA_CONCURRENCY = 5
DEFAULT_PAGE_SIZE = 50
UNREAD_LABEL = "UNREAD"


def _summary_from_metadata(message: dict) -> MessageSummary:
    payload = RawMessagePart.model_validate(message.get("payload") or {})
    labels = message.get("labelIds") or []
    return MessageSummary(
        id=message["id"],
        thread_id=message.get("threadId") or "",
        subject=payload.header("Subject"),
        from_=payload.header("From"),
        date=payload.header("Date"),
        snippet=message.get("snippet") or "",
        unread=UNREAD_LABEL in labels,
    )


class IngestionService:
    def __init__(self, gmail: GmailClient, metadata_concurrency: int = METADATA_CONCURRENCY):
        self._gmail = gmail
        self._metadata_concurrency = metadata_concurrency

    async def list_messages(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
    ) -> MessagePage:
        ids, next_page_token = await self._gmail.list_message_ids(page_size, page_token, query)
        semaphore = asyncio.Semaphore(self._metadata_concurrency)

        async def _fetch(message_id: str) -> Optional[MessageSummary]:
            async with semaphore:
                try:
                    metadata = await self._gmail.get_message_metadata(message_id)
                except TransientProviderError as e:
                    logger.warning(f"Dropping message {message_id} from list: {e}")
                    return None
            return _summary_from_metadata(metadata)

        summaries = await asyncio.gather(*(_fetch(mid) for mid in ids))
        return MessagePage(
            messages=[s for s in summaries if s is not None],
            next_page_token=next_page_token,
        )

    async def get_message(self, message_id: str, user_id: str) -> NormalizedEmail:
        message = await self._gmail.get_message(message_id)
        payload = RawMessagePart.model_validate(message.get("payload") or {})

        walked = walk_message(payload)
        content = normalize_content(walked.html, walked.text)
        attachments = await materialize_attachments(
            walked.attachments,
            message_id=message_id,
            user_id=user_id,
            fetch_data=self._gmail.get_attachment_data,
        )
        missing = sum(1 for a in attachments if a.download_url is None)
        if missing:
            logger.info(f"Message {message_id}: {missing} of {len(attachments)} attachment(s) without download URL")

        labels = message.get("labelIds") or []
        return NormalizedEmail(
            id=message.get("id") or message_id,
            thread_id=message.get("threadId") or "",
            subject=payload.header("Subject"),
            from_=payload.header("From"),
            to=payload.header("To"),
            date=payload.header("Date"),
            snippet=message.get("snippet") or "",
            content=content,
            attachments=tuple(attachments),
            labels=tuple(labels),
            unread=UNREAD_LABEL in labels,
        )

    async def get_attachment(
        self,
        message_id: str,
        attachment_id: str,
        user_id: str,
        filename: str,
        mime_type: str = DEFAULT_MIME_TYPE,
    ) -> AttachmentDescriptor:
        # Fetched up front so revocation and provider errors reach the caller
        # instead of being absorbed by the materializer.
        data = await self._gmail.get_attachment_data(message_id, attachment_id)

        async def _prefetched(_message_id: str, _attachment_id: str) -> str:
            return data

        descriptor = AttachmentDescriptor(
            filename=filename,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            provider_reference_id=attachment_id,
        )
        materialized = await materialize_attachment(
            descriptor,
            message_id=message_id,
            user_id=user_id,
            fetch_data=_prefetched,
        )
        if materialized.download_url is None:
            raise AttachmentMaterializationError(
                f"Attachment {attachment_id} of message {message_id} could not be stored"
            )
        return materialized
