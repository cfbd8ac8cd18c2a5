"""
MIME part tree walker.

Turns a Gmail ``payload`` (a RawMessagePart tree) into:
  - the concatenated text/html bodies,
  - the concatenated text/plain bodies,
  - the attachment manifest, in pre-order traversal order.

Classification per part:
  1. non-empty filename AND an attachmentId  -> attachment (leaf, no descent)
  2. inline body data                        -> decoded and appended to the
                                                html/plain accumulator by type;
                                                any other type is ignored
  3. children are visited in order whether or not step 2 produced content

The traversal uses an explicit stack instead of recursion and stops
descending at MAX_PART_DEPTH, so a pathological tree can neither blow the
interpreter stack nor make the walk unbounded. Child parts arrive as raw
dicts and are validated only when popped, so nothing ever walks the whole
tree recursively (pydantic included). A child that fails validation is
skipped and counted like a part beyond the depth limit.
"""

import logging
from dataclasses import dataclass, field
from typing import Union

from pydantic import ValidationError

from app.models.mail import DEFAULT_MIME_TYPE, AttachmentDescriptor, RawMessagePart
from app.services.codec import decode_body

logger = logging.getLogger(__name__)

MAX_PART_DEPTH = 32


@dataclass
class WalkResult:
    html: str = ""
    text: str = ""
    attachments: list[AttachmentDescriptor] = field(default_factory=list)
    decode_fallbacks: int = 0   # bodies kept raw because base64 decoding failed
    skipped_parts: int = 0      # child parts dropped: depth limit or malformed


def _as_attachment(part: RawMessagePart) -> AttachmentDescriptor | None:
    body = part.body
    if not part.filename or body is None or not body.attachment_id:
        return None
    return AttachmentDescriptor(
        filename=part.filename,
        mime_type=part.mime_type or DEFAULT_MIME_TYPE,
        size=body.size or 0,
        provider_reference_id=body.attachment_id,
    )


def walk_message(payload: Union[RawMessagePart, dict], max_depth: int = MAX_PART_DEPTH) -> WalkResult:
    """
    Walk the part tree depth-first, pre-order.

    Args:
        payload: Root part of the message (Gmail's ``message.payload``),
            validated or raw.
        max_depth: Parts nested deeper than this are counted in
            ``skipped_parts`` and not visited. The root is depth 0.

    Returns:
        WalkResult with html/text accumulators and ordered attachments.
    """
    result = WalkResult()
    html_chunks: list[str] = []
    text_chunks: list[str] = []

    stack: list[tuple[Union[RawMessagePart, dict], int]] = [(payload, 0)]
    while stack:
        node, depth = stack.pop()
        if isinstance(node, RawMessagePart):
            part = node
        else:
            try:
                part = RawMessagePart.model_validate(node)
            except ValidationError as e:
                logger.warning(f"Skipping malformed MIME part at depth {depth}: {e.error_count()} error(s)")
                result.skipped_parts += 1
                continue

        attachment = _as_attachment(part)
        if attachment is not None:
            result.attachments.append(attachment)
            continue

        data = part.body.data if part.body else None
        if data:
            decoded = decode_body(data, part.charset())
            if not decoded.ok:
                result.decode_fallbacks += 1
            if part.mime_type == "text/html":
                html_chunks.append(decoded.value)
            elif part.mime_type == "text/plain":
                text_chunks.append(decoded.value)

        if part.parts:
            if depth + 1 > max_depth:
                result.skipped_parts += len(part.parts)
                continue
            # Reversed so the first child is popped (visited) first.
            for child in reversed(part.parts):
                stack.append((child, depth + 1))

    result.html = "".join(html_chunks)
    result.text = "".join(text_chunks)

    if result.decode_fallbacks:
        logger.warning(
            f"{result.decode_fallbacks} MIME body part(s) could not be base64-decoded; "
            "kept raw"
        )
    if result.skipped_parts:
        logger.warning(
            f"MIME walk skipped {result.skipped_parts} part(s) (malformed, or deeper than {max_depth} levels)"
        )
    return result
