"""Canonicalisation of chat-completion requests.

Two inbound encodings are accepted: a JSON body whose images are already
``image_url`` parts, or a ``multipart/form-data`` body carrying the JSON
request in one field plus uploaded image files. Both end up as the same
canonical request in which every image is an ``image_url`` part with a
``detail`` value.

Message content is parsed into a small tagged union (``PlainText``,
``PartList``, ``OpaqueContent``) and rendered back onto a deep copy of the
caller's request, so a rejected request never has side effects and fields the
gateway does not understand are forwarded untouched.
"""

from __future__ import annotations

import base64
import copy
import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

from fastapi import Request
from pydantic import ValidationError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import GatewayConfig
from .errors import (
    GatewayError,
    err_attachment_too_large,
    err_attachment_type,
    err_invalid_image_url,
    err_invalid_json_body,
    err_invalid_multipart,
    err_invalid_payload_json,
    err_too_many_attachments,
    err_unknown_attachment,
    err_unsupported_content_type,
)
from .models import ChatPayload

logger = logging.getLogger(__name__)

DEFAULT_DETAIL = "auto"
_IMAGE_EXTENSION = re.compile(r"\.(?:jpe?g|png|gif|webp)$", re.IGNORECASE)
_READ_CHUNK = 64 * 1024
# Non-file multipart fields (the JSON payload) may carry inline data URLs.
_MAX_PAYLOAD_FIELD_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True)
class TextPart:
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class ImageUrlPart:
    url: str
    detail: str = DEFAULT_DETAIL
    # Caller's original part, kept so extra keys survive rendering.
    source: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class ImageFilePart:
    """Reference to an uploaded attachment; only exists before normalization."""

    file_key: str
    detail: str = DEFAULT_DETAIL


@dataclass(frozen=True)
class OpaquePart:
    raw: Any


ContentPart = Union[TextPart, ImageUrlPart, ImageFilePart, OpaquePart]


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class PartList:
    parts: Tuple[ContentPart, ...]


@dataclass(frozen=True)
class OpaqueContent:
    """Content that is neither text nor a part list (e.g. ``null``)."""

    raw: Any


Content = Union[PlainText, PartList, OpaqueContent]


@dataclass(frozen=True)
class Message:
    role: str
    content: Content
    source: Mapping[str, Any]

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "Message":
        return cls(
            role=str(raw.get("role", "")),
            content=parse_content(raw.get("content")),
            source=raw,
        )

    def with_content(self, content: Content) -> "Message":
        return Message(role=self.role, content=content, source=self.source)

    def render(self) -> Dict[str, Any]:
        out = copy.deepcopy(dict(self.source))
        if "content" not in out and isinstance(self.content, OpaqueContent):
            return out
        out["content"] = render_content(self.content)
        return out


@dataclass(frozen=True)
class UploadedAttachment:
    field_name: str
    mime_type: str
    data: bytes

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def parse_part(raw: Any) -> ContentPart:
    if not isinstance(raw, Mapping):
        return OpaquePart(raw)
    ptype = raw.get("type")
    if ptype == "text":
        return TextPart(raw)
    if ptype == "image_url":
        image = raw.get("image_url")
        if isinstance(image, str):
            return ImageUrlPart(url=image, source=raw)
        if isinstance(image, Mapping):
            url = image.get("url")
            return ImageUrlPart(
                url=url if isinstance(url, str) else "",
                detail=image.get("detail") or DEFAULT_DETAIL,
                source=raw,
            )
        return ImageUrlPart(url="", source=raw)
    if ptype == "image_file":
        ref = raw.get("image_file")
        if isinstance(ref, str):
            return ImageFilePart(file_key=ref)
        if isinstance(ref, Mapping):
            return ImageFilePart(
                file_key=str(ref.get("file_key") or ""),
                detail=ref.get("detail") or DEFAULT_DETAIL,
            )
        return ImageFilePart(file_key="")
    # Unknown part types are forwarded as-is.
    return OpaquePart(raw)


def parse_content(raw: Any) -> Content:
    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, list):
        return PartList(tuple(parse_part(part) for part in raw))
    return OpaqueContent(raw)


def render_part(part: ContentPart) -> Any:
    if isinstance(part, (TextPart, OpaquePart)):
        return copy.deepcopy(part.raw)
    if isinstance(part, ImageUrlPart):
        if part.source is None:
            return {
                "type": "image_url",
                "image_url": {"url": part.url, "detail": part.detail},
            }
        out = copy.deepcopy(dict(part.source))
        image = out.get("image_url")
        image = dict(image) if isinstance(image, Mapping) else {}
        image["url"] = part.url
        image["detail"] = part.detail
        out["image_url"] = image
        return out
    if isinstance(part, ImageFilePart):
        raise TypeError(f"unresolved attachment reference {part.file_key!r}")
    raise TypeError(f"unexpected content part {part!r}")


def render_content(content: Content) -> Any:
    if isinstance(content, PlainText):
        return content.text
    if isinstance(content, PartList):
        return [render_part(part) for part in content.parts]
    if isinstance(content, OpaqueContent):
        return copy.deepcopy(content.raw)
    raise TypeError(f"unexpected content {content!r}")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _loads(raw: Union[str, bytes]) -> Any:
    """Strict ``json.loads``: NaN and Infinity cannot be forwarded upstream."""

    return json.loads(raw, parse_constant=_reject_constant)


def is_valid_image_url(url: Any) -> bool:
    """Accept data URLs and http(s) URLs whose path ends in an image extension."""

    if not isinstance(url, str) or not url:
        return False
    if url[:5].lower() == "data:":
        return "," in url
    if any(ch.isspace() for ch in url):
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return False
    return bool(_IMAGE_EXTENSION.search(parts.path))


def _append_images(content: Content, images: Sequence[ImageUrlPart]) -> PartList:
    if isinstance(content, PlainText):
        text = TextPart({"type": "text", "text": content.text})
        return PartList((text, *images))
    if isinstance(content, PartList):
        return PartList((*content.parts, *images))
    if isinstance(content, OpaqueContent):
        return PartList(tuple(images))
    raise TypeError(f"unexpected content {content!r}")


class ContentNormalizer:
    def __init__(self, cfg: GatewayConfig):
        self.cfg = cfg
        self._allowed_types = {t.lower() for t in cfg.allowed_image_types}

    async def normalize(self, request: Request) -> Dict[str, Any]:
        """Read ``request`` and return the canonical upstream payload."""

        content_type = request.headers.get("content-type", "")
        media_type = content_type.split(";", 1)[0].strip().lower()
        if media_type == "multipart/form-data":
            payload_text, attachments = await self._read_multipart(request)
            return self.normalize_multipart(payload_text, attachments)
        if media_type in ("", "application/json") or media_type.endswith("+json"):
            body = await request.body()
            try:
                payload = _loads(body)
            except ValueError as exc:
                raise err_invalid_json_body() from exc
            return self.normalize_json(payload)
        raise err_unsupported_content_type()

    def normalize_json(self, payload: Any) -> Dict[str, Any]:
        return self._canonicalize(
            payload, [], validate_urls=True, invalid=err_invalid_json_body
        )

    def normalize_multipart(
        self, payload_text: Optional[str], attachments: Sequence[UploadedAttachment]
    ) -> Dict[str, Any]:
        if payload_text is None:
            raise err_invalid_payload_json()
        try:
            payload = _loads(payload_text)
        except ValueError as exc:
            raise err_invalid_payload_json() from exc
        self.check_attachment_limits(attachments)
        return self._canonicalize(
            payload, attachments, validate_urls=False, invalid=err_invalid_payload_json
        )

    def check_attachment_limits(self, attachments: Sequence[UploadedAttachment]) -> None:
        if len(attachments) > self.cfg.max_attachments:
            raise err_too_many_attachments(self.cfg.max_attachments)
        for item in attachments:
            self._check_type(item.field_name, item.mime_type)
            if len(item.data) > self.cfg.max_attachment_bytes:
                raise err_attachment_too_large(
                    item.field_name, self.cfg.max_attachment_bytes
                )

    def _check_type(self, field_name: str, mime_type: str) -> None:
        if mime_type.lower() not in self._allowed_types:
            logger.info(
                "[normalizer] Attachment %r has disallowed type %r", field_name, mime_type
            )
            raise err_attachment_type(mime_type, tuple(self.cfg.allowed_image_types))

    def _canonicalize(
        self,
        payload: Any,
        attachments: Sequence[UploadedAttachment],
        *,
        validate_urls: bool,
        invalid,
    ) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise invalid()
        try:
            ChatPayload.model_validate(payload)
        except ValidationError as exc:
            raise invalid() from exc

        messages = [Message.parse(raw) for raw in payload.get("messages") or []]
        messages = self._resolve(messages, attachments, validate_urls=validate_urls)

        canonical = copy.deepcopy(payload)
        if messages or "messages" in payload:
            canonical["messages"] = [message.render() for message in messages]
        return canonical

    def _resolve(
        self,
        messages: List[Message],
        attachments: Sequence[UploadedAttachment],
        *,
        validate_urls: bool,
    ) -> List[Message]:
        pending: Dict[str, Deque[int]] = {}
        for index, item in enumerate(attachments):
            pending.setdefault(item.field_name, deque()).append(index)
        consumed: set[int] = set()

        def resolve_part(part: ContentPart) -> ContentPart:
            if isinstance(part, ImageFilePart):
                queue = pending.get(part.file_key)
                if not queue:
                    raise err_unknown_attachment(part.file_key)
                index = queue.popleft()
                consumed.add(index)
                return ImageUrlPart(
                    url=attachments[index].data_url(), detail=part.detail
                )
            if isinstance(part, ImageUrlPart):
                if not part.url:
                    raise err_invalid_image_url()
                if validate_urls and not is_valid_image_url(part.url):
                    raise err_invalid_image_url()
                return part
            return part

        resolved: List[Message] = []
        for message in messages:
            content = message.content
            if isinstance(content, PartList):
                content = PartList(tuple(resolve_part(p) for p in content.parts))
                message = message.with_content(content)
            resolved.append(message)

        leftovers = [
            ImageUrlPart(url=item.data_url(), detail=self.cfg.upload_image_detail)
            for index, item in enumerate(attachments)
            if index not in consumed
        ]
        if not leftovers:
            return resolved
        # No placement signal: the images go to the last message.
        if resolved:
            last = resolved[-1]
            resolved[-1] = last.with_content(_append_images(last.content, leftovers))
        else:
            resolved.append(
                Message(
                    role="user",
                    content=PartList(tuple(leftovers)),
                    source={"role": "user"},
                )
            )
        return resolved

    async def _read_multipart(
        self, request: Request
    ) -> Tuple[Optional[str], List[UploadedAttachment]]:
        try:
            form = await request.form(max_part_size=_MAX_PAYLOAD_FIELD_BYTES)
        except StarletteHTTPException as exc:
            if isinstance(exc, GatewayError):
                raise
            raise err_invalid_multipart() from exc
        try:
            payload_text: Optional[str] = None
            uploads: List[Tuple[str, UploadFile]] = []
            for name, value in form.multi_items():
                if name == self.cfg.payload_field:
                    if isinstance(value, UploadFile):
                        payload_text = await self._read_payload_file(value)
                    else:
                        payload_text = value
                elif isinstance(value, UploadFile):
                    if not value.filename and not value.size:
                        continue
                    uploads.append((name, value))
            if len(uploads) > self.cfg.max_attachments:
                raise err_too_many_attachments(self.cfg.max_attachments)
            attachments = [await self._read_upload(name, up) for name, up in uploads]
        finally:
            await form.close()
        return payload_text, attachments

    async def _read_payload_file(self, upload: UploadFile) -> str:
        # curl -F payload=@request.json sends the payload as a file part.
        raw = await upload.read(_MAX_PAYLOAD_FIELD_BYTES + 1)
        if len(raw) > _MAX_PAYLOAD_FIELD_BYTES:
            raise err_invalid_multipart()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise err_invalid_payload_json() from exc

    async def _read_upload(self, field_name: str, upload: UploadFile) -> UploadedAttachment:
        mime_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
        self._check_type(field_name, mime_type)
        limit = self.cfg.max_attachment_bytes
        chunks: List[bytes] = []
        total = 0
        while True:
            chunk = await upload.read(_READ_CHUNK)
            if not chunk:
                break
            total += len(chunk)
            if total > limit:
                raise err_attachment_too_large(field_name, limit)
            chunks.append(chunk)
        return UploadedAttachment(
            field_name=field_name, mime_type=mime_type, data=b"".join(chunks)
        )
