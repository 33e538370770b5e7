"""Content normalization for chat turns.

Clients and storage hand us message content in several shapes: a bare string,
a list of tagged part objects (`text`, `image`, `image_url`, `file`), or a
string holding a JSON-encoded part list. Everything is reduced to one ordered
list of `TextPart` / `ImagePart` values.

`normalize` is total: unrecognised shapes degrade to an empty text part and a
bad image reference is dropped, so one odd input never aborts a request.
"""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Union

from ..services.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"

ROLES = ("user", "assistant", "system")

_IMAGE_KINDS = {"image", "image_url", "file"}
# url-like fields first, embedded blobs after
_IMAGE_FIELDS = ("url", "image_url", "image", "data", "src")
_BARE_BASE64_MIN_CHARS = 100
_RE_BASE64 = re.compile(r"^[A-Za-z0-9+/=]+$")


@dataclass(frozen=True)
class TextPart:
    text: str
    kind: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    url: str
    kind: Literal["image"] = field(default="image", init=False)

    @property
    def media_type(self) -> str:
        return media_type(self.url)


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class Turn:
    role: str
    parts: List[ContentPart]

    @property
    def text(self) -> str:
        return leading_text(self.parts)

    @property
    def has_image(self) -> bool:
        return has_image(self.parts)


def media_type(url: str) -> str:
    """Media type from a data URI prefix (`data:<type>;...`), else the default."""
    if url.startswith("data:"):
        end = url.find(";")
        if end > len("data:"):
            return url[len("data:"):end]
    return DEFAULT_IMAGE_MEDIA_TYPE


def _looks_like_json(value: str) -> bool:
    return value[:1] in ("[", "{")


def _data_uri(raw: bytes, mime: Optional[str]) -> str:
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:{mime or DEFAULT_IMAGE_MEDIA_TYPE};base64,{encoded}"


def _file_media_type(obj: Any) -> Optional[str]:
    for attr in ("content_type", "type", "mime"):
        value = getattr(obj, attr, None)
        if isinstance(value, str) and value.startswith("image/"):
            return value
    name = getattr(obj, "name", None) or getattr(obj, "filename", None)
    if isinstance(name, str):
        guessed, _ = mimetypes.guess_type(name)
        if guessed and guessed.startswith("image/"):
            return guessed
    return None


def _embed_string(value: str) -> Optional[str]:
    if value.startswith("data:image/"):
        return value
    if value.startswith("http://") or value.startswith("https://"):
        return value
    if value.startswith("blob:"):
        # Browser object URLs only resolve inside the page that made them.
        return None
    compact = re.sub(r"\s", "", value)
    if len(compact) > _BARE_BASE64_MIN_CHARS and _RE_BASE64.match(compact):
        return f"data:{DEFAULT_IMAGE_MEDIA_TYPE};base64,{compact}"
    return None


def embed_image(value: Any) -> Optional[str]:
    """Turn an image reference into a self-contained string, or None.

    Data URIs and absolute URLs pass through; raw bytes and file-like objects
    are read fully and re-encoded as a data URI. Never raises.
    """
    try:
        if isinstance(value, str):
            return _embed_string(value.strip())
        if isinstance(value, (bytes, bytearray)):
            return _data_uri(bytes(value), None) if value else None
        if isinstance(value, dict):
            nested = value.get("url")
            if isinstance(nested, str):
                return _embed_string(nested.strip())
            data = value.get("data")
            if isinstance(data, str):
                return embed_image(data)
            return None
        read = getattr(value, "read", None)
        if callable(read):
            if hasattr(value, "seek"):
                value.seek(0)
            raw = read()
            if isinstance(raw, str):
                raw = raw.encode("latin-1")
            if not raw:
                return None
            return _data_uri(raw, _file_media_type(value))
    except Exception as e:
        logger.debug("embed_image_failed type=%s error=%s", type(value).__name__, e)
        return None
    return None


def _image_from_element(element: dict[str, Any]) -> Optional[ImagePart]:
    for name in _IMAGE_FIELDS:
        value = element.get(name)
        if not value:
            continue
        url = embed_image(value)
        if url:
            return ImagePart(url=url)
    return None


def _text_from_element(element: dict[str, Any], strip: bool = True) -> str:
    value = element.get("text")
    if value is None:
        value = element.get("value")
    if not isinstance(value, str):
        return ""
    return value.strip() if strip else value


def _collect_parts(elements: List[Any], strip: bool = True) -> List[ContentPart]:
    parts: List[ContentPart] = []
    for element in elements:
        if isinstance(element, (TextPart, ImagePart)):
            parts.append(element)
            continue
        if not isinstance(element, dict):
            continue
        kind = element.get("type") or element.get("kind")
        if kind == "text":
            parts.append(TextPart(text=_text_from_element(element, strip)))
        elif kind in _IMAGE_KINDS:
            image = _image_from_element(element)
            if image is not None:
                parts.append(image)
    return parts


def _finish(parts: List[ContentPart], original_text: str = "") -> List[ContentPart]:
    if len(parts) > 1:
        parts = [p for p in parts if not (isinstance(p, TextPart) and not p.text)]
    if not any(isinstance(p, TextPart) for p in parts):
        parts.insert(0, TextPart(text=original_text))
    return parts


def normalize(raw: Any, *, strip: bool = True) -> List[ContentPart]:
    """Reduce any accepted content shape to an ordered list of parts.

    The result always holds at least one part and at least one `TextPart`.
    """
    if isinstance(raw, str):
        if _looks_like_json(raw):
            try:
                decoded = json.loads(raw)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                decoded = [decoded]
            if isinstance(decoded, list):
                parts = _collect_parts(decoded, strip)
                # JSON that holds no parts (e.g. "[1, 2]") is just text.
                if parts:
                    return _finish(parts)
        return [TextPart(text=raw.strip() if strip else raw)]
    if isinstance(raw, (list, tuple)):
        return _finish(_collect_parts(list(raw), strip))
    if isinstance(raw, dict):
        return _finish(_collect_parts([raw], strip))
    return [TextPart(text="")]


def normalize_turn(raw: Any) -> Turn:
    """Normalize one request envelope `{role, parts}` or `{role, content}`."""
    if not isinstance(raw, dict):
        raise ValidationError("Each message must be an object")
    role = raw.get("role")
    if not role:
        raise ValidationError("Each message must have a role")
    if role not in ROLES:
        raise ValidationError(f"Unsupported message role: {role}")
    if "parts" in raw and raw["parts"] is not None:
        parts = normalize(raw["parts"])
    else:
        parts = normalize(raw.get("content", ""))
    return Turn(role=role, parts=parts)


def leading_text(parts: List[ContentPart]) -> str:
    for part in parts:
        if isinstance(part, TextPart):
            return part.text
    return ""


def has_image(parts: List[ContentPart]) -> bool:
    return any(isinstance(p, ImagePart) for p in parts)


def to_wire(parts: List[ContentPart]) -> List[dict[str, Any]]:
    """Canonical JSON-able form, the same shape used for storage and replay."""
    out: List[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            out.append({"type": "text", "text": part.text})
        else:
            out.append({"type": "image_url", "image_url": {"url": part.url}})
    return out


def encode_content(parts: List[ContentPart]) -> str:
    """Compact storage form: a bare string for a lone text part, else a JSON array.

    A lone text part that itself opens like JSON is stored as an array so that
    reading it back can never mistake the text for encoded parts.
    """
    if len(parts) == 1 and isinstance(parts[0], TextPart) and not _looks_like_json(parts[0].text):
        return parts[0].text
    return json.dumps(to_wire(parts), ensure_ascii=False)


def decode_content(stored: Optional[str]) -> List[ContentPart]:
    # Stored text is kept byte for byte; only client input gets trimmed.
    return normalize(stored or "", strip=False)
