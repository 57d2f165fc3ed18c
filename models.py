"""Wire records shared by the broker, its HTTP surface and the MCP tool.

Every record serializes to camelCase JSON via to_dict() and is rebuilt with
from_dict(), which raises ValueError on a malformed payload.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_str(raw: dict, key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


def _optional_str(raw: dict, key: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def _str_list(raw: dict, key: str) -> list[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"'{key}' must be a list of strings")
    return list(value)


@dataclass
class ImageAttachment:
    """An image the human pasted into their answer.

    ``data`` is base64, optionally carrying a ``data:<type>;base64,`` header.
    """
    data: str
    media_type: str
    filename: str | None = None

    def to_dict(self) -> dict:
        out = {"data": self.data, "mediaType": self.media_type}
        if self.filename:
            out["filename"] = self.filename
        return out

    @classmethod
    def from_dict(cls, raw) -> "ImageAttachment":
        if not isinstance(raw, dict):
            raise ValueError("attachment must be an object")
        return cls(
            data=_require_str(raw, "data"),
            media_type=_require_str(raw, "mediaType"),
            filename=_optional_str(raw, "filename"),
        )


@dataclass
class HumanRequest:
    """A question posed to the human. Immutable once submitted."""
    message: str
    origin_path: str
    options: list[str] = field(default_factory=list)
    rich_text: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "originPath": self.origin_path,
            "message": self.message,
            "options": list(self.options),
            "richTextHint": self.rich_text,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw) -> "HumanRequest":
        if not isinstance(raw, dict):
            raise ValueError("request must be an object")
        rich_text = raw.get("richTextHint", True)
        if not isinstance(rich_text, bool):
            raise ValueError("'richTextHint' must be a boolean")
        created_at = _optional_str(raw, "createdAt") or now_iso()
        origin_path = raw.get("originPath", "")
        if not isinstance(origin_path, str):
            raise ValueError("'originPath' must be a string")
        return cls(
            id=_require_str(raw, "id"),
            message=_require_str(raw, "message"),
            origin_path=origin_path,
            options=_str_list(raw, "options"),
            rich_text=rich_text,
            created_at=created_at,
        )


@dataclass
class HumanResponse:
    """The human's answer to exactly one request, with provenance attached."""
    request_id: str
    origin_path: str
    free_text: str | None = None
    chosen_options: list[str] = field(default_factory=list)
    attachments: list[ImageAttachment] = field(default_factory=list)
    resolved_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "requestId": self.request_id,
            "originPath": self.origin_path,
            "freeText": self.free_text,
            "chosenOptions": list(self.chosen_options),
            "attachments": [a.to_dict() for a in self.attachments],
            "resolvedAt": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, raw) -> "HumanResponse":
        if not isinstance(raw, dict):
            raise ValueError("response must be an object")
        attachments = raw.get("attachments") or []
        if not isinstance(attachments, list):
            raise ValueError("'attachments' must be a list")
        return cls(
            request_id=_require_str(raw, "requestId"),
            origin_path=_optional_str(raw, "originPath") or "",
            free_text=_optional_str(raw, "freeText"),
            chosen_options=_str_list(raw, "chosenOptions"),
            attachments=[ImageAttachment.from_dict(a) for a in attachments],
            resolved_at=_optional_str(raw, "resolvedAt") or now_iso(),
        )


@dataclass
class Answer:
    """What a UI posts to /api/response, before provenance is attached."""
    request_id: str
    free_text: str | None = None
    chosen_options: list[str] = field(default_factory=list)
    attachments: list[ImageAttachment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw) -> "Answer":
        if not isinstance(raw, dict):
            raise ValueError("answer must be an object")
        attachments = raw.get("attachments") or []
        if not isinstance(attachments, list):
            raise ValueError("'attachments' must be a list")
        return cls(
            request_id=_require_str(raw, "id"),
            free_text=_optional_str(raw, "freeText"),
            chosen_options=_str_list(raw, "chosenOptions"),
            attachments=[ImageAttachment.from_dict(a) for a in attachments],
        )

    def to_dict(self) -> dict:
        out = {"id": self.request_id, "chosenOptions": list(self.chosen_options)}
        if self.free_text is not None:
            out["freeText"] = self.free_text
        if self.attachments:
            out["attachments"] = [a.to_dict() for a in self.attachments]
        return out
