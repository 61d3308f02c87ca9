"""
Core data models for the dispatch pipeline.

Every message on the queue is a MessageEnvelope: a tag (``type``), a creation
timestamp, a tag-specific ``data`` payload and optional opaque metadata.
The envelope is a discriminated union, so a webhook tag can only ever carry
a webhook payload.

Wire format (JSON, camelCase as produced by the HTTP surface):
  {
      "type":      "webhook" | "email" | "notification" | "task" | "analytics" | "custom",
      "timestamp": "2024-05-01T12:00:00.000Z",
      "data":      {...},
      "metadata":  {"key": "value"}        # optional
  }
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, TypeAdapter, ValidationInfo, field_validator, model_validator,
)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────


class MessageType(str, Enum):
    WEBHOOK = "webhook"
    EMAIL = "email"
    NOTIFICATION = "notification"
    TASK = "task"
    ANALYTICS = "analytics"
    CUSTOM = "custom"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


# ──────────────────────────────────────────────────────────────
#  Payloads — one shape per tag
# ──────────────────────────────────────────────────────────────


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookData(_Payload):
    """Outbound HTTP call to perform."""
    url: str
    method: str
    headers: dict[str, str]
    body: Optional[str] = None


class EmailData(_Payload):
    to: str
    from_: str = Field(alias="from")
    subject: str
    body: str
    html: Optional[str] = None


class NotificationData(_Payload):
    user_id: str = Field(alias="userId")
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM


class TaskData(_Payload):
    task_id: str = Field(alias="taskId")
    action: str
    payload: dict[str, Any]


class AnalyticsData(_Payload):
    event: str
    properties: dict[str, Any]
    user_id: Optional[str] = Field(default=None, alias="userId")


# ──────────────────────────────────────────────────────────────
#  Envelopes
# ──────────────────────────────────────────────────────────────


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: str = Field(default_factory=utc_timestamp)
    metadata: Optional[dict[str, str]] = None

    @model_validator(mode="before")
    @classmethod
    def _require_delivered_timestamp(cls, data: Any, info: ValidationInfo) -> Any:
        # only newly created envelopes are stamped; delivered ones keep theirs
        if info.context and info.context.get("delivered"):
            if not isinstance(data, dict) or "timestamp" not in data:
                raise ValueError("delivered envelope has no timestamp")
        return data

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, v: str) -> str:
        try:
            parse_timestamp(v)
        except ValueError as e:
            raise ValueError(f"timestamp is not ISO-8601: {v!r}") from e
        return v

    @property
    def message_type(self) -> MessageType:
        return MessageType(self.type)

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.timestamp)


class WebhookEnvelope(_Envelope):
    type: Literal["webhook"] = "webhook"
    data: WebhookData


class EmailEnvelope(_Envelope):
    type: Literal["email"] = "email"
    data: EmailData


class NotificationEnvelope(_Envelope):
    type: Literal["notification"] = "notification"
    data: NotificationData


class TaskEnvelope(_Envelope):
    type: Literal["task"] = "task"
    data: TaskData


class AnalyticsEnvelope(_Envelope):
    type: Literal["analytics"] = "analytics"
    data: AnalyticsData


class CustomEnvelope(_Envelope):
    """Opaque payload; only a registered custom processor interprets it."""
    type: Literal["custom"] = "custom"
    data: Any = None


MessageEnvelope = Annotated[
    Union[
        WebhookEnvelope,
        EmailEnvelope,
        NotificationEnvelope,
        TaskEnvelope,
        AnalyticsEnvelope,
        CustomEnvelope,
    ],
    Field(discriminator="type"),
]


_envelope_adapter: TypeAdapter = TypeAdapter(MessageEnvelope)


def envelope_to_dict(envelope: _Envelope) -> dict[str, Any]:
    """Serialize to the JSON wire shape (camelCase keys, unset optionals omitted).

    Only the envelope's own optional fields and those of typed payloads are
    dropped when None. Values inside opaque custom data and inside
    payload/properties maps are passed through as-is.
    """
    wire = envelope.model_dump(mode="json", by_alias=True)
    if wire.get("metadata") is None:
        wire.pop("metadata", None)
    if isinstance(envelope.data, BaseModel):
        wire["data"] = {k: v for k, v in wire["data"].items() if v is not None}
    return wire


def new_envelope(fields: dict[str, Any]) -> MessageEnvelope:
    """Create an envelope from caller-supplied fields, stamping it when no
    timestamp is given. For parsing delivered messages use envelope_from_dict."""
    return _envelope_adapter.validate_python(fields)


def envelope_from_dict(data: dict[str, Any]) -> MessageEnvelope:
    """Parse a delivered wire dict back into the matching envelope class.

    The timestamp is taken from the wire unchanged and is required. Raises
    pydantic.ValidationError when it is missing, the tag is unknown or the
    payload does not match the tag.
    """
    return _envelope_adapter.validate_python(data, context={"delivered": True})


def envelope_from_json(raw: str | bytes) -> MessageEnvelope:
    return _envelope_adapter.validate_json(raw, context={"delivered": True})
