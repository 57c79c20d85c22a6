from __future__ import annotations

import base64
import binascii
import hashlib
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SHA256_PATTERN = r"^[0-9a-fA-F]{64}$"


class AttachmentRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str | None = None
    sha256: str = Field(pattern=SHA256_PATTERN)
    byte_size: int = Field(default=0, ge=0)


class RawMessage(BaseModel):
    """An inbound email/SMS as delivered by the intake boundary. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=200)
    received_at: datetime
    source_channel: str = Field(min_length=1, max_length=32)
    body_text: str = ""
    attachments: tuple[AttachmentRef, ...] = ()

    @field_validator("received_at")
    @classmethod
    def _aware_received_at(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("source_channel")
    @classmethod
    def _lower_channel(cls, value: str) -> str:
        return value.strip().lower()


class InboundMessage(BaseModel):
    """Unit of work for the pipeline: a raw message attributed to one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1, max_length=64)
    message: RawMessage


class AttachmentIn(BaseModel):
    filename: str
    content_type: str | None = None
    content_b64: str | None = None
    sha256: str | None = Field(default=None, pattern=SHA256_PATTERN)

    @model_validator(mode="after")
    def _require_content_or_digest(self) -> AttachmentIn:
        if not self.content_b64 and not self.sha256:
            raise ValueError("attachment needs content_b64 or sha256")
        return self

    def to_ref(self) -> AttachmentRef:
        if self.content_b64:
            try:
                body = base64.b64decode(self.content_b64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"invalid base64 content for {self.filename}") from e
            return AttachmentRef(
                filename=self.filename,
                content_type=self.content_type,
                sha256=hashlib.sha256(body).hexdigest(),
                byte_size=len(body),
            )
        return AttachmentRef(
            filename=self.filename,
            content_type=self.content_type,
            sha256=str(self.sha256).lower(),
        )


class MessageIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    id: str = Field(min_length=1, max_length=200)
    received_at: datetime
    source_channel: Literal["email", "sms"] | str = "email"
    body_text: str = ""
    attachments: list[AttachmentIn] = Field(default_factory=list)

    def to_inbound(self) -> InboundMessage:
        return InboundMessage(
            user_id=self.user_id,
            message=RawMessage(
                id=self.id,
                received_at=self.received_at,
                source_channel=self.source_channel,
                body_text=self.body_text,
                attachments=tuple(a.to_ref() for a in self.attachments),
            ),
        )


class MessageAcceptedOut(BaseModel):
    message_id: str
    status: str = "queued"
    queue_depth: int
