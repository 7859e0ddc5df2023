import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PROVISIONAL_PREFIX = "local-"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # Naive server timestamps are read as UTC
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SenderType(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @property
    def counterpart(self) -> "SenderType":
        return SenderType.ADMIN if self is SenderType.USER else SenderType.USER


class ProvisionalId(str):
    """Client-side message id; only ProvisionalId.new() makes one."""
    @classmethod
    def new(cls) -> "ProvisionalId":
        return cls(PROVISIONAL_PREFIX + uuid.uuid4().hex)


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TicketMessage(_Wire):
    id: str
    sender_id: Union[int, str, None] = None
    sender_type: SenderType
    sender_name: str = ""
    message: str
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def v_id(cls, v):
        if isinstance(v, ProvisionalId):
            raise ValueError("provisional ids are never accepted from the server")
        v = str(v)
        if not v:
            raise ValueError("message id required")
        if v.startswith(PROVISIONAL_PREFIX):
            raise ValueError("server message id uses the reserved local- namespace")
        return v

    @field_validator("created_at")
    @classmethod
    def v_created_at(cls, v):
        return _as_utc(v)

    @classmethod
    def provisional(cls, text: str, sender_name: str, sender_type: SenderType = SenderType.USER) -> "TicketMessage":
        # Built without validation: the id validator rejects the local namespace
        return cls.model_construct(
            id=ProvisionalId.new(),
            sender_id=None,
            sender_type=sender_type,
            sender_name=sender_name,
            message=text,
            created_at=utcnow(),
        )

    @property
    def is_provisional(self) -> bool:
        return isinstance(self.id, ProvisionalId)


class ReadBy(_Wire):
    user: Optional[datetime] = None
    admin: Optional[datetime] = None

    @field_validator("user", "admin")
    @classmethod
    def v_ts(cls, v):
        return _as_utc(v)

    def of(self, side: SenderType) -> Optional[datetime]:
        return self.user if side is SenderType.USER else self.admin

    def marked(self, side: SenderType, when: datetime) -> "ReadBy":
        field = "user" if side is SenderType.USER else "admin"
        current = self.of(side)
        if current is not None and current >= when:
            return self
        return self.model_copy(update={field: when})


class Ticket(_Wire):
    id: int
    subject: str = ""
    status: str = ""
    messages: List[TicketMessage] = Field(default_factory=list)
    read_by: ReadBy = Field(default_factory=ReadBy)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("messages", mode="before")
    @classmethod
    def v_messages(cls, v):
        return v or []

    @field_validator("read_by", mode="before")
    @classmethod
    def v_read_by(cls, v):
        return v or {}

    @field_validator("created_at", "updated_at")
    @classmethod
    def v_ts(cls, v):
        return _as_utc(v)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_message(self) -> Optional[TicketMessage]:
        return self.messages[-1] if self.messages else None

    def server_messages(self) -> List[TicketMessage]:
        return [m for m in self.messages if not m.is_provisional]

    def provisional_messages(self) -> List[TicketMessage]:
        return [m for m in self.messages if m.is_provisional]
