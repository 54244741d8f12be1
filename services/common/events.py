"""
Common — ドメインイベントのワイヤー形式

サービス間で流れるイベントはすべてこの形に包まれる。
event_id はコンシューマ側の重複排除キー、
sequence は集約のバージョン (集約単位のハイウォーターマーク)。
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """ブローカー上を流れるイベント (不変)"""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    aggregate_id: str
    type: str
    sequence: int = 0
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "DomainEvent":
        return cls.model_validate_json(raw)
