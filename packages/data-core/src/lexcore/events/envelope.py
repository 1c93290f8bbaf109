"""CloudEvents 1.0 envelope and the entity change event carried in it."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

ENTITY_CHANGED = "lexcore.entity.changed"


class ChangeAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class CloudEvent:
    specversion: str = "1.0"
    type: str = ""
    source: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    datacontenttype: str = "application/json"
    data: dict = field(default_factory=dict)
    subject: str = ""
    tenant_id: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> CloudEvent:
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class ChangeEvent:
    tenant_id: str
    entity: str
    entity_id: str
    action: ChangeAction

    @classmethod
    def from_event(cls, event: CloudEvent) -> ChangeEvent:
        data = event.data
        return cls(
            tenant_id=data["tenant_id"],
            entity=data["entity"],
            entity_id=data["id"],
            action=ChangeAction(data["action"]),
        )


def build_event(
    event_type: str,
    source: str,
    data: dict,
    subject: str = "",
    tenant_id: str = "",
) -> CloudEvent:
    return CloudEvent(
        type=event_type,
        source=source,
        data=data,
        subject=subject,
        tenant_id=tenant_id,
    )


def build_change_event(
    tenant_id: str,
    entity: str,
    entity_id: str,
    action: ChangeAction | str,
    source: str = "/lexcore/repository",
) -> CloudEvent:
    action = ChangeAction(action)
    return build_event(
        ENTITY_CHANGED,
        source,
        {"tenant_id": tenant_id, "entity": entity, "id": entity_id, "action": action.value},
        subject=f"{entity}:{entity_id}",
        tenant_id=tenant_id,
    )
