"""Audit sink for cross-tenant access and key rotation events.

The durable audit log lives outside this package; AuditLogger is the
in-process adapter that keeps entries and mirrors them to the log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class AuditAction:
    CROSS_TENANT_ACCESS = "tenant.cross_access"
    ELEVATED_ACCESS = "tenant.elevated_access"
    ROTATION_STARTED = "key.rotation.started"
    ROTATION_RESUMED = "key.rotation.resumed"
    ROTATION_COMPLETED = "key.rotation.completed"
    ROTATION_FAILED = "key.rotation.failed"
    KEY_SCHEDULED_DELETION = "key.scheduled_deletion"


@dataclass
class AuditEntry:
    action: str
    tenant_id: str
    actor: str
    resource: str = ""
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def log(self, entry: AuditEntry) -> None: ...


class AuditLogger:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def log(self, entry: AuditEntry) -> None:
        self.entries.append(entry)
        logger.info(
            "audit %s tenant=%s actor=%s resource=%s",
            entry.action, entry.tenant_id, entry.actor, entry.resource,
        )

    def by_action(self, action: str) -> list[AuditEntry]:
        return [e for e in self.entries if e.action == action]
