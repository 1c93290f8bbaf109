"""Cache key construction.

Every key starts with ``{prefix}:t:{tenant_id}:`` for the tenant active when
the key is built. Components are percent-quoted so no identifier can
introduce a separator or a glob character into a key or pattern.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import quote


@dataclass(frozen=True)
class CacheKeySpec:
    """What is being cached.

    ``identifier`` set → single-entity entry; otherwise a list query keyed by
    ``params``. ``tags`` name entities whose mutation invalidates the entry.
    """

    entity: str
    identifier: str | None = None
    params: Mapping[str, Any] | None = None
    tags: tuple[str, ...] = ()

    @property
    def is_list(self) -> bool:
        return self.identifier is None


def _q(component: str) -> str:
    if not component:
        raise ValueError("cache key component must be non-empty")
    return quote(str(component), safe="-_.")


def params_digest(params: Mapping[str, Any] | None) -> str:
    payload = json.dumps(dict(params or {}), sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:32]


class CacheKeyBuilder:
    def __init__(self, prefix: str = "lex") -> None:
        self.prefix = _q(prefix)

    def tenant_prefix(self, tenant_id: str) -> str:
        return f"{self.prefix}:t:{_q(tenant_id)}:"

    def _body(self, spec: CacheKeySpec) -> str:
        entity = _q(spec.entity)
        if spec.is_list:
            return f"{entity}:list:{params_digest(spec.params)}"
        key = f"{entity}:id:{_q(spec.identifier)}"
        if spec.params:
            key += f":{params_digest(spec.params)}"
        return key

    def build(self, tenant_id: str, spec: CacheKeySpec) -> str:
        return self.tenant_prefix(tenant_id) + self._body(spec)

    def cross_tenant_key(self, tenant_id: str, user_id: str, spec: CacheKeySpec, tenant_ids: list[str]) -> str:
        """Key for a consultant view spanning ``tenant_ids``."""
        covered = params_digest({"tenants": sorted(tenant_ids)})
        return f"{self.tenant_prefix(tenant_id)}xt:{_q(user_id)}:{covered}:{self._body(spec)}"

    def entity_key(self, tenant_id: str, entity: str, entity_id: str) -> str:
        return self.build(tenant_id, CacheKeySpec(entity=entity, identifier=entity_id))

    def entity_variants_pattern(self, tenant_id: str, entity: str, entity_id: str) -> str:
        return self.entity_key(tenant_id, entity, entity_id) + ":*"

    def list_pattern(self, tenant_id: str, entity: str) -> str:
        return f"{self.tenant_prefix(tenant_id)}{_q(entity)}:list:*"

    def tag_key(self, tenant_id: str, entity: str) -> str:
        return f"{self.prefix}:tag:{_q(tenant_id)}:{_q(entity)}"

    def cross_tenant_tag(self, tenant_id: str) -> str:
        return f"{self.prefix}:xtag:{_q(tenant_id)}"
