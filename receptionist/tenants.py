from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .db.repository import AssistantRepository
from .tools.extractor import dig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: str | None
    source: str  # "header", "assistant", "default" or "none"
    assistant_id: str | None = None


def find_assistant_id(body: Any) -> str | None:
    candidates = (
        dig(body, "message", "assistant", "id"),
        dig(body, "message", "call", "assistantId"),
        dig(body, "call", "assistantId"),
        dig(body, "assistantId"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


class TenantResolver:
    """Header, then assistant registry, then the configured default tenant.

    The default-tenant step can attribute a call to the wrong tenant when the
    first two lookups both miss. It is kept for deployments that still rely on
    it, logged every time it fires, and disabled with
    ALLOW_DEFAULT_TENANT_FALLBACK=false.
    """

    def __init__(
        self,
        assistants: AssistantRepository,
        default_tenant_id: str | None,
        allow_default_fallback: bool = True,
    ) -> None:
        self.assistants = assistants
        self.default_tenant_id = default_tenant_id
        self.allow_default_fallback = allow_default_fallback

    def resolve(self, headers: Mapping[str, str], body: Any) -> TenantResolution:
        assistant_id = find_assistant_id(body)
        header_tenant = headers.get("x-tenant-id")
        if header_tenant:
            return TenantResolution(header_tenant, "header", assistant_id)

        if assistant_id:
            assistant = self.assistants.get_by_vapi_id(assistant_id)
            if assistant:
                return TenantResolution(assistant.tenant_id, "assistant", assistant_id)
            logger.warning("No tenant registered for assistant %s", assistant_id)

        if self.allow_default_fallback and self.default_tenant_id:
            logger.warning(
                "Falling back to default tenant %s (assistant=%s); verify attribution",
                self.default_tenant_id,
                assistant_id,
            )
            return TenantResolution(self.default_tenant_id, "default", assistant_id)

        return TenantResolution(None, "none", assistant_id)
