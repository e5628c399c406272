from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from ..auth import secret_matches
from ..config import Settings
from ..db.repository import Repositories
from ..errors import PersistenceError
from ..request_id import get_or_create_request_id, request_logger
from ..schemas import utcnow
from ..tenants import TenantResolver
from .extractor import dig, detect_tool_name, extract_tool_arguments
from .handlers import GENERIC_APOLOGY, TOOL_HANDLERS, ToolContext, ToolHandler

logger = logging.getLogger(__name__)


def find_vapi_call_id(headers: Mapping[str, str], body: Any) -> str | None:
    for candidate in (
        headers.get("x-vapi-call-id"),
        dig(body, "message", "call", "id"),
        dig(body, "call", "id"),
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


class ToolInvocationDispatcher:
    """Runs one mid-call tool request and shapes the speakable response.

    ``dispatch`` returns ``(status_code, body)``. Every body carries
    ``success`` and ``request_id``; caller-facing results also carry ``say``.
    """

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        resolver: TenantResolver,
        handlers: Mapping[str, ToolHandler] = TOOL_HANDLERS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repos = repos
        self.settings = settings
        self.resolver = resolver
        self.handlers = handlers
        self.clock = clock

    def _lookup_call_id(self, tenant_id: str, vapi_call_id: str | None, log) -> str | None:
        if not vapi_call_id:
            return None
        try:
            session = self.repos.calls.get_by_external_id(tenant_id, vapi_call_id)
        except PersistenceError as exc:
            log.warning("Call lookup failed for %s, writing unlinked: %s", vapi_call_id, exc)
            return None
        return session.id if session else None

    def dispatch(self, headers: Mapping[str, str], body: Any) -> tuple[int, dict]:
        request_id = get_or_create_request_id(headers)
        log = request_logger(logger, request_id)

        if not secret_matches(
            headers.get("x-shared-secret"), self.settings.tool_shared_secret, allow_bearer=True
        ):
            log.warning("Rejected tool call with missing or invalid shared secret")
            return 401, {"success": False, "error": "Unauthorized", "request_id": request_id}

        tool_name = headers.get("x-tool-name") or detect_tool_name(body)
        handler = self.handlers.get(tool_name) if tool_name else None
        if handler is None:
            log.warning("Unknown tool %r", tool_name)
            return 400, {
                "success": False,
                "error": f'Unknown tool "{tool_name}". Set the x-tool-name header or name the tool in the body.',
                "request_id": request_id,
            }

        try:
            tenant = self.resolver.resolve(headers, body)
            if tenant.tenant_id is None:
                log.error("No tenant for %s (assistant=%s)", tool_name, tenant.assistant_id)
                return 200, {
                    "success": False,
                    "tool": tool_name,
                    "error": "tenant_not_resolved",
                    "say": GENERIC_APOLOGY,
                    "request_id": request_id,
                }

            vapi_call_id = find_vapi_call_id(headers, body)
            extraction = extract_tool_arguments(body, tool_name)
            log.info(
                "Tool %s for tenant %s via %s (call=%s, args from %s)",
                tool_name,
                tenant.tenant_id,
                tenant.source,
                vapi_call_id,
                extraction.matched_shape,
            )
            ctx = ToolContext(
                tenant_id=tenant.tenant_id,
                repos=self.repos,
                settings=self.settings,
                log=log,
                request_id=request_id,
                vapi_call_id=vapi_call_id,
                call_id=self._lookup_call_id(tenant.tenant_id, vapi_call_id, log),
                clock=self.clock,
            )
            response = handler(ctx, extraction.data)
        except Exception:
            log.exception("Tool %s failed", tool_name)
            return 500, {
                "success": False,
                "tool": tool_name,
                "say": GENERIC_APOLOGY,
                "request_id": request_id,
            }

        response["request_id"] = request_id
        if extraction.tool_call_id:
            response["results"] = [
                {"toolCallId": extraction.tool_call_id, "result": response.get("say", "")}
            ]
        return 200, response
