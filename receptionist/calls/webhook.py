from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from pydantic import ValidationError

from ..auth import secret_matches
from ..request_id import get_or_create_request_id, request_logger
from ..schemas import ArtifactPayload, CallPayload, WebhookEvent
from ..tenants import TenantResolver
from .manager import CallRecordManager

logger = logging.getLogger(__name__)

# Fields the platform sometimes sends beside ``call`` rather than inside it.
_MESSAGE_LEVEL_FIELDS = ("startedAt", "endedAt", "cost", "status")


def parse_event(body: dict[str, Any]) -> WebhookEvent:
    """Accept both ``{message: {type, call, ...}}`` and the flat envelope."""
    message = body.get("message") if isinstance(body.get("message"), dict) else body
    call = dict(message.get("call") or {}) if isinstance(message.get("call"), dict) else {}
    for key in _MESSAGE_LEVEL_FIELDS:
        if call.get(key) is None and message.get(key) is not None:
            call[key] = message[key]
    tool_calls = call.get("toolCalls")
    call["toolCalls"] = [item for item in tool_calls if isinstance(item, dict)] if isinstance(tool_calls, list) else []

    artifact = message.get("artifact")
    return WebhookEvent(
        type=message.get("type"),
        call=CallPayload.model_validate(call),
        artifact=ArtifactPayload.model_validate(artifact) if isinstance(artifact, dict) else None,
        raw=body,
    )


class WebhookEventRouter:
    def __init__(
        self,
        manager: CallRecordManager,
        resolver: TenantResolver,
        shared_secret: str | None,
    ) -> None:
        self.manager = manager
        self.resolver = resolver
        self.shared_secret = shared_secret
        self.handlers = {
            "assistant-request": manager.on_assistant_request,
            "status-update": manager.on_status_update,
            "end-of-call-report": manager.on_end_of_call_report,
        }

    def handle(self, headers: Mapping[str, str], raw_body: bytes) -> tuple[int, dict]:
        request_id = get_or_create_request_id(headers)
        log = request_logger(logger, request_id)

        if not secret_matches(headers.get("x-shared-secret"), self.shared_secret):
            log.warning("Rejected webhook with missing or invalid shared secret")
            return 401, {"error": "Unauthorized"}

        try:
            body = json.loads(raw_body or b"")
        except ValueError:
            log.warning("Webhook body is not valid JSON")
            return 400, {"error": "Invalid JSON"}
        if not isinstance(body, dict):
            return 400, {"error": "Expected a JSON object"}

        try:
            event = parse_event(body)
        except ValidationError as exc:
            log.warning("Malformed webhook event ignored: %s", exc)
            return 200, {}

        handler = self.handlers.get(event.type or "")
        if handler is None:
            log.info("Ignoring webhook event type %r", event.type)
            return 200, {}
        if not event.call_id:
            log.warning("%s without a call id; acknowledged", event.type)
            return 200, {}

        try:
            tenant = self.resolver.resolve(headers, body)
            if tenant.tenant_id is None:
                log.error(
                    "No tenant for %s on call %s (assistant=%s)",
                    event.type,
                    event.call_id,
                    tenant.assistant_id,
                )
                return 200, {}
            if event.call.assistant_id is None:
                event.call.assistant_id = tenant.assistant_id
            handler(event, tenant.tenant_id, log)
        except Exception:
            log.exception("Failed to handle %s for call %s", event.type, event.call_id)
        return 200, {}
