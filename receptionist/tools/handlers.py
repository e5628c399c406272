from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from ..config import Settings
from ..db.repository import Repositories
from ..errors import ArgumentValidationError, PersistenceError
from ..schemas import BookingRecord, ToolInvocationRecord, utcnow
from .scheduling import format_start, resolve_start_time, spell_code, spoken_window
from .validation import clean_text, validate_booking

GENERIC_APOLOGY = "I'm sorry, I'm having trouble with that right now. Let me have someone call you back."

_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class ToolContext:
    tenant_id: str
    repos: Repositories
    settings: Settings
    log: logging.LoggerAdapter
    request_id: str
    vapi_call_id: str | None = None
    # Internal call row id, when the call was already recorded.
    call_id: str | None = None
    clock: Callable[[], datetime] = field(default=utcnow)


ToolHandler = Callable[[ToolContext, Any], dict]


def confirmation_code(length: int = 8) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def _log_tool_result(ctx: ToolContext, tool_name: str, args: Any, response: dict) -> None:
    if not ctx.vapi_call_id:
        return
    record = ToolInvocationRecord(
        id=str(uuid.uuid4()),
        tenant_id=ctx.tenant_id,
        call_id=ctx.call_id,
        vapi_call_id=ctx.vapi_call_id,
        tool_name=tool_name,
        request_json=args,
        response_json=response,
        success=bool(response.get("success")),
    )
    try:
        ctx.repos.tool_results.create(record)
    except PersistenceError as exc:
        ctx.log.error("Could not record %s result for call %s: %s", tool_name, ctx.vapi_call_id, exc)


def create_booking(ctx: ToolContext, args: Any) -> dict:
    try:
        booking = validate_booking(args)
    except ArgumentValidationError as exc:
        ctx.log.warning("create_booking rejected: %s", exc)
        return {
            "success": False,
            "tool": "create_booking",
            "error": "validation_failed",
            "errors": exc.errors,
            "say": "I'm sorry, I couldn't save that. Could you please verify your phone number and address for me?",
        }

    now = ctx.clock().astimezone(ZoneInfo(ctx.settings.business_timezone))
    resolved = resolve_start_time(booking.preferred_time, now)
    if not resolved.parsed:
        ctx.log.warning(
            "Preferred time %r not understood; booked for %s",
            booking.preferred_time,
            resolved.start.isoformat(),
        )
    window_text = booking.preferred_time or format_start(resolved.start)
    code = confirmation_code()
    record = BookingRecord(
        id=str(uuid.uuid4()),
        tenant_id=ctx.tenant_id,
        call_id=ctx.call_id,
        vapi_call_id=ctx.vapi_call_id,
        confirmation=code,
        window_text=window_text,
        start_ts=resolved.start,
        name=booking.name,
        phone=booking.phone,
        email=booking.email,
        address=booking.address,
        city=booking.city,
        state=booking.state,
        zip=booking.zip,
        summary=booking.service_type,
        equipment=booking.equipment,
        priority=booking.priority,
    )
    try:
        saved = ctx.repos.bookings.create(record)
    except PersistenceError:
        ctx.log.exception("Booking insert failed for tenant %s", ctx.tenant_id)
        response = {
            "success": False,
            "tool": "create_booking",
            "error": "booking_failed",
            "say": (
                "I'm sorry, I wasn't able to lock in that appointment just now. "
                "I'll have someone from our team call you back to confirm it."
            ),
        }
        _log_tool_result(ctx, "create_booking", args, response)
        return response

    first_name = booking.name.split()[0]
    ctx.log.info(
        "Booking %s created for tenant %s (call=%s, linked=%s)",
        saved.confirmation,
        ctx.tenant_id,
        ctx.vapi_call_id,
        saved.call_id is not None,
    )
    response = {
        "success": True,
        "tool": "create_booking",
        "confirmation": saved.confirmation,
        "booking_id": saved.id,
        "window": window_text,
        "start_ts": saved.start_ts.isoformat(),
        "say": (
            f"You're all set, {first_name}. We'll see you {spoken_window(window_text)}. "
            f"Your confirmation code is {spell_code(saved.confirmation)}."
        ),
    }
    _log_tool_result(ctx, "create_booking", args, response)
    return response


# First matching band wins, so emergency outranks everything else.
PRICE_BANDS: tuple[tuple[str, tuple[str, ...], str, str], ...] = (
    ("emergency", ("emergency", "urgent", "no heat", "no ac", "no air", "leak", "flood"), "$150", "$250"),
    ("install", ("install", "replace", "replacement", "new system", "new unit"), "$120", "$200"),
    ("repair", ("repair", "fix", "broken", "not working", "noise"), "$89", "$150"),
    ("maintenance", ("maintenance", "tune", "inspection", "cleaning", "check"), "$79", "$129"),
)
DEFAULT_BAND = ("service", "$89", "$149")


def classify_service(service_type: str | None) -> tuple[str, str, str]:
    text = (service_type or "").lower()
    for category, keywords, low, high in PRICE_BANDS:
        if any(keyword in text for keyword in keywords):
            return category, low, high
    return DEFAULT_BAND


def quote_estimate(ctx: ToolContext, args: Any) -> dict:
    args = args if isinstance(args, dict) else {}
    service_type = clean_text(args.get("service_type") or args.get("job_type") or args.get("issue"), 200)
    category, low, high = classify_service(service_type)
    response = {
        "success": True,
        "tool": "quote_estimate",
        "category": category,
        "price_range": f"{low}-{high}",
        "say": (
            f"For {category} visits we typically charge between {low} and {high}. "
            "The technician will confirm the exact price once they see the job."
        ),
    }
    _log_tool_result(ctx, "quote_estimate", args, response)
    return response


def handoff_sms(ctx: ToolContext, args: Any) -> dict:
    minutes = ctx.settings.handoff_callback_minutes
    ctx.log.info("Handoff requested for tenant %s (call=%s)", ctx.tenant_id, ctx.vapi_call_id)
    response = {
        "success": True,
        "tool": "handoff_sms",
        "say": f"I've passed your details to our team. Someone will call you back within {minutes} minutes.",
    }
    _log_tool_result(ctx, "handoff_sms", args, response)
    return response


def update_crm_note(ctx: ToolContext, args: Any) -> dict:
    response = {"success": True, "tool": "update_crm_note", "say": "Got it, I've made a note of that."}
    _log_tool_result(ctx, "update_crm_note", args, response)
    return response


TOOL_HANDLERS: dict[str, ToolHandler] = {
    "create_booking": create_booking,
    "quote_estimate": quote_estimate,
    "handoff_sms": handoff_sms,
    "update_crm_note": update_crm_note,
}
