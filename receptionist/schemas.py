from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


CallOutcome = Literal[
    "unknown", "booked", "handoff", "completed", "failed", "abandoned", "no_answer", "busy"
]
BookingPriority = Literal["urgent", "high", "standard", "low"]
BookingSource = Literal["voice_call", "web_form", "api", "manual", "import"]


# Stored rows


class CallSession(BaseModel):
    id: str
    tenant_id: str
    vapi_call_id: str
    assistant_id: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    duration_sec: int | None = None
    outcome: CallOutcome = "unknown"
    cost_cents: int = 0
    transcript_url: str | None = None
    raw_json: dict[str, Any] = Field(default_factory=dict)
    usage_recorded_at: datetime | None = None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None


class ToolInvocationRecord(BaseModel):
    id: str
    tenant_id: str
    # Null until the owning call row is known.
    call_id: str | None = None
    vapi_call_id: str | None = None
    tool_name: str
    request_json: Any = None
    response_json: dict[str, Any] = Field(default_factory=dict)
    success: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class BookingRecord(BaseModel):
    id: str
    tenant_id: str
    # Null means "unlinked": the end-of-call report backfills it.
    call_id: str | None = None
    vapi_call_id: str | None = None
    confirmation: str
    window_text: str
    start_ts: datetime
    duration_min: int = 90
    name: str
    phone: str
    email: str | None = None
    address: str
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    summary: str | None = None
    equipment: str | None = None
    priority: BookingPriority = "standard"
    source: BookingSource = "voice_call"
    created_at: datetime = Field(default_factory=utcnow)


class UsagePeriod(BaseModel):
    id: str
    tenant_id: str
    period_start: datetime
    period_end: datetime
    minutes_used: int = 0
    call_count: int = 0
    overage_minutes: int = 0
    overage_amount_cents: int = 0


class TenantAccount(BaseModel):
    id: str
    subscription_status: str | None = None
    plan_tier: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    trial_variant: str | None = None
    trial_blocked: bool = False

    @property
    def is_trialing(self) -> bool:
        return self.subscription_status == "trialing"


class Assistant(BaseModel):
    id: str
    tenant_id: str
    vapi_assistant_id: str


# Inbound webhook envelope


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ToolCallSummary(_Inbound):
    tool_name: str | None = Field(default=None, alias="toolName")
    success: bool = False


class CallPayload(_Inbound):
    id: str | None = None
    status: str | None = None
    cost: float | None = None
    started_at: datetime | None = Field(default=None, alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    assistant_id: str | None = Field(default=None, alias="assistantId")
    customer: dict[str, Any] | None = None
    phone_number: dict[str, Any] | None = Field(default=None, alias="phoneNumber")
    tool_calls: list[ToolCallSummary] = Field(default_factory=list, alias="toolCalls")


class ArtifactPayload(_Inbound):
    recording_url: str | None = Field(default=None, alias="recordingUrl")


class WebhookEvent(BaseModel):
    type: str | None = None
    call: CallPayload = Field(default_factory=CallPayload)
    artifact: ArtifactPayload | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def call_id(self) -> str | None:
        return self.call.id


# Usage API


class UsageTrackRequest(_Inbound):
    tenant_id: str | None = Field(default=None, alias="tenantId")
    duration_seconds: float | None = Field(default=None, alias="durationSeconds")
    call_id: str | None = Field(default=None, alias="callId")
