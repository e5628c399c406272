from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .calls.manager import CallRecordManager
from .calls.webhook import WebhookEventRouter
from .config import Settings
from .db.repository import Repositories, build_repositories
from .schemas import utcnow
from .tenants import TenantResolver
from .tools.dispatcher import ToolInvocationDispatcher
from .usage.meter import UsageMeter
from .usage.trial import CohortConfig


@dataclass
class Services:
    settings: Settings
    repos: Repositories
    resolver: TenantResolver
    meter: UsageMeter
    calls: CallRecordManager
    webhooks: WebhookEventRouter
    tools: ToolInvocationDispatcher


def build_services(
    settings: Settings,
    repos: Repositories | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    if repos is None:
        repos = build_repositories(
            settings.supabase_url,
            settings.supabase_key,
            environment=settings.environment,
        )
    resolver = TenantResolver(
        repos.assistants,
        settings.default_tenant_id,
        allow_default_fallback=settings.allow_default_tenant_fallback,
    )
    meter = UsageMeter(
        repos.tenants,
        repos.usage,
        CohortConfig(
            enabled=settings.trial_ab_enabled,
            default_variant=settings.trial_default_variant,
        ),
        clock=clock,
    )
    calls = CallRecordManager(repos.calls, repos.tool_results, repos.bookings, meter, clock=clock)
    return Services(
        settings=settings,
        repos=repos,
        resolver=resolver,
        meter=meter,
        calls=calls,
        webhooks=WebhookEventRouter(calls, resolver, settings.webhook_shared_secret),
        tools=ToolInvocationDispatcher(repos, settings, resolver, clock=clock),
    )
