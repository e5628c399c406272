import os
from typing import Optional

from pydantic import BaseModel


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    webhook_shared_secret: Optional[str] = os.getenv("WEBHOOK_SHARED_SECRET")
    tool_shared_secret: Optional[str] = os.getenv("TOOL_SHARED_SECRET") or os.getenv(
        "WEBHOOK_SHARED_SECRET"
    )
    default_tenant_id: Optional[str] = os.getenv("DEFAULT_TENANT_ID")
    allow_default_tenant_fallback: bool = _env_flag("ALLOW_DEFAULT_TENANT_FALLBACK", "true")
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_key: Optional[str] = os.getenv("SUPABASE_KEY")
    trial_ab_enabled: bool = _env_flag("TRIAL_AB_ENABLED", "false")
    trial_default_variant: str = os.getenv("TRIAL_DEFAULT_VARIANT", "control")
    handoff_callback_minutes: int = int(os.getenv("HANDOFF_CALLBACK_MINUTES", "15"))
    upgrade_redirect_path: str = os.getenv("UPGRADE_REDIRECT_PATH", "/pricing")
    business_timezone: str = os.getenv("BUSINESS_TIMEZONE", "America/New_York")


settings = Settings()
