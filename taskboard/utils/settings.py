"""Engine settings loaded from environment variables."""

import os
from typing import Optional

from pydantic import BaseModel, Field

from taskboard.utils.errors import ConfigurationError


class EngineSettings(BaseModel):
    """Tunables for the assignment engine."""
    supabase_url: Optional[str] = Field(None, description="Supabase project URL")
    supabase_key: Optional[str] = Field(None, description="Supabase service role key")
    max_assumed_workload: int = Field(default=10, gt=0, description="Workload treated as full capacity when scoring")
    sync_debounce_ms: int = Field(default=300, ge=0, description="Debounce window for change notifications")
    reconcile_interval_seconds: int = Field(default=300, gt=0, description="Period of the workload reconciliation job")
    transition_retry_limit: int = Field(default=3, ge=1, description="Compare-and-set retries for a task commit")
    llm_provider: str = Field(default="anthropic", description="anthropic or openai")
    llm_model: str = Field(default="claude-sonnet-4-20250514", description="Chat model used by the admin agent")

    @property
    def sync_debounce_seconds(self) -> float:
        return self.sync_debounce_ms / 1000.0

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the process environment."""
        try:
            return cls(
                supabase_url=os.environ.get("SUPABASE_URL"),
                supabase_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY"),
                max_assumed_workload=int(os.environ.get("MAX_ASSUMED_WORKLOAD", "10")),
                sync_debounce_ms=int(os.environ.get("SYNC_DEBOUNCE_MS", "300")),
                reconcile_interval_seconds=int(os.environ.get("RECONCILE_INTERVAL_SECONDS", "300")),
                transition_retry_limit=int(os.environ.get("TRANSITION_RETRY_LIMIT", "3")),
                llm_provider=os.environ.get("LLM_PROVIDER", "anthropic").lower(),
                llm_model=os.environ.get("LLM_MODEL", "claude-sonnet-4-20250514"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid engine configuration: {e}") from e

    def require_supabase(self) -> tuple[str, str]:
        """Return (url, key) or fail when the store is not configured."""
        if not self.supabase_url or not self.supabase_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return self.supabase_url, self.supabase_key
