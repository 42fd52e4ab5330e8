from __future__ import annotations

import os
import shlex
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _resolve_data_dir() -> Path:
    override = _env("PROSPECTOR_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


# ---------------------------------------------------------------------------
# ROI assumptions
# ---------------------------------------------------------------------------


class ROIAssumptions(BaseModel):
    """Constants behind the ROI model, overridable per deployment."""

    field_workers_by_bracket: dict[str, int] = Field(default_factory=lambda: {
        "250+": 250, "100-249": 150, "50-99": 75, "20-49": 35, "1-19": 15,
    })
    default_field_workers: int = 10
    hours_by_bucket: dict[str, float] = Field(default_factory=lambda: {
        "20+": 20, "10-20": 15, "5-10": 7.5, "Less than 5": 3, "Not sure": 12,
    })
    default_hours_per_week: float = 10

    revenue_per_worker: float = 120_000
    admin_hourly_rate: float = 35
    weeks_per_year: int = 52

    # Money-cost drivers (percent of revenue, gated by pain points)
    margin_loss_by_pain_point: dict[str, float] = Field(default_factory=lambda: {
        "job profitability": 3, "Material ordering": 2, "Losing money": 2, "Scheduling": 1,
    })
    margin_loss_cap_percent: float = 8
    change_order_loss_percent: float = 8
    compliance_annual_cost: float = 15_000

    # Investment
    office_staff_buffer: int = 3
    minimum_seats: int = 10
    seat_price_monthly: float = 10
    onboarding_cost: float = 6_000
    training_hours: float = 20

    # Recovery rates
    time_savings_rate: float = 0.75
    margin_recovery_rate: float = 0.6
    margin_recovery_cap_percent: float = 8
    change_order_capture_rate: float = 0.8
    compliance_savings_rate: float = 0.7


def load_roi_assumptions(path: Path | None) -> ROIAssumptions:
    """Merge a YAML override file over the default assumptions."""
    if path is None or not path.exists():
        return ROIAssumptions()
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return ROIAssumptions()
    payload: dict[str, Any] = data.get("roi", data)
    return ROIAssumptions.model_validate(payload)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_resolve_data_dir)
    database_path: Path = Field(default_factory=lambda: _resolve_data_dir() / "prospector.db")

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    llm_timeout_seconds: float = Field(default_factory=lambda: _env_float("LLM_TIMEOUT", 120.0))
    llm_max_tokens: int = 4096

    firecrawl_api_key: str = Field(default_factory=lambda: _env("FIRECRAWL_API_KEY"))
    firecrawl_base_url: str = Field(
        default_factory=lambda: _env("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev")
    )
    web_timeout_seconds: float = Field(default_factory=lambda: _env_float("WEB_TIMEOUT", 30.0))
    user_agent: str = "ProspectorBot/1.0 (+https://prospector.local)"

    knowledge_mcp_command: str = Field(default_factory=lambda: _env("KNOWLEDGE_MCP_COMMAND"))
    knowledge_mcp_args: list[str] = Field(
        default_factory=lambda: shlex.split(_env("KNOWLEDGE_MCP_ARGS"))
    )
    knowledge_http_endpoint: str = Field(default_factory=lambda: _env("KNOWLEDGE_HTTP_ENDPOINT"))
    knowledge_handshake_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("KNOWLEDGE_HANDSHAKE_TIMEOUT", 30.0)
    )
    knowledge_query_timeout_seconds: float = 60.0

    roi_assumptions_file: Path | None = Field(
        default_factory=lambda: Path(_env("PROSPECTOR_ROI_ASSUMPTIONS")) if _env("PROSPECTOR_ROI_ASSUMPTIONS") else None
    )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def load_roi_assumptions(self) -> ROIAssumptions:
        return load_roi_assumptions(self.roi_assumptions_file)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
