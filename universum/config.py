import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "UNIVERSUM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

CAPABLE_LABEL = "universum-4.0"
FAST_LABEL = "universum-4.0-schnell"


class GenerationEndpointConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: Optional[str] = None
    timeout_s: float = 120.0


class ModelTierConfig(BaseModel):
    capable: str = "gemini-2.5-pro"
    fast: str = "gemini-2.5-flash"
    classifier: str = "gemini-2.5-flash"
    image: str = "imagen-4.0-generate-001"
    slide_image: str = "imagen-4.0-generate-001"
    video: str = "veo-3.1-fast-generate-preview"

    model_config = {"protected_namespaces": ()}


class PacingConfig(BaseModel):
    # Seconds; every delay is multiplied by scale, so 0 disables pacing.
    scale: float = 1.0
    ingest_min_s: float = 0.4
    ingest_max_s: float = 0.6
    detail_s: float = 0.3
    step_s: float = 0.5
    agent_s: float = 0.4


class ArtifactConfig(BaseModel):
    presentation_image_delay_s: float = 4.0
    video_poll_interval_s: float = 10.0
    tool_latency_s: float = 1.5
    spreadsheet_delay_s: float = 1.5


class AppSettings(BaseModel):
    generation: GenerationEndpointConfig = Field(default_factory=GenerationEndpointConfig)
    models: ModelTierConfig = Field(default_factory=ModelTierConfig)
    pacing: PacingConfig = Field(default_factory=PacingConfig)
    artifacts: ArtifactConfig = Field(default_factory=ArtifactConfig)
    database_path: str = "universum_data.db"
    host: str = "0.0.0.0"
    port: int = 8000
    locale: str = "en"
    persist_debounce_ms: int = 500
    recent_conversation_limit: int = 5
    recent_attachment_limit: int = 20

    def model_for_label(self, label: Optional[str]) -> str:
        if label == FAST_LABEL:
            return self.models.fast
        return self.models.capable

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("generation", {}).get("api_key"):
            data["generation"]["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "api_key": os.getenv("GEMINI_API_KEY"),
        "base_url": os.getenv("GEMINI_BASE_URL"),
        "model_capable": os.getenv("MODEL_CAPABLE"),
        "model_fast": os.getenv("MODEL_FAST"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "locale": os.getenv("LOCALE"),
        "pacing_scale": os.getenv("PACING_SCALE"),
        "persist_debounce_ms": os.getenv("PERSIST_DEBOUNCE_MS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "persist_debounce_ms" in cleaned:
        cleaned["persist_debounce_ms"] = int(cleaned["persist_debounce_ms"])
    if "pacing_scale" in cleaned:
        cleaned["pacing_scale"] = float(cleaned["pacing_scale"])
    return cleaned


def _nest_env(env_data: Dict[str, Any]) -> Dict[str, Any]:
    """Fold flat env values into the nested settings layout."""
    nested: Dict[str, Any] = {}
    generation: Dict[str, Any] = {}
    models: Dict[str, Any] = {}
    for key, value in env_data.items():
        if key in ("api_key", "base_url"):
            generation[key] = value
        elif key == "model_capable":
            models["capable"] = value
        elif key == "model_fast":
            models["fast"] = value
        elif key == "pacing_scale":
            nested["pacing"] = {"scale": value}
        else:
            nested[key] = value
    if generation:
        nested["generation"] = generation
    if models:
        nested["models"] = models
    return nested


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _nest_env(_load_from_env())
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    generation = merged.get("generation") or {}
    env_key = (env_data.get("generation") or {}).get("api_key")
    if not generation.get("api_key") and env_key:
        generation["api_key"] = env_key
        merged["generation"] = generation
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
