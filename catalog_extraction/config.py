from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class AppSettings:
    data_dir: Path
    store_path: Path
    vision_base_url: str
    vision_api_key: str
    vision_model: str
    vision_max_tokens: int
    vision_temperature: float
    vision_timeout: float
    extraction_concurrency: int
    retry_max_attempts: int
    retry_base_delay: float
    rate_limit_retry_delay: float
    min_image_chars: int
    skip_duplicate_names: bool
    frontend_origin: str
    log_level: str


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw or default)
    except (TypeError, ValueError):
        return int(default)


def _float_env(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw or default)
    except (TypeError, ValueError):
        return float(default)


def _str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name, default) or default).strip()


def _bool_env(name: str, default: bool) -> bool:
    raw = _str_env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _optional_str_env(*names: str) -> Optional[str]:
    for name in names:
        value = _str_env(name)
        if value:
            return value
    return None


def load_settings() -> AppSettings:
    data_dir = Path(_str_env("DATA_DIR", "./data"))
    store_path = Path(_str_env("STORE_PATH") or (data_dir / "extraction.db"))

    data_dir.mkdir(parents=True, exist_ok=True)
    store_path.parent.mkdir(parents=True, exist_ok=True)

    return AppSettings(
        data_dir=data_dir,
        store_path=store_path,
        vision_base_url=_str_env("VISION_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        vision_api_key=_optional_str_env("VISION_API_KEY", "OPENAI_API_KEY") or "",
        vision_model=_str_env("VISION_MODEL", "gpt-4o"),
        vision_max_tokens=_int_env("VISION_MAX_TOKENS", "2048"),
        vision_temperature=_float_env("VISION_TEMPERATURE", "0.1"),
        vision_timeout=max(1.0, _float_env("VISION_TIMEOUT", "120")),
        extraction_concurrency=max(1, _int_env("EXTRACTION_CONCURRENCY", "3")),
        retry_max_attempts=max(1, _int_env("RETRY_MAX_ATTEMPTS", "3")),
        retry_base_delay=max(0.0, _float_env("RETRY_BASE_DELAY", "1.0")),
        rate_limit_retry_delay=max(0.0, _float_env("RATE_LIMIT_RETRY_DELAY", "2.0")),
        min_image_chars=max(0, _int_env("MIN_IMAGE_CHARS", "1000")),
        skip_duplicate_names=_bool_env("SKIP_DUPLICATE_NAMES", True),
        frontend_origin=_str_env("FRONTEND_ORIGIN", f"http://localhost:{os.environ.get('FRONTEND_PORT', '5173')}"),
        log_level=_str_env("LOG_LEVEL", "INFO").upper(),
    )
