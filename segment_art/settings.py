"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _load_env_file(path: str = ".env") -> None:
    """Populate os.environ from the provided .env file if it exists."""

    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


@dataclass(frozen=True, slots=True)
class Settings:
    """Service endpoints, retry/rate-limit policy and tuned heuristic thresholds."""

    log_level: str = "INFO"

    hf_api_key: str = ""
    hf_base_url: str = "https://api-inference.huggingface.co/models"
    object_detection_model: str = "facebook/detr-resnet-50"
    face_parsing_model: str = "jonathandinu/face-parsing"
    panoptic_model: str = "facebook/mask2former-swin-base-coco-panoptic"

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    prompt_model: str = "gpt-3.5-turbo"

    max_retries: int = 3
    retry_delay: float = 1.0
    max_requests_per_window: int = 20
    request_window: float = 60.0
    request_timeout: float = 300.0

    face_area_threshold: float = 0.20
    person_score_threshold: float = 0.7
    panoptic_score_threshold: float = 0.5

    fill_expand_pixels: int = 2
    fill_feather_radius: int = 5

    @property
    def has_hf_key(self) -> bool:
        return _usable_key(self.hf_api_key)

    @property
    def has_openai_key(self) -> bool:
        return _usable_key(self.openai_api_key)


def _usable_key(value: str) -> bool:
    return bool(value) and "your_key_here" not in value and "_api_key_here" not in value


def _build_settings() -> Settings:
    _load_env_file()

    return Settings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        hf_api_key=os.getenv("HF_API_KEY", ""),
        hf_base_url=os.getenv("HF_BASE_URL", "https://api-inference.huggingface.co/models"),
        object_detection_model=os.getenv("HF_OBJECT_DETECTION_MODEL", "facebook/detr-resnet-50"),
        face_parsing_model=os.getenv("HF_FACE_PARSING_MODEL", "jonathandinu/face-parsing"),
        panoptic_model=os.getenv("HF_PANOPTIC_MODEL", "facebook/mask2former-swin-base-coco-panoptic"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        prompt_model=os.getenv("OPENAI_PROMPT_MODEL", "gpt-3.5-turbo"),
        max_retries=int(os.getenv("SEGMENT_ART_MAX_RETRIES", "3")),
        retry_delay=float(os.getenv("SEGMENT_ART_RETRY_DELAY", "1.0")),
        max_requests_per_window=int(os.getenv("SEGMENT_ART_MAX_REQUESTS", "20")),
        request_window=float(os.getenv("SEGMENT_ART_REQUEST_WINDOW", "60")),
        request_timeout=float(os.getenv("SEGMENT_ART_REQUEST_TIMEOUT", "300")),
        face_area_threshold=float(os.getenv("SEGMENT_ART_FACE_AREA", "0.20")),
        person_score_threshold=float(os.getenv("SEGMENT_ART_PERSON_SCORE", "0.7")),
        panoptic_score_threshold=float(os.getenv("SEGMENT_ART_PANOPTIC_SCORE", "0.5")),
        fill_expand_pixels=int(os.getenv("SEGMENT_ART_FILL_EXPAND", "2")),
        fill_feather_radius=int(os.getenv("SEGMENT_ART_FILL_FEATHER", "5")),
    )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance to avoid re-reading configuration."""

    return _build_settings()
