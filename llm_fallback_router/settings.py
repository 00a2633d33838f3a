from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_fallback_router.utils.duration_utils import parse_duration_seconds
from llm_fallback_router.utils.sequence_utils import split_csv

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_LISTEN_PORT = 8080
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_NO_RETRY_STATUS_CODES = "400"

logger = logging.getLogger("uvicorn.error")


class Settings(BaseSettings):
    openai_base_url: str = DEFAULT_BASE_URL
    port: str = str(DEFAULT_LISTEN_PORT)
    default_timeout: str = ""
    fallback_default_timeout: str = ""
    fallback_models: str = ""
    fallback_timeouts: str = ""
    no_retry_status_codes: str = DEFAULT_NO_RETRY_STATUS_CODES
    upstream_connect_timeout_seconds: float = 30.0
    disconnect_poll_interval_seconds: float = 0.25
    proxy_audit_log_enabled: bool = False
    proxy_audit_log_path: str = "logs/proxy_attempts.jsonl"
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def base_url(self) -> str:
        return self.openai_base_url.strip() or DEFAULT_BASE_URL

    @property
    def default_timeout_seconds(self) -> float:
        return _duration_or_default(
            "DEFAULT_TIMEOUT", self.default_timeout, DEFAULT_TIMEOUT_SECONDS
        )

    @property
    def fallback_default_timeout_seconds(self) -> float:
        return _duration_or_default(
            "FALLBACK_DEFAULT_TIMEOUT", self.fallback_default_timeout, 0.0
        )

    @property
    def fallback_models_list(self) -> list[str]:
        return split_csv(self.fallback_models)

    @property
    def fallback_timeouts_map(self) -> dict[str, float]:
        timeouts: dict[str, float] = {}
        for item in split_csv(self.fallback_timeouts):
            model, separator, value = item.partition("=")
            model = model.strip()
            value = value.strip()
            if not separator or not model or not value:
                logger.warning("config_invalid_timeout_pair item=%r", item)
                continue
            parsed = parse_duration_seconds(value)
            if parsed is None:
                logger.warning(
                    "config_invalid_timeout_value model=%s value=%r", model, value
                )
                continue
            timeouts[model] = parsed
        return timeouts

    @property
    def no_retry_status_set(self) -> frozenset[int]:
        raw = self.no_retry_status_codes.strip() or DEFAULT_NO_RETRY_STATUS_CODES
        codes: set[int] = set()
        for item in split_csv(raw):
            try:
                codes.add(int(item))
            except ValueError:
                logger.warning("config_invalid_status_code item=%r", item)
        return frozenset(codes)

    @property
    def listen_address(self) -> tuple[str, int]:
        raw = self.port.strip() or str(DEFAULT_LISTEN_PORT)
        host, _, port = raw.rpartition(":")
        try:
            parsed_port = int(port)
        except ValueError:
            logger.warning(
                "config_invalid_port value=%r using=%d", raw, DEFAULT_LISTEN_PORT
            )
            parsed_port = DEFAULT_LISTEN_PORT
        return host or "0.0.0.0", parsed_port


def _duration_or_default(key: str, raw: str, default: float) -> float:
    if not raw.strip():
        return default
    parsed = parse_duration_seconds(raw)
    if parsed is None:
        logger.warning(
            "config_invalid_duration key=%s value=%r fallback=%ss", key, raw, default
        )
        return default
    return parsed


@lru_cache
def get_settings() -> Settings:
    return Settings()
