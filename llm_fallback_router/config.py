from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import httpx

from llm_fallback_router.errors import ConfigurationError
from llm_fallback_router.settings import Settings


@dataclass(frozen=True, slots=True)
class ProxyConfig:
    """Read-only proxy configuration shared by every request.

    Timeouts are in seconds; ``0`` means the attempt has no deadline.
    """

    target_url: httpx.URL
    fallback_models: tuple[str, ...] = ()
    default_timeout: float = 60.0
    fallback_default_timeout: float = 0.0
    fallback_timeouts: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType({})
    )
    no_retry_statuses: frozenset[int] = frozenset({400})

    @classmethod
    def build(
        cls,
        *,
        base_url: str,
        fallback_models: Iterable[str] = (),
        default_timeout: float = 60.0,
        fallback_default_timeout: float = 0.0,
        fallback_timeouts: Mapping[str, float] | None = None,
        no_retry_statuses: Iterable[int] = (400,),
    ) -> ProxyConfig:
        try:
            target_url = httpx.URL(base_url)
        except httpx.InvalidURL as exc:
            raise ConfigurationError(
                f"OPENAI_BASE_URL={base_url!r} is invalid: {exc}"
            ) from exc
        if not target_url.scheme or not target_url.host:
            raise ConfigurationError(
                f"OPENAI_BASE_URL={base_url!r} is invalid: scheme and host are required"
            )
        return cls(
            target_url=target_url,
            fallback_models=tuple(fallback_models),
            default_timeout=default_timeout,
            fallback_default_timeout=fallback_default_timeout,
            fallback_timeouts=MappingProxyType(dict(fallback_timeouts or {})),
            no_retry_statuses=frozenset(no_retry_statuses),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ProxyConfig:
        return cls.build(
            base_url=settings.base_url,
            fallback_models=settings.fallback_models_list,
            default_timeout=settings.default_timeout_seconds,
            fallback_default_timeout=settings.fallback_default_timeout_seconds,
            fallback_timeouts=settings.fallback_timeouts_map,
            no_retry_statuses=settings.no_retry_status_set,
        )

    def timeout_for_attempt(self, attempt_index: int, model: str) -> float:
        # The requested model always runs under the global default.
        if attempt_index == 0:
            return self.default_timeout
        override = self.fallback_timeouts.get(model)
        if override is not None:
            return override
        if self.fallback_default_timeout > 0:
            return self.fallback_default_timeout
        return self.default_timeout
