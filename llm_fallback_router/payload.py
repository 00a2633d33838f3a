from __future__ import annotations

import json
from typing import Any

from fastapi import status

from llm_fallback_router.errors import PayloadUnrepresentable, RequestMalformed

_TRUTHY_STRINGS = {"true", "1", "yes", "on"}


class RequestPayload:
    """Schema-less chat-completion body with fail-closed typed accessors.

    Only ``model`` and ``stream`` are ever interpreted; every other field is
    carried through re-serialization untouched and in its original order.
    """

    def __init__(self, document: dict[str, Any]) -> None:
        self._document = document

    @classmethod
    def parse(cls, body: bytes) -> RequestPayload:
        if not body:
            raise RequestMalformed(
                "empty request body", status.HTTP_503_SERVICE_UNAVAILABLE
            )
        try:
            # Invalid UTF-8 becomes U+FFFD rather than failing the request.
            document = json.loads(body.decode("utf-8", errors="replace"))
        except (ValueError, RecursionError) as exc:
            raise RequestMalformed(
                "invalid json body", status.HTTP_503_SERVICE_UNAVAILABLE
            ) from exc
        if not isinstance(document, dict):
            raise RequestMalformed(
                "invalid json body", status.HTTP_503_SERVICE_UNAVAILABLE
            )
        return cls(document)

    def get_string(self, key: str) -> str | None:
        value = self._document.get(key)
        if not isinstance(value, str):
            return None
        return value.strip()

    def get_bool(self, key: str) -> bool:
        value = self._document.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY_STRINGS
        return False

    @property
    def model(self) -> str:
        return self.get_string("model") or ""

    @property
    def stream(self) -> bool:
        return self.get_bool("stream")

    def with_model(self, model: str) -> bytes:
        document = dict(self._document)
        document["model"] = model
        try:
            return json.dumps(
                document,
                ensure_ascii=False,
                allow_nan=False,
                separators=(",", ":"),
            ).encode("utf-8")
        except (TypeError, ValueError, RecursionError) as exc:
            raise PayloadUnrepresentable(str(exc)) from exc
