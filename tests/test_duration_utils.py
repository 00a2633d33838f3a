import pytest

from llm_fallback_router.utils.duration_utils import (
    parse_duration_seconds,
    parse_go_duration,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("30s", 30.0),
        ("1m30s", 90.0),
        ("1h", 3600.0),
        ("250ms", 0.25),
        ("1.5m", 90.0),
        ("0", 0.0),
        ("-2s", -2.0),
    ],
)
def test_parse_go_duration(raw: str, expected: float) -> None:
    assert parse_go_duration(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["", "5", "1x", "s", "1m30", "abc"])
def test_parse_go_duration_rejects_invalid(raw: str) -> None:
    assert parse_go_duration(raw) is None


def test_parse_duration_seconds_accepts_bare_integers() -> None:
    assert parse_duration_seconds("45") == 45.0
    assert parse_duration_seconds(" 2m ") == 120.0


def test_parse_duration_seconds_rejects_garbage() -> None:
    assert parse_duration_seconds(None) is None
    assert parse_duration_seconds("  ") is None
    assert parse_duration_seconds("1.5") is None
    assert parse_duration_seconds("soon") is None
