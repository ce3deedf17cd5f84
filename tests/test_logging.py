import json

import pytest
import structlog

from devenv.logging import (
    CompactJSONRenderer,
    add_timestamp,
    build_processors,
    configure_logging,
    get_logger,
    level_filter,
)


@pytest.fixture(autouse=True)
def reset_level():
    yield
    build_processors("info", json_output=True)


def test_compact_json_renderer():
    """Test single-line JSON rendering"""
    output = CompactJSONRenderer()(
        None,
        "info",
        {
            "timestamp": "2024-01-01T00:00:00+00:00",
            "level": "info",
            "event": "environment_activated",
            "file": "environment.py",
            "environment": "web",
        },
    )

    data = json.loads(output)
    assert "\n" not in output
    assert data["ts"] == "2024-01-01T00:00:00+00:00"
    assert data["lvl"] == "info"
    assert data["msg"] == "environment_activated"
    assert data["file"] == "environment.py"
    assert data["data"] == {"environment": "web"}


def test_renderer_omits_empty_data():
    data = json.loads(CompactJSONRenderer()(None, "info", {"event": "ping", "level": "debug"}))
    assert "data" not in data


def test_add_timestamp_keeps_existing():
    assert add_timestamp(None, "info", {"timestamp": "fixed"})["timestamp"] == "fixed"
    assert "timestamp" in add_timestamp(None, "info", {})


@pytest.mark.parametrize(
    "level,method,dropped",
    [
        ("warning", "info", True),
        ("warning", "debug", True),
        ("warning", "warning", False),
        ("warning", "error", False),
        ("debug", "debug", False),
    ],
)
def test_level_filter(level, method, dropped):
    """Test events below the configured level are dropped"""
    build_processors(level, json_output=True)
    if dropped:
        with pytest.raises(structlog.DropEvent):
            level_filter(None, method, {"event": "x"})
    else:
        assert level_filter(None, method, {"event": "x"}) == {"event": "x"}


def test_ignored_loggers_are_dropped():
    class Named:
        name = "aiohttp.client"

    with pytest.raises(structlog.DropEvent):
        level_filter(Named(), "error", {"event": "x"})


def test_console_processors_when_not_json():
    processors = build_processors("info", json_output=False)
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_configure_logging_and_get_logger():
    configure_logging("not-a-level")
    logger = get_logger("devenv.test")
    logger.info("test_event", key="value")
    assert logger is not None
