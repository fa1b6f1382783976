import logging

from coldstart.core.logging import (
    GREEN,
    NOTICE,
    ColoredFormatter,
    UvicornAccessFilter,
    setup_logging,
)


def _record(message: str, level: int = logging.INFO, name: str = "coldstart.test") -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


def test_plain_format_has_level_and_name():
    formatted = ColoredFormatter(use_color=False).format(_record("Backend app: starting -> ready"))

    assert "| INFO     | coldstart.test | Backend app: starting -> ready" in formatted
    assert "\033[" not in formatted


def test_ready_state_is_highlighted():
    formatted = ColoredFormatter().format(_record("Backend app: starting -> ready"))

    assert f"{GREEN}ready" in formatted


def test_notice_is_message_only():
    assert ColoredFormatter().format(_record("Route / -> app", level=NOTICE)) == "Route / -> app"


def test_access_filter_quiets_operational_polling():
    access_filter = UvicornAccessFilter()
    polling = _record('127.0.0.1:5000 - "GET /_coldstart/health HTTP/1.1" 200', name="uvicorn.access")
    proxied = _record('127.0.0.1:5000 - "GET /api/items HTTP/1.1" 200', name="uvicorn.access")

    assert access_filter.filter(polling) and access_filter.filter(proxied)
    assert polling.levelno == logging.DEBUG
    assert proxied.levelno == logging.INFO


def test_setup_logging_is_repeatable():
    setup_logging(debug=True)
    logger = setup_logging("coldstart")

    access_filters = [
        existing
        for existing in logging.getLogger("uvicorn.access").filters
        if isinstance(existing, UvicornAccessFilter)
    ]
    assert len(access_filters) == 1
    assert logger.name == "coldstart"
    assert logging.getLogger("httpx").level == logging.WARNING
