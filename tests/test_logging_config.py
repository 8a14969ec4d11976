import logging
from logging.config import dictConfig

from baseoff_import.core.logging_config import LOG_FORMAT, QUIET_LOGGERS, build_logging_config


def test_config_uses_requested_level():
    config = build_logging_config("debug")

    assert config["root"]["level"] == "DEBUG"
    assert config["handlers"]["console"]["level"] == "DEBUG"
    assert config["loggers"]["baseoff_import"]["level"] == "DEBUG"
    assert config["formatters"]["pipeline"]["format"] == LOG_FORMAT


def test_client_libraries_are_capped_at_warning():
    config = build_logging_config("DEBUG")

    for name in ("botocore", "httpx"):
        assert name in QUIET_LOGGERS
        assert config["loggers"][name]["level"] == "WARNING"


def test_config_is_accepted_by_dictconfig():
    root = logging.getLogger()
    app = logging.getLogger("baseoff_import")
    saved_handlers, saved_level, saved_app_level = root.handlers[:], root.level, app.level
    try:
        dictConfig(build_logging_config("WARNING"))
        assert logging.getLogger("s3transfer").level == logging.WARNING
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        app.setLevel(saved_app_level)
