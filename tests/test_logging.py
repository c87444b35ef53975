from __future__ import annotations

import logging

from jukebox.core.logging import NOISY_LOGGERS, add_service_name, configure_logging


def test_add_service_name_keeps_explicit_value() -> None:
    assert add_service_name(None, "info", {"event": "x"})["service"] == "jukebox"
    assert add_service_name(None, "info", {"event": "x", "service": "points"})["service"] == "points"


def test_configure_logging_quiets_driver_loggers() -> None:
    configure_logging("DEBUG")

    for logger_name in NOISY_LOGGERS:
        assert logging.getLogger(logger_name).level == logging.WARNING
