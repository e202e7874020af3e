import logging

from shieldagent.core.logging import log_event, setup_logging


def test_log_event_formats_sorted_fields(caplog):
    logger = logging.getLogger("shieldagent.tests")
    with caplog.at_level(logging.INFO, logger="shieldagent.tests"):
        log_event(logger, "job_state", to_state="running", job_id="abc")

    record = caplog.records[-1]
    assert record.getMessage() == "job_state | job_id=abc to_state=running"
    assert record.event == "job_state"
    assert record.job_id == "abc"


def test_log_event_renames_reserved_keys(caplog):
    logger = logging.getLogger("shieldagent.tests")
    with caplog.at_level(logging.WARNING, logger="shieldagent.tests"):
        log_event(logger, "plugin_failed", logging.WARNING, name="fs", module="x")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.field_name == "fs"
    assert record.field_module == "x"
    assert record.name == "shieldagent.tests"


def test_log_event_without_fields(caplog):
    logger = logging.getLogger("shieldagent.tests")
    with caplog.at_level(logging.INFO, logger="shieldagent.tests"):
        log_event(logger, "agent_stopped")
    assert caplog.records[-1].getMessage() == "agent_stopped"


def test_setup_logging_env_wins(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    root = logging.getLogger()
    previous = root.level
    try:
        setup_logging("warning")
        assert root.level == logging.DEBUG
        assert logging.getLogger("paramiko").level == logging.DEBUG

        monkeypatch.delenv("LOG_LEVEL")
        setup_logging("warning")
        assert root.level == logging.WARNING
        assert logging.getLogger("paramiko").level == logging.WARNING
    finally:
        root.setLevel(previous)
        logging.getLogger("paramiko").setLevel(logging.NOTSET)
