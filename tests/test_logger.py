import logging

from botpanel.config import Settings
from botpanel.utils.logger import configure_logging, get_logger


def test_configure_logging_writes_to_logfile(tmp_path, monkeypatch):
    root = logging.getLogger("botpanel")
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    logfile = tmp_path / "botpanel.log"

    configure_logging("debug", str(logfile))
    try:
        assert root.level == logging.DEBUG
        get_logger("lifecycle").info("bot 7 connected")
        for handler in root.handlers:
            handler.flush()
        text = logfile.read_text(encoding="utf-8")
        assert "INFO botpanel.lifecycle: bot 7 connected" in text
    finally:
        for handler in root.handlers:
            handler.close()


def test_get_logger_prefixes_names():
    assert get_logger("probe").name == "botpanel.probe"
    assert get_logger("botpanel.db").name == "botpanel.db"
    assert get_logger().name == "botpanel"


def test_log_file_setting_defaults_to_none():
    assert Settings(LOG_FILE=None).LOG_FILE is None
    assert not hasattr(Settings, "DEV_MODE")
