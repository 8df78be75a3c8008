from loguru import logger

from panosphere_app.logging import configure_logging


def test_configure_logging_filters_below_level(capsys):
    configure_logging("warning")
    try:
        logger.info("gate idle")
        logger.warning("camera slow")
        out = capsys.readouterr().out
    finally:
        configure_logging()
    assert "gate idle" not in out
    assert "camera slow" in out
    assert "WARNING" in out
    assert "test_logging" in out


def test_debug_level_shows_debug_records(capsys):
    configure_logging("DEBUG")
    try:
        logger.debug("capture gate moved")
        out = capsys.readouterr().out
    finally:
        configure_logging()
    assert "capture gate moved" in out
