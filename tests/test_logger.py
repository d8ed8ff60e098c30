import logging

import pytest

from baitline.logger import LOGGER, InvalidLevelError, LogConfig, parse_level, setup


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    setup(LogConfig())


@pytest.mark.parametrize(
    "level, expected",
    [
        ("", logging.INFO),
        ("debug", logging.DEBUG),
        ("info", logging.INFO),
        ("error", logging.ERROR),
        ("fatal", logging.CRITICAL),
    ],
)
def test_log_level(level, expected):
    setup(LogConfig(level=level))
    assert LOGGER.getEffectiveLevel() == expected
    assert LOGGER.isEnabledFor(expected) is True
    assert LOGGER.isEnabledFor(expected - 1) is False


def test_parse_level_is_case_insensitive():
    assert parse_level("WARN") == logging.WARNING
    assert parse_level("Warning") == logging.WARNING


def test_trace_and_panic_bracket_the_standard_levels():
    assert parse_level("trace") < logging.DEBUG
    assert parse_level("panic") > logging.CRITICAL


def test_invalid_level_raises():
    with pytest.raises(InvalidLevelError, match="verbose"):
        setup(LogConfig(level="verbose"))


def test_invalid_level_is_a_value_error():
    with pytest.raises(ValueError):
        parse_level("loud")


def test_file_output(tmp_path):
    path = tmp_path / "app.log"
    setup(LogConfig(filename=str(path), level="info"))
    LOGGER.info("hello")
    LOGGER.debug("hidden")
    for handler in LOGGER.handlers:
        handler.flush()
    content = path.read_text(encoding="utf-8")
    assert "level=info msg=hello" in content
    assert "hidden" not in content


def test_file_output_appends(tmp_path):
    path = tmp_path / "app.log"
    path.write_text("existing line\n", encoding="utf-8")
    setup(LogConfig(filename=str(path)))
    LOGGER.warning("second")
    for handler in LOGGER.handlers:
        handler.flush()
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "existing line"
    assert "level=warning msg=second" in lines[1]


def test_fields_and_quoting(tmp_path):
    path = tmp_path / "app.log"
    setup(LogConfig(filename=str(path)))
    LOGGER.info("Email sent", extra={"fields": {"email": "user@example.com", "code": 421}})
    for handler in LOGGER.handlers:
        handler.flush()
    content = path.read_text(encoding="utf-8")
    assert 'msg="Email sent" code=421 email=user@example.com' in content


def test_child_loggers_follow_level(tmp_path):
    path = tmp_path / "app.log"
    setup(LogConfig(filename=str(path), level="error"))
    child = logging.getLogger("baitline.child")
    child.warning("dropped")
    child.error("kept")
    for handler in LOGGER.handlers:
        handler.flush()
    content = path.read_text(encoding="utf-8")
    assert "msg=kept" in content
    assert "dropped" not in content


def test_unwritable_file_raises(tmp_path):
    missing = tmp_path / "missing" / "app.log"
    with pytest.raises(OSError):
        setup(LogConfig(filename=str(missing)))