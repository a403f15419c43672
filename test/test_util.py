import logging

from kamal_dash.logging_ext import ROOT_LOGGER_NAME, setup_logging
from kamal_dash.util import format_duration, json_line, split_lines, status_line, tail_lines, truncate


def test_format_duration():
    assert format_duration(0.25) == "250ms"
    assert format_duration(4.21) == "4.2s"
    assert format_duration(187) == "3m7s"
    assert format_duration(7500) == "2h5m"


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("a-very-long-container-name", 10) == "a-very-..."
    assert truncate("abcdef", 3) == "abc"


def test_line_helpers():
    assert split_lines("a\n\n  \nb  \n") == ["a", "b  "]
    assert tail_lines("1\n2\n\n3\n", 2) == ["2", "3"]
    assert tail_lines("1\n2", 0) == []
    assert json_line({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'


def test_status_line_icons():
    assert status_line("success", "done") == "✓ done"
    assert status_line("error", "nope") == "✗ nope"
    assert status_line("info", "fyi") == "ℹ fyi"
    assert status_line("warning", "hmm") == "⚠ hmm"


def test_setup_logging_to_file(tmp_path):
    path = tmp_path / "diag" / "kdash.log"
    logger = setup_logging("debug", path)
    try:
        logging.getLogger(f"{ROOT_LOGGER_NAME}.test").debug("hello %s", "file")
        for h in logger.handlers:
            h.flush()
        assert "hello file" in path.read_text()
        assert logger.level == logging.DEBUG
        assert not logger.propagate
    finally:
        setup_logging("INFO", None)


def test_setup_logging_replaces_handlers(tmp_path):
    setup_logging("INFO", tmp_path / "a.log")
    logger = setup_logging("INFO", None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)
