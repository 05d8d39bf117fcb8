import logging

import pytest

from nvshelf import log
from nvshelf.log import TRACE, get_logger, init_log


@pytest.fixture(autouse=True)
def clean_log():
    log._reset_log()
    yield
    log._reset_log()


def test_file_sink_filters_by_severity(tmp_path):
    path = tmp_path / "out.log"
    assert init_log("error", str(path)) is True
    logger = get_logger()
    logger.error("shown")
    logger.info("hidden")
    assert path.read_text() == "shown\n"


def test_trace_level_lets_everything_through(tmp_path):
    path = tmp_path / "trace.log"
    init_log("trace", str(path))
    logger = get_logger()
    logger.log(TRACE, "first")
    logger.critical("second")
    assert path.read_text() == "first\nsecond\n"


def test_child_loggers_reach_the_sink(tmp_path):
    path = tmp_path / "child.log"
    init_log("info", str(path))
    logging.getLogger("nvshelf.shelf_manager").info("from child")
    assert path.read_text() == "from child\n"


def test_only_first_init_counts(tmp_path):
    first = tmp_path / "first.log"
    second = tmp_path / "second.log"
    assert init_log("fatal", str(first)) is True
    assert init_log("trace", str(second)) is False
    assert not second.exists()
    get_logger().error("dropped")
    assert first.read_text() == ""


def test_console_sink(capsys):
    init_log("warning", "")
    get_logger().warning("to console")
    assert capsys.readouterr().err == "to console\n"


def test_unknown_level_rejected(tmp_path):
    with pytest.raises(ValueError):
        init_log("loud", str(tmp_path / "x.log"))
    assert init_log("info", str(tmp_path / "y.log")) is True


def test_logger_name():
    assert get_logger().name == "nvshelf"