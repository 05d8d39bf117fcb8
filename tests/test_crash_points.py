import pytest

from nvshelf import crash_points
from nvshelf.crash_points import (
    CrashPointReached,
    crash_here,
    disable_crash_point,
    enable_crash_point,
    set_debug,
)


@pytest.fixture(autouse=True)
def clean_state():
    crash_points._reset()
    yield
    crash_points._reset()


def test_enabled_point_crashes(capsys):
    set_debug(True)
    enable_crash_point("alloc")
    with pytest.raises(CrashPointReached) as info:
        crash_here("alloc")
    assert info.value.location == "alloc"
    assert info.value.code == 1
    assert capsys.readouterr().out == "I'm going to crash at alloc\n"


def test_crash_is_a_system_exit():
    set_debug(True)
    enable_crash_point("free")
    with pytest.raises(SystemExit):
        crash_here("free")


def test_disabled_point_does_not_crash(capsys):
    set_debug(True)
    enable_crash_point("alloc")
    disable_crash_point("alloc")
    assert crash_here("alloc") is None
    assert capsys.readouterr().out == ""


def test_unknown_point_does_not_crash(capsys):
    set_debug(True)
    enable_crash_point("alloc")
    crash_here("other")
    assert capsys.readouterr().out == ""


def test_points_ignored_without_debug(capsys):
    enable_crash_point("alloc")
    crash_here("alloc")
    set_debug(True)
    crash_here("alloc")
    assert capsys.readouterr().out == ""


def test_reenable_after_disable(capsys):
    set_debug(True)
    enable_crash_point("x")
    disable_crash_point("x")
    enable_crash_point("x")
    with pytest.raises(CrashPointReached):
        crash_here("x")
    assert "x" in capsys.readouterr().out