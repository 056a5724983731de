import pytest

from sirin import log_buffer


@pytest.fixture(autouse=True)
def _empty_buffer():
    log_buffer.clear()
    yield
    log_buffer.clear()


def test_recent_returns_lines_oldest_first():
    for line in ("one", "two", "three"):
        log_buffer.push(line)
    assert log_buffer.recent(2) == ["two", "three"]
    assert log_buffer.recent(10) == ["one", "two", "three"]


def test_recent_zero_is_empty():
    log_buffer.push("x")
    assert log_buffer.recent(0) == []


def test_buffer_keeps_only_max_lines():
    total = log_buffer.MAX_LINES + 5
    for i in range(total):
        log_buffer.push(f"line {i}")
    lines = log_buffer.recent(total)
    assert len(lines) == log_buffer.MAX_LINES
    assert lines[0] == "line 5"
    assert lines[-1] == f"line {total - 1}"


def test_snapshot_text_joins_lines():
    log_buffer.push("a")
    log_buffer.push("b")
    assert log_buffer.snapshot_text(5) == "a\nb"


def test_clear_empties_buffer():
    log_buffer.push("a")
    log_buffer.clear()
    assert log_buffer.recent(5) == []
    assert log_buffer.snapshot_text(5) == ""


def test_log_writes_stderr_and_buffer(capsys):
    log_buffer.log("[followup] hello")
    captured = capsys.readouterr()
    assert captured.err == "[followup] hello\n"
    assert log_buffer.recent(1) == ["[followup] hello"]