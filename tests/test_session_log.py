from pathlib import Path

from kforge.observability import strip_ansi
from kforge.session_log import SETTINGS_SENTINEL, SessionLog, VariableSnapshot, diff_settings


def test_diff_settings_keeps_new_and_changed_names_only() -> None:
    before = VariableSnapshot.take({"HOME": "/root", "ARCH": "arm", "TOKEN": "a"})
    after = VariableSnapshot.take(
        {"HOME": "/root", "ARCH": "arm64", "TOKEN": "b"},
        {"CODENAME": "pixel3", "lower": "x", "AB": "too-short", "MULTI": "a\nb"},
    )

    lines = diff_settings(before, after, denylist=("TOKEN",))

    assert lines == ["ARCH=arm64", "CODENAME=pixel3", "MULTI=a b"]


def test_capture_is_a_noop_without_a_log_file(tmp_path: Path) -> None:
    log = SessionLog(tmp_path / "missing.log")

    assert log.capture(VariableSnapshot.take({"CODENAME": "pixel3"})) is False
    assert not log.exists()


def test_capture_twice_writes_exactly_one_settings_block(tmp_path: Path) -> None:
    log = SessionLog(tmp_path / "logs" / "build.log", before=VariableSnapshot.take({"HOME": "/"}))
    log.write_banner()
    log.begin_transcript("make -C kernel kernelversion")
    log.append("\x1b[32m4.9.337\x1b[0m\n")
    log.end_transcript(0)
    forwarded: list[Path] = []
    after = VariableSnapshot.take({"HOME": "/", "LINUX_VERSION": "4.9.337"})

    first = log.capture(after, forward=forwarded.append)
    second = log.capture(after, forward=forwarded.append)

    content = log.path.read_text(encoding="utf-8")
    assert first is True
    assert second is False
    assert content.count(SETTINGS_SENTINEL) == 1
    assert "\x1b[" not in content
    assert forwarded == [log.path]
    assert log.settings() == {"LINUX_VERSION": "4.9.337"}
    assert log.transcripts() == ["make -C kernel kernelversion"]


def test_reopen_drops_block_so_the_next_capture_is_last(tmp_path: Path) -> None:
    log = SessionLog(tmp_path / "session.log")
    log.write_banner()
    log.begin_transcript("make pixel3_defconfig")
    log.end_transcript(2)
    log.capture(VariableSnapshot.take({"ARCH": "arm64"}))

    assert log.reopen() is True
    assert log.reopen() is False
    log.begin_transcript("make -j4")
    log.end_transcript(0)
    log.capture(VariableSnapshot.take({"ARCH": "arm64", "REALCC": "clang"}))

    text = log.path.read_text(encoding="utf-8")
    assert text.count(SETTINGS_SENTINEL) == 1
    assert text.index("$ make -j4") < text.index(SETTINGS_SENTINEL)
    assert log.transcripts() == ["make pixel3_defconfig", "make -j4"]
    assert log.settings() == {"ARCH": "arm64", "REALCC": "clang"}


def test_write_banner_truncates_previous_content(tmp_path: Path) -> None:
    log = SessionLog(tmp_path / "build.log")
    log.write_banner()
    log.begin_transcript("make")
    log.end_transcript(2)

    log.write_banner()

    assert log.transcripts() == []
    assert not log.contains_sentinel()


def test_strip_ansi_removes_colour_and_cursor_sequences() -> None:
    assert strip_ansi("\x1b[1;31mERROR\x1b[0m \x1b[2K\x1b[H") == "ERROR "
