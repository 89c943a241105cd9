from pathlib import Path

import pytest

from kforge.errors import (
    AlreadyRunningError,
    CommandError,
    HostEnvironmentError,
    PathResolutionError,
    ValidationError,
)
from kforge.lock import InstanceLock
from kforge.settings import DEFAULT, Settings, parse_cfg


def test_error_exit_statuses_follow_error_codes() -> None:
    assert ValidationError("bad").exit_status == 1
    assert CommandError("failed").exit_status == 1
    assert PathResolutionError("missing").exit_status == 2
    assert HostEnvironmentError("root").exit_status == 68
    assert AlreadyRunningError("busy").exit_status == 114


def test_error_to_dict_carries_hint_and_context() -> None:
    error = ValidationError("Bad codename.", hint="Use letters.", context={"codename": "x"})

    payload = error.to_dict()

    assert payload["code"] == "E_VALIDATION"
    assert payload["hint"] == "Use letters."
    assert payload["context"] == {"codename": "x"}
    assert "Hint: Use letters." in str(error)


def test_parse_cfg_handles_scalars_arrays_and_comments() -> None:
    text = """
# comment
CODENAME=pixel3
KERNEL_DIR="/home/me/kernel"  # trailing
LTO=True
INCLUDED=(Image.gz-dtb
  dtbo.img)
PROTON_CLANG_OPTIONS=(CC=clang LD=ld.lld)
"""
    values = parse_cfg(text)

    assert values["CODENAME"] == "pixel3"
    assert values["KERNEL_DIR"] == "/home/me/kernel"
    assert values["LTO"] == "True"
    assert values["INCLUDED"] == ("Image.gz-dtb", "dtbo.img")
    assert values["PROTON_CLANG_OPTIONS"] == ("CC=clang", "LD=ld.lld")


def test_settings_prefers_user_config_and_env_overrides(tmp_path: Path) -> None:
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "settings.cfg").write_text("CODENAME=base\n", encoding="utf-8")
    (etc / "user.cfg").write_text(
        "CODENAME=pixel3\nLTO=true\nPROTON_CLANG_OPTIONS=(CC=clang)\n",
        encoding="utf-8",
    )

    settings = Settings.load(tmp_path, environ={"KFORGE_TAG": "custom", "UNRELATED": "x"})

    assert settings.codename == "pixel3"
    assert settings.lto is True
    assert settings.tag == "custom"
    assert settings.kernel_dir == DEFAULT
    assert settings.toolchain_options["proton-clang"] == ("CC=clang",)


def test_settings_load_rejects_missing_root(tmp_path: Path) -> None:
    with pytest.raises(PathResolutionError) as excinfo:
        Settings.load(tmp_path / "missing", environ={})

    assert excinfo.value.exit_status == 2


def test_notifications_need_both_credentials(tmp_path: Path) -> None:
    only_chat = Settings(root=tmp_path, telegram_chat_id="1")
    both = only_chat.replace(telegram_bot_token="token")

    assert only_chat.notifications_configured is False
    assert both.notifications_configured is True


def test_instance_lock_refuses_second_holder(tmp_path: Path) -> None:
    lock_path = tmp_path / "kforge.lock"

    with InstanceLock(lock_path) as first:
        assert first.held
        with pytest.raises(AlreadyRunningError) as excinfo:
            InstanceLock(lock_path).acquire()

    assert excinfo.value.exit_status == 114
    second = InstanceLock(lock_path)
    second.acquire()
    assert second.held
    second.release()
