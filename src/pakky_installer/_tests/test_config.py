import stat
from unittest.mock import patch

from pakky_installer import config
from pakky_installer.installer_queue import InstallSettings


def test_config_file(tmp_path):
    TMP_DEFAULT_CONFIG_PATH = tmp_path / ".pakky"
    TMP_DEFAULT_CONFIG_FILE_PATH = TMP_DEFAULT_CONFIG_PATH / "pakky.ini"

    assert not TMP_DEFAULT_CONFIG_PATH.exists()
    assert not TMP_DEFAULT_CONFIG_FILE_PATH.exists()

    with (
        patch.object(config, "DEFAULT_CONFIG_PATH", TMP_DEFAULT_CONFIG_PATH),
        patch.object(
            config, "DEFAULT_CONFIG_FILE_PATH", TMP_DEFAULT_CONFIG_FILE_PATH
        ),
    ):
        initial_config = config.get_configuration()
        assert TMP_DEFAULT_CONFIG_PATH.exists()
        assert TMP_DEFAULT_CONFIG_FILE_PATH.exists()
        assert initial_config.getboolean("install", "continue_on_error")
        assert config.load_settings() == InstallSettings()

        initial_config["install"]["continue_on_error"] = "false"
        with open(TMP_DEFAULT_CONFIG_FILE_PATH, "w") as configfile:
            initial_config.write(configfile)

        second_config = config.get_configuration()
        assert not second_config.getboolean("install", "continue_on_error")
        assert config.load_settings(second_config) == InstallSettings(
            continue_on_error=False
        )


def test_user_values(tmp_path):
    values_path = tmp_path / ".pakky.env"
    assert config.load_user_values(values_path) == {}

    values = {"email": "me@example.com", "token": "a=b"}
    config.save_user_values(values, values_path)

    assert stat.S_IMODE(values_path.stat().st_mode) == 0o600
    assert config.load_user_values(values_path) == values


def test_user_values_default_path(tmp_path):
    values_path = tmp_path / "values.env"
    values_path.write_text("# comment\nname = bob\n\nbroken\n")

    with patch.object(config, "DEFAULT_VALUES_FILE_PATH", values_path):
        assert config.load_user_values() == {"name": "bob"}
