import configparser
import os
from collections.abc import Mapping
from pathlib import Path

from pakky_installer.installer_queue import InstallSettings

DEFAULT_CONFIG_PATH = Path.home() / ".pakky"
DEFAULT_CONFIG_FILE_PATH = DEFAULT_CONFIG_PATH / "pakky.ini"
DEFAULT_VALUES_FILE_PATH = Path.home() / ".pakky.env"

INSTALL_SECTION = "install"


def get_configuration():
    """
    Get installer configuration.

    Holds the default run settings, created on first use:
        * `['install']['continue_on_error']` -> bool
        * `['install']['skip_already_installed']` -> bool
        * `['install']['parallel_installs']` -> bool
    """
    DEFAULT_CONFIG_PATH.mkdir(exist_ok=True)
    config = configparser.ConfigParser()
    defaults = InstallSettings()

    if DEFAULT_CONFIG_FILE_PATH.exists():
        config.read(DEFAULT_CONFIG_FILE_PATH)

    if not config.has_section(INSTALL_SECTION):
        # Set default config
        config[INSTALL_SECTION] = {
            "continue_on_error": defaults.continue_on_error,
            "skip_already_installed": defaults.skip_already_installed,
            "parallel_installs": defaults.parallel_installs,
        }

        # Write the configuration to a file
        with open(DEFAULT_CONFIG_FILE_PATH, "w") as configfile:
            config.write(configfile)

    return config


def load_settings(config=None) -> InstallSettings:
    """Read the run settings stored in `config`."""
    if config is None:
        config = get_configuration()
    defaults = InstallSettings()
    section = INSTALL_SECTION
    return InstallSettings(
        continue_on_error=config.getboolean(
            section, "continue_on_error", fallback=defaults.continue_on_error
        ),
        skip_already_installed=config.getboolean(
            section,
            "skip_already_installed",
            fallback=defaults.skip_already_installed,
        ),
        parallel_installs=config.getboolean(
            section, "parallel_installs", fallback=defaults.parallel_installs
        ),
    )


def load_user_values(path: Path | None = None) -> dict[str, str]:
    """Read the values users entered for script prompts.

    The file holds one ``key=value`` pair per line. A missing file means
    no values were saved yet.
    """
    path = Path(path or DEFAULT_VALUES_FILE_PATH)
    if not path.exists():
        return {}

    values = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if key.strip() and sep:
            values[key.strip()] = value.strip()
    return values


def save_user_values(
    values: Mapping[str, str], path: Path | None = None
) -> None:
    """Store script prompt values, readable by the owner only."""
    path = Path(path or DEFAULT_VALUES_FILE_PATH)
    content = "\n".join(f"{key}={value}" for key, value in values.items())
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as valuesfile:
        valuesfile.write(content)
    os.chmod(path, 0o600)
