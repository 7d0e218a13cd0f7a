import os
import stat
import textwrap

import pytest

# run Qt without a display
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')

from pakky_installer.installer_queue import InstallerQueue  # noqa: E402
from pakky_installer.installer_tools import (  # noqa: E402
    HomebrewInstallerTool,
    InstalledPackages,
)

FAKE_BREW = """\
#!/bin/sh
# fake package manager: fails for packages named 'broken'
if [ "$1" = "list" ]; then
    case "$2" in
        --formula) printf 'git\\nwget\\n' ;;
        --cask) printf 'firefox\\n' ;;
    esac
    exit 0
fi
for last; do :; done
if [ "$last" = "broken" ]; then
    echo "Error: no formula named $last" >&2
    exit 1
fi
echo "==> Installing $*"
echo "==> Done"
"""

SLOW_LIST_BREW = """\
#!/bin/sh
# fake package manager whose listing never finishes
if [ "$1" = "list" ]; then
    exec sleep 30
fi
echo "==> Installing $*"
"""


def _write_executable(path, content):
    path.write_text(textwrap.dedent(content))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP)
    return path


@pytest.fixture(autouse=True)
def _no_installed_query(monkeypatch):
    # never ask the real package manager what is installed
    monkeypatch.setattr(
        InstallerQueue,
        'INSTALLED_PACKAGES_PROVIDER',
        staticmethod(lambda: InstalledPackages()),
    )


@pytest.fixture
def fake_brew(tmp_path, monkeypatch):
    brew = _write_executable(tmp_path / 'brew', FAKE_BREW)
    monkeypatch.setattr(
        HomebrewInstallerTool, 'executable', lambda *a: str(brew)
    )
    return brew


@pytest.fixture
def slow_list_brew(tmp_path, monkeypatch):
    brew = _write_executable(tmp_path / 'brew', SLOW_LIST_BREW)
    monkeypatch.setattr(
        HomebrewInstallerTool, 'executable', lambda *a: str(brew)
    )
    return brew


@pytest.fixture
def installer(qtbot):
    queue = InstallerQueue()
    yield queue
    if queue.is_running():
        with qtbot.waitSignal(queue.allFinished, timeout=10_000):
            queue.cancel()
