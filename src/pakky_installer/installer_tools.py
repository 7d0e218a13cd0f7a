"""Package manager command builders.

Each supported package source has an `*InstallerTool` dataclass that
knows where its executable lives, which arguments install or reinstall
a package, and which environment the process needs. Processes are
always started directly from an argument list, never through a shell.

GUI applications are often started with a minimal ``PATH`` that lacks
the directories package managers install into, so executables are
looked up on an enhanced path and child processes get the same path.
"""

import os
import re
import shutil
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from logging import getLogger
from typing import NamedTuple

from qtpy.QtCore import QProcessEnvironment

from pakky_installer.items import ItemAction, ItemKind

log = getLogger(__name__)

PACKAGE_NAME_PATTERN = re.compile(r'[a-z0-9][a-z0-9\-_@/.]*', re.IGNORECASE)
MAX_PACKAGE_NAME_LENGTH = 128

# Directories prepended to PATH when they are missing from it
EXTRA_PATH_DIRS = (
    '/opt/homebrew/bin',
    '/opt/homebrew/sbin',
    '/usr/local/bin',
    '/usr/local/sbin',
    '/home/linuxbrew/.linuxbrew/bin',
)

HOMEBREW_CANDIDATES = (
    '/opt/homebrew/bin/brew',
    '/usr/local/bin/brew',
    '/home/linuxbrew/.linuxbrew/bin/brew',
)

# `brew list` flag per item kind whose installed state can be queried
BREW_LIST_FLAGS = {ItemKind.FORMULA: '--formula', ItemKind.CASK: '--cask'}


def is_valid_package_name(name: str) -> bool:
    """Check `name` against the package name allow-list."""
    return (
        bool(PACKAGE_NAME_PATTERN.fullmatch(name))
        and len(name) <= MAX_PACKAGE_NAME_LENGTH
    )


def enhanced_path(path: str | None = None) -> str:
    """Return `path` (default: ``$PATH``) with package manager dirs added."""
    if path is None:
        path = os.environ.get('PATH', '')
    entries = [entry for entry in path.split(os.pathsep) if entry]
    if os.name != 'nt':
        missing = [d for d in EXTRA_PATH_DIRS if d not in entries]
        entries = missing + entries
    return os.pathsep.join(entries)


def homebrew_executable() -> str | None:
    """Find the ``brew`` executable, or None if Homebrew is missing."""
    for candidate in HOMEBREW_CANDIDATES:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return shutil.which('brew', path=enhanced_path())


class InstalledPackages(NamedTuple):
    """Names reported as installed by the package manager."""

    formulae: frozenset[str] = frozenset()
    casks: frozenset[str] = frozenset()

    def contains(self, kind: ItemKind, name: str) -> bool:
        if kind == ItemKind.FORMULA:
            return name in self.formulae
        if kind == ItemKind.CASK:
            return name in self.casks
        return False


def parse_package_list(output: str) -> frozenset[str]:
    """Package names from the output of ``brew list``, one per line."""
    return frozenset(
        line.strip() for line in output.splitlines() if line.strip()
    )


@dataclass(frozen=True)
class AbstractInstallerTool:
    """Abstract base class for installer tools."""

    action: ItemAction
    pkgs: tuple[str, ...]
    kind: ItemKind | None = None

    # name of the executable looked up on the enhanced PATH
    EXECUTABLE_NAME = ''

    @classmethod
    def executable(cls) -> str | None:
        "Path to the executable that will run the task"
        if not cls.EXECUTABLE_NAME:
            raise NotImplementedError
        return shutil.which(cls.EXECUTABLE_NAME, path=enhanced_path())

    # abstract method
    def arguments(self) -> list[str]:
        "Arguments supplied to the executable"
        raise NotImplementedError

    def environment(
        self, env: QProcessEnvironment = None
    ) -> QProcessEnvironment:
        "Changes needed in the environment variables."
        if env is None:
            env = QProcessEnvironment.systemEnvironment()
        env.insert('PATH', enhanced_path(env.value('PATH', '')))
        return env

    @classmethod
    def available(cls) -> bool:
        """Check if the executable can be found."""
        return cls.executable() is not None

    def _check_action(self) -> None:
        if self.action not in (ItemAction.INSTALL, ItemAction.REINSTALL):
            raise ValueError(f"Action '{self.action}' not supported!")


class HomebrewInstallerTool(AbstractInstallerTool):
    """Homebrew installer tool, for formulae and casks."""

    EXECUTABLE_NAME = 'brew'

    @classmethod
    def executable(cls) -> str | None:
        return homebrew_executable()

    def arguments(self) -> list[str]:
        self._check_action()
        args = [ItemAction(self.action).value]
        if self.kind == ItemKind.CASK:
            args.append('--cask')
        if log.getEffectiveLevel() < 20:  # DEBUG level
            args.append('--verbose')
        return [*args, *self.pkgs]

    def environment(
        self, env: QProcessEnvironment = None
    ) -> QProcessEnvironment:
        env = super().environment(env)
        env.insert('HOMEBREW_NO_AUTO_UPDATE', '1')
        env.insert('HOMEBREW_NO_ENV_HINTS', '1')
        return env

    def list_arguments(self) -> list[str]:
        "Arguments listing the installed packages of `kind`"
        return ['list', BREW_LIST_FLAGS[ItemKind(self.kind)]]


class MasInstallerTool(AbstractInstallerTool):
    """Mac App Store installer tool, driven through the ``mas`` CLI."""

    EXECUTABLE_NAME = 'mas'

    def arguments(self) -> list[str]:
        self._check_action()
        args = ['install']
        if self.action == ItemAction.REINSTALL:
            args.append('--force')
        return [*args, *self.pkgs]


class WingetInstallerTool(AbstractInstallerTool):
    """Windows Package Manager installer tool."""

    EXECUTABLE_NAME = 'winget'

    def arguments(self) -> list[str]:
        self._check_action()
        args = [
            'install',
            '--exact',
            '--silent',
            '--accept-package-agreements',
            '--accept-source-agreements',
        ]
        if self.action == ItemAction.REINSTALL:
            args.append('--force')
        for pkg in self.pkgs:
            args.extend(['--id', pkg])
        return args


class ChocolateyInstallerTool(AbstractInstallerTool):
    """Chocolatey installer tool."""

    EXECUTABLE_NAME = 'choco'

    def arguments(self) -> list[str]:
        self._check_action()
        args = ['install', *self.pkgs, '-y', '--no-progress']
        if self.action == ItemAction.REINSTALL:
            args.append('--force')
        return args


class AptInstallerTool(AbstractInstallerTool):
    """APT installer tool for Debian based distributions."""

    EXECUTABLE_NAME = 'apt-get'

    def arguments(self) -> list[str]:
        self._check_action()
        args = ['install', '-y']
        if self.action == ItemAction.REINSTALL:
            args.append('--reinstall')
        return [*args, *self.pkgs]

    def environment(
        self, env: QProcessEnvironment = None
    ) -> QProcessEnvironment:
        env = super().environment(env)
        env.insert('DEBIAN_FRONTEND', 'noninteractive')
        return env


class DnfInstallerTool(AbstractInstallerTool):
    """DNF installer tool for Fedora based distributions."""

    EXECUTABLE_NAME = 'dnf'

    def arguments(self) -> list[str]:
        self._check_action()
        return [ItemAction(self.action).value, '-y', *self.pkgs]


class PacmanInstallerTool(AbstractInstallerTool):
    """Pacman installer tool for Arch based distributions."""

    EXECUTABLE_NAME = 'pacman'

    def arguments(self) -> list[str]:
        self._check_action()
        args = ['-S', '--noconfirm']
        if self.action == ItemAction.INSTALL:
            # skip packages that are already up to date
            args.append('--needed')
        return [*args, *self.pkgs]


INSTALLER_TOOLS: dict[ItemKind, type[AbstractInstallerTool]] = {
    ItemKind.FORMULA: HomebrewInstallerTool,
    ItemKind.CASK: HomebrewInstallerTool,
    ItemKind.MAS: MasInstallerTool,
    ItemKind.WINGET: WingetInstallerTool,
    ItemKind.CHOCOLATEY: ChocolateyInstallerTool,
    ItemKind.APT: AptInstallerTool,
    ItemKind.DNF: DnfInstallerTool,
    ItemKind.PACMAN: PacmanInstallerTool,
}


def tool_for_kind(kind: ItemKind) -> type[AbstractInstallerTool]:
    """Return the installer tool class handling items of `kind`."""
    try:
        return INSTALLER_TOOLS[ItemKind(kind)]
    except KeyError:
        raise ValueError(f'No installer tool for {kind} items') from None


def build_tool(
    kind: ItemKind, name: str, action: ItemAction = ItemAction.INSTALL
) -> AbstractInstallerTool:
    """Build the tool instance that installs a single package."""
    return tool_for_kind(kind)(action=action, pkgs=(name,), kind=kind)


def shell_command(command: str) -> tuple[str, Sequence[str]]:
    """Program and arguments running `command` through the system shell."""
    if sys.platform == 'win32':
        comspec = os.environ.get('COMSPEC', 'cmd.exe')
        return comspec, ['/d', '/s', '/c', command]
    shell = '/bin/bash' if os.path.isfile('/bin/bash') else '/bin/sh'
    return shell, ['-c', command]
