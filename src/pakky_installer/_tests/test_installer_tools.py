import os
from unittest.mock import patch

import pytest
from qtpy.QtCore import QProcessEnvironment

from pakky_installer import installer_tools
from pakky_installer.installer_tools import (
    AptInstallerTool,
    ChocolateyInstallerTool,
    DnfInstallerTool,
    HomebrewInstallerTool,
    InstalledPackages,
    MasInstallerTool,
    PacmanInstallerTool,
    WingetInstallerTool,
    build_tool,
    enhanced_path,
    is_valid_package_name,
    parse_package_list,
    shell_command,
    tool_for_kind,
)
from pakky_installer.items import ItemAction, ItemKind


@pytest.mark.parametrize(
    ('name', 'expected'),
    [
        ('git', True),
        ('node@18', True),
        ('homebrew/cask/firefox', True),
        ('Microsoft.VisualStudioCode', True),
        ('python3.12-dev', True),
        ('-rf', False),
        ('', False),
        ('jq; rm -rf ~', False),
        ('$(whoami)', False),
        ('git\n', False),
        ('a' * 129, False),
    ],
)
def test_is_valid_package_name(name, expected):
    assert is_valid_package_name(name) is expected


def test_enhanced_path():
    path = enhanced_path('/usr/bin:/usr/local/bin')
    entries = path.split(os.pathsep)
    assert entries[0] == '/opt/homebrew/bin'
    assert entries.count('/usr/local/bin') == 1
    assert entries[-2:] == ['/usr/bin', '/usr/local/bin']


@pytest.mark.parametrize(
    ('kind', 'action', 'expected'),
    [
        (ItemKind.FORMULA, ItemAction.INSTALL, ['install', 'git']),
        (ItemKind.CASK, ItemAction.INSTALL, ['install', '--cask', 'git']),
        (ItemKind.FORMULA, ItemAction.REINSTALL, ['reinstall', 'git']),
        (ItemKind.MAS, ItemAction.REINSTALL, ['install', '--force', 'git']),
        (
            ItemKind.CHOCOLATEY,
            ItemAction.INSTALL,
            ['install', 'git', '-y', '--no-progress'],
        ),
        (
            ItemKind.APT,
            ItemAction.REINSTALL,
            ['install', '-y', '--reinstall', 'git'],
        ),
        (ItemKind.DNF, ItemAction.REINSTALL, ['reinstall', '-y', 'git']),
        (
            ItemKind.PACMAN,
            ItemAction.INSTALL,
            ['-S', '--noconfirm', '--needed', 'git'],
        ),
    ],
)
def test_arguments(kind, action, expected):
    with patch.object(installer_tools.log, 'getEffectiveLevel', lambda: 30):
        assert build_tool(kind, 'git', action).arguments() == expected


def test_homebrew_verbose_when_debugging():
    tool = build_tool(ItemKind.FORMULA, 'git')
    with patch.object(installer_tools.log, 'getEffectiveLevel', lambda: 10):
        assert tool.arguments() == ['install', '--verbose', 'git']


def test_winget_arguments():
    tool = WingetInstallerTool(
        action=ItemAction.REINSTALL, pkgs=('Git.Git',)
    )
    args = tool.arguments()
    assert args[:3] == ['install', '--exact', '--silent']
    assert '--force' in args
    assert args[-2:] == ['--id', 'Git.Git']


def test_unsupported_action():
    tool = DnfInstallerTool(action='uninstall', pkgs=('git',))
    with pytest.raises(ValueError, match='not supported'):
        tool.arguments()


def test_tool_for_kind():
    assert tool_for_kind(ItemKind.FORMULA) is HomebrewInstallerTool
    assert tool_for_kind('cask') is HomebrewInstallerTool
    assert tool_for_kind(ItemKind.MAS) is MasInstallerTool
    assert tool_for_kind(ItemKind.CHOCOLATEY) is ChocolateyInstallerTool
    assert tool_for_kind(ItemKind.PACMAN) is PacmanInstallerTool
    with pytest.raises(ValueError, match='No installer tool'):
        tool_for_kind(ItemKind.SCRIPT)


def test_environment():
    env = HomebrewInstallerTool(
        action=ItemAction.INSTALL, pkgs=('git',)
    ).environment(QProcessEnvironment())
    assert env.value('HOMEBREW_NO_AUTO_UPDATE') == '1'
    assert '/opt/homebrew/bin' in env.value('PATH').split(os.pathsep)

    env = AptInstallerTool(
        action=ItemAction.INSTALL, pkgs=('git',)
    ).environment(QProcessEnvironment())
    assert env.value('DEBIAN_FRONTEND') == 'noninteractive'


def test_executable_lookup(tmp_path, monkeypatch):
    fake = tmp_path / 'dnf'
    fake.write_text('#!/bin/sh\n')
    fake.chmod(0o755)
    monkeypatch.setenv('PATH', str(tmp_path))
    assert DnfInstallerTool.executable() == str(fake)
    assert DnfInstallerTool.available()
    assert not PacmanInstallerTool.available()


def test_shell_command():
    program, args = shell_command('echo hi')
    assert args[-1] == 'echo hi'
    if os.name != 'nt':
        assert program in ('/bin/bash', '/bin/sh')
        assert args == ['-c', 'echo hi']


def test_list_arguments():
    formula = HomebrewInstallerTool(
        action=ItemAction.INSTALL, pkgs=(), kind=ItemKind.FORMULA
    )
    cask = HomebrewInstallerTool(
        action=ItemAction.INSTALL, pkgs=(), kind=ItemKind.CASK
    )
    assert formula.list_arguments() == ['list', '--formula']
    assert cask.list_arguments() == ['list', '--cask']


def test_parse_package_list():
    assert parse_package_list('git\n  wget \n\n') == {'git', 'wget'}
    assert parse_package_list('') == frozenset()

    installed = InstalledPackages(
        formulae=parse_package_list('git\n'),
        casks=parse_package_list('firefox\n'),
    )
    assert installed.contains(ItemKind.FORMULA, 'git')
    assert not installed.contains(ItemKind.CASK, 'git')
    assert not installed.contains(ItemKind.MAS, 'git')
