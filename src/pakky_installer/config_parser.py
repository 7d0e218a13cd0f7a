"""
Conversion of shareable setup configs into install queues.

A config is the parsed JSON document users import and export. Package
lists live under per-platform keys; each entry is either a plain name or
an object with extra metadata::

    {
        "name": "My setup",
        "settings": {"continue_on_error": false},
        "macos": {"homebrew": {"formulae": ["git", {"name": "node"}]}},
        "scripts": [{"name": "Git identity", "commands": ["..."]}]
    }
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from logging import getLogger

from pakky_installer.installer_queue import InstallSettings
from pakky_installer.items import InstallItem, ItemKind, PromptSpec
from pakky_installer.queue_manager import add_multiple, create_item

log = getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a config does not have the expected shape."""


@dataclass(frozen=True)
class ParsedConfig:
    items: list[InstallItem] = field(default_factory=list)
    settings: InstallSettings = field(default_factory=InstallSettings)
    name: str | None = None
    description: str | None = None
    duplicates: list[str] = field(default_factory=list)


def _section(mapping: Mapping, *keys: str) -> Mapping:
    for key in keys:
        value = mapping.get(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ConfigError(f"'{key}' must be an object")
        mapping = value
    return mapping


def _entries(mapping: Mapping, key: str) -> Sequence:
    value = mapping.get(key)
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ConfigError(f"'{key}' must be a list")
    return value


def _package(kind: ItemKind, entry, name_key: str = 'name') -> InstallItem:
    if isinstance(entry, str):
        return create_item(kind, entry)
    if not isinstance(entry, Mapping) or name_key not in entry:
        raise ConfigError(f"Invalid {kind} entry: {entry!r}")

    params = {
        'description': entry.get('description'),
        'version': entry.get('version'),
        'required': bool(entry.get('required', False)),
        'post_install': _entries(entry, 'post_install'),
    }
    if kind == ItemKind.CASK:
        params['extensions'] = _entries(entry, 'extensions')
    return create_item(kind, str(entry[name_key]), **params)


def _mas_app(entry) -> InstallItem:
    # the App Store id is what `mas install` expects
    if not isinstance(entry, Mapping) or 'id' not in entry:
        raise ConfigError(f'Invalid mas entry: {entry!r}')
    return create_item(
        ItemKind.MAS,
        str(entry['id']),
        description=entry.get('name') or entry.get('description'),
        required=bool(entry.get('required', False)),
    )


def _script(entry) -> InstallItem:
    if not isinstance(entry, Mapping) or 'name' not in entry:
        raise ConfigError(f'Invalid script entry: {entry!r}')
    prompts = {}
    for key, spec in _section(entry, 'prompt_for_input').items():
        if not isinstance(spec, Mapping):
            raise ConfigError(f"Invalid prompt '{key}': {spec!r}")
        try:
            prompts[key] = PromptSpec(
                message=spec.get('message', key),
                default=spec.get('default'),
                validation=spec.get('validation'),
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    return create_item(
        ItemKind.SCRIPT,
        str(entry['name']),
        description=entry.get('description'),
        commands=list(_entries(entry, 'commands')),
        prompt_for_input=prompts,
    )


def parse_config(config: Mapping) -> ParsedConfig:
    """Convert a config document into queue items and settings.

    Parameters
    ----------
    config : Mapping
        The decoded JSON config.

    Returns
    -------
    ParsedConfig
        Items in config order with positions ``1..N``. Packages listed
        twice are dropped and reported in `duplicates`.

    Raises
    ------
    ConfigError
        If the config, or one of its sections, has the wrong shape.
    """
    if not isinstance(config, Mapping):
        raise ConfigError('Config root must be an object')

    candidates: list[InstallItem] = []

    homebrew = _section(config, 'macos', 'homebrew')
    if homebrew.get('taps'):
        log.debug('Ignoring Homebrew taps %s', homebrew['taps'])
    candidates += [
        _package(ItemKind.FORMULA, e) for e in _entries(homebrew, 'formulae')
    ]
    candidates += [
        _package(ItemKind.CASK, e) for e in _entries(homebrew, 'casks')
    ]
    candidates += [
        _mas_app(e) for e in _entries(_section(config, 'macos'), 'mas')
    ]

    windows = _section(config, 'windows')
    candidates += [
        _package(ItemKind.WINGET, e, name_key='id')
        for e in _entries(windows, 'winget')
    ]
    candidates += [
        _package(ItemKind.CHOCOLATEY, e)
        for e in _entries(windows, 'chocolatey')
    ]

    linux = _section(config, 'linux')
    for kind in (ItemKind.APT, ItemKind.DNF, ItemKind.PACMAN):
        candidates += [_package(kind, e) for e in _entries(linux, kind.value)]

    candidates += [_script(e) for e in _entries(config, 'scripts')]

    result = add_multiple([], candidates)
    if result.duplicates:
        log.info('Dropped duplicate config entries: %s', result.duplicates)

    settings = config.get('settings')
    if settings is not None and not isinstance(settings, Mapping):
        raise ConfigError("'settings' must be an object")

    try:
        install_settings = InstallSettings.from_mapping(settings)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    return ParsedConfig(
        items=result.added,
        settings=install_settings,
        name=config.get('name'),
        description=config.get('description'),
        duplicates=result.duplicates,
    )
