"""Queue item model for the installer.

An install queue is an ordered sequence of `InstallItem` objects. Items
are immutable: every change (status, logs, position) produces a new
object through `dataclasses.replace`, so a queue handed to the UI layer
is never mutated behind its back.

`InstallItem` is a tagged union of `PackageItem`, for anything installed
through a package manager, and `ScriptItem`, for user scripts made of
shell commands.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType

# Maximum number of log lines retained per item, oldest evicted first
MAX_LOGS_PER_ITEM = 500


class ItemKind(str, Enum):
    "Kinds of queue items, one per supported package source"

    FORMULA = 'formula'
    CASK = 'cask'
    MAS = 'mas'
    WINGET = 'winget'
    CHOCOLATEY = 'chocolatey'
    APT = 'apt'
    DNF = 'dnf'
    PACMAN = 'pacman'
    SCRIPT = 'script'

    def __str__(self) -> str:
        return self.value


class ItemStatus(str, Enum):
    "Status of a single queue item during a run"

    PENDING = 'pending'
    CHECKING = 'checking'
    INSTALLING = 'installing'
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    ALREADY_INSTALLED = 'already_installed'

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self is ItemStatus.FAILED


_TERMINAL_STATUSES = frozenset(
    {
        ItemStatus.SUCCESS,
        ItemStatus.FAILED,
        ItemStatus.SKIPPED,
        ItemStatus.ALREADY_INSTALLED,
    }
)


class ItemAction(str, Enum):
    "What the package manager is asked to do with an item"

    INSTALL = 'install'
    REINSTALL = 'reinstall'

    def __str__(self) -> str:
        return self.value


PACKAGE_KINDS = frozenset(kind for kind in ItemKind if kind != ItemKind.SCRIPT)

PROMPT_VALIDATIONS = ('email', 'url', 'path', 'none')


@dataclass(frozen=True)
class PromptSpec:
    """Describes a value the user must supply before a script runs."""

    message: str
    default: str | None = None
    validation: str | None = None

    def __post_init__(self):
        if (
            self.validation is not None
            and self.validation not in PROMPT_VALIDATIONS
        ):
            raise ValueError(
                f"Unknown prompt validation '{self.validation}'. "
                f'Expected one of {PROMPT_VALIDATIONS}.'
            )


@dataclass(frozen=True, kw_only=True)
class _BaseItem:
    id: str
    name: str
    status: ItemStatus = ItemStatus.PENDING
    position: float | None = None
    description: str = ''
    version: str | None = None
    required: bool = False
    action: ItemAction = ItemAction.INSTALL
    post_install: tuple[str, ...] = ()
    logs: tuple[str, ...] = ()
    error: str | None = None

    def with_status(
        self, status: ItemStatus, error: str | None = None
    ) -> 'InstallItem':
        """Return a copy with `status` set.

        The stored error is replaced by `error`, so moving an item to a
        non-failure state clears a previous error message.
        """
        return replace(self, status=ItemStatus(status), error=error)

    def with_log(
        self, line: str, max_logs: int = MAX_LOGS_PER_ITEM
    ) -> 'InstallItem':
        """Return a copy with `line` appended to the logs.

        Only the `max_logs` most recent lines are retained.
        """
        logs = (*self.logs, line)
        if max_logs <= 0:
            logs = ()
        elif len(logs) > max_logs:
            logs = logs[-max_logs:]
        return replace(self, logs=logs)

    def with_position(self, position: float | None) -> 'InstallItem':
        return replace(self, position=position)

    @property
    def sort_key(self) -> float:
        """Position used for ordering. Missing or NaN sorts last."""
        position = self.position
        if position is None or math.isnan(position):
            return math.inf
        return position


@dataclass(frozen=True, kw_only=True)
class PackageItem(_BaseItem):
    """An item installed through a package manager."""

    kind: ItemKind
    extensions: tuple[str, ...] = ()

    def __post_init__(self):
        kind = ItemKind(self.kind)
        object.__setattr__(self, 'kind', kind)
        if kind == ItemKind.SCRIPT:
            raise ValueError('Script items must be built as ScriptItem.')
        if self.extensions and kind != ItemKind.CASK:
            raise ValueError('Only cask items can declare extensions.')

    @property
    def is_script(self) -> bool:
        return False


@dataclass(frozen=True, kw_only=True)
class ScriptItem(_BaseItem):
    """A user script: shell commands executed one after another."""

    commands: tuple[str, ...] = ()
    prompt_for_input: Mapping[str, PromptSpec] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self):
        object.__setattr__(self, 'commands', tuple(self.commands))
        object.__setattr__(
            self,
            'prompt_for_input',
            MappingProxyType(dict(self.prompt_for_input)),
        )

    @property
    def kind(self) -> ItemKind:
        return ItemKind.SCRIPT

    @property
    def is_script(self) -> bool:
        return True


InstallItem = PackageItem | ScriptItem
