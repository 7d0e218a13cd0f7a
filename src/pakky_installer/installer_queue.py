"""Execution engine for install queues.

The main object is `InstallerQueue`, a `QObject` that walks a queue of
`InstallItem` objects and runs each of them as one or more `QProcess`
jobs on the Qt event loop.

Items run strictly one after another, in position order, with a single
live child process tracked by the run's `InstallSession`. Progress and
process output are delivered through Qt signals; a consumer in another
thread receives them as queued events, in emission order.

Packages are installed by starting the package manager executable
directly. Scripts, and the post-install commands of packages, run one
command at a time through the system shell after ``{{name}}``
placeholders have been substituted.
"""

from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, fields
from functools import partial
from logging import getLogger
from time import monotonic
from typing import TypedDict

from qtpy.QtCore import (
    QCoreApplication,
    QObject,
    QProcess,
    QProcessEnvironment,
    QTimer,
    Signal,
)
from typing_extensions import NotRequired

from pakky_installer.installer_tools import (
    BREW_LIST_FLAGS,
    HomebrewInstallerTool,
    InstalledPackages,
    build_tool,
    enhanced_path,
    is_valid_package_name,
    parse_package_list,
    shell_command,
)
from pakky_installer.items import (
    MAX_LOGS_PER_ITEM,
    InstallItem,
    ItemAction,
    ItemKind,
    ItemStatus,
)
from pakky_installer.queue_manager import reindex
from pakky_installer.session import InstallSession, is_termination
from pakky_installer.substitution import (
    find_variables,
    resolve_values,
    substitute,
)

log = getLogger(__name__)

SUCCESS_PREFIX = '✓ '
FAILURE_PREFIX = '✗ '
SKIPPED_PREFIX = '⊘ '
COMMAND_PREFIX = '$ '

CANCELLED_MESSAGE = 'cancelled'

# time a single `brew list` call may take before it is killed
LIST_INSTALLED_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class InstallSettings:
    """Run-level settings of an installation."""

    continue_on_error: bool = True
    skip_already_installed: bool = True
    # accepted for compatibility, items always run sequentially
    parallel_installs: bool = False

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, object] | None
    ) -> 'InstallSettings':
        """Build settings from a partial mapping, ignoring unknown keys.

        Raises
        ------
        ValueError
            If a known setting is not a boolean.
        """
        if not mapping:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in mapping.items():
            if key not in known or value is None:
                continue
            if not isinstance(value, bool):
                raise ValueError(
                    f"Setting '{key}' must be a boolean, got {value!r}"
                )
            values[key] = value
        return cls(**values)


class ProgressData(TypedDict):
    """Status change of a single item."""

    item_id: str
    status: str
    error: NotRequired[str | None]
    exit_code: NotRequired[int]


class RunSummary(TypedDict):
    """Outcome of a whole run."""

    status: str  # 'completed' or 'cancelled'
    completed: int
    failed: int
    skipped: int
    items: tuple[InstallItem, ...]


class InstalledPackagesQuery(QObject):
    """Asks Homebrew which formulae and casks are installed.

    ``brew list --formula`` and ``brew list --cask`` run one after the
    other as `QProcess` jobs tracked by `session`, so a cancel request
    stops them like any install. A listing that fails, times out or is
    cancelled contributes an empty set.
    """

    # emitted with the InstalledPackages once the query is over
    finished = Signal(object)

    def __init__(
        self, session: InstallSession, parent: QObject | None = None
    ) -> None:
        super().__init__(parent)
        self._session = session
        self._executable: str | None = None
        self._pending: deque[ItemKind] = deque()
        self._results: dict[ItemKind, frozenset[str]] = {}

    def start(self) -> None:
        self._executable = HomebrewInstallerTool.executable()
        if self._executable is None:
            log.warning('Homebrew not found, assuming nothing is installed')
            self._finish()
            return
        self._pending = deque(BREW_LIST_FLAGS)
        self._list_next()

    def _list_next(self) -> None:
        if not self._pending or self._session.is_cancelled:
            self._finish()
            return

        kind = self._pending.popleft()
        tool = HomebrewInstallerTool(
            action=ItemAction.INSTALL, pkgs=(), kind=kind
        )
        process = QProcess(self)
        process.setProgram(self._executable)
        process.setArguments(tool.list_arguments())
        process.setProcessEnvironment(tool.environment())
        process.finished.connect(partial(self._on_finished, process, kind))
        process.errorOccurred.connect(partial(self._on_error, process, kind))
        self._session.current_process = process
        QTimer.singleShot(
            LIST_INSTALLED_TIMEOUT_MS, partial(self._on_timeout, process)
        )
        process.start()

    def _on_timeout(self, process: QProcess) -> None:
        if process is not self._session.current_process:
            return
        log.warning(
            "'brew %s' timed out after %s ms",
            ' '.join(process.arguments()),
            LIST_INSTALLED_TIMEOUT_MS,
        )
        process.kill()

    def _on_finished(
        self,
        process: QProcess,
        kind: ItemKind,
        exit_code: int,
        exit_status: QProcess.ExitStatus,
    ) -> None:
        if process is not self._session.current_process:
            return
        if exit_status == QProcess.ExitStatus.NormalExit and exit_code == 0:
            output = bytes(process.readAllStandardOutput().data())
            self._results[kind] = parse_package_list(
                output.decode(errors='replace')
            )
        else:
            log.warning(
                "'brew list %s' failed with exit code %s",
                BREW_LIST_FLAGS[kind],
                exit_code,
            )
        self._release(process)
        self._list_next()

    def _on_error(
        self, process: QProcess, kind: ItemKind, error: QProcess.ProcessError
    ) -> None:
        if (
            process is not self._session.current_process
            or error != QProcess.ProcessError.FailedToStart
        ):
            return
        log.warning(
            "'brew list %s' failed: %s",
            BREW_LIST_FLAGS[kind],
            process.errorString(),
        )
        self._release(process)
        self._list_next()

    def _release(self, process: QProcess) -> None:
        self._session.current_process = None
        process.deleteLater()

    def _finish(self) -> None:
        self.finished.emit(
            InstalledPackages(
                formulae=self._results.get(ItemKind.FORMULA, frozenset()),
                casks=self._results.get(ItemKind.CASK, frozenset()),
            )
        )


class InstallerQueue(QObject):
    """Runs install queues, one item at a time."""

    # emitted when a run starts
    started = Signal()

    # emitted with the item id when an item starts installing
    itemStarted = Signal(str)

    # emitted on every item status change
    # dict: ProgressData
    progress = Signal(dict)

    # emitted for every line of output: item id, line, 'stdout'/'stderr'
    logLine = Signal(str, str, str)

    # emitted once all items are processed or the run was cancelled
    # dict: RunSummary
    allFinished = Signal(dict)

    # callable returning the installed packages, None queries Homebrew
    # asynchronously
    INSTALLED_PACKAGES_PROVIDER: Callable[[], InstalledPackages] | None = None

    def __init__(
        self,
        parent: QObject | None = None,
        session: InstallSession | None = None,
        installed_provider: Callable[[], InstalledPackages] | None = None,
        max_logs: int = MAX_LOGS_PER_ITEM,
    ) -> None:
        super().__init__(parent)
        if session is None:
            session = InstallSession(self)
        self._session = session
        self._installed_provider = installed_provider
        self._max_logs = max_logs
        self._settings = InstallSettings()
        self._values: dict[str, str] = {}
        self._items: list[InstallItem] = []
        self._index = -1
        # commands still to run for the current item
        self._commands: deque[str] = deque()
        self._current_command: str | None = None
        self._item_values: dict[str, str] = {}
        self._process_error: QProcess.ProcessError | None = None
        self._buffers: dict[str, str] = {}

    # -------------------------- Public API ------------------------------
    @property
    def session(self) -> InstallSession:
        return self._session

    def start(
        self,
        items: Iterable[InstallItem],
        *,
        settings: InstallSettings | None = None,
        values: Mapping[str, str] | None = None,
    ) -> None:
        """Start installing `items`.

        Parameters
        ----------
        items : Iterable[InstallItem]
            The queue to run. Items are processed in position order.
        settings : InstallSettings, optional
            Run-level settings, defaults apply when omitted.
        values : Mapping[str, str], optional
            Values substituted into ``{{name}}`` placeholders of script
            and post-install commands.

        Raises
        ------
        RuntimeError
            If a run is already in progress.
        ValueError
            If `items` is empty.
        """
        if self._session.is_running:
            raise RuntimeError('Installation already in progress')
        items = reindex(list(items))
        if not items:
            raise ValueError('No packages to install')

        self._settings = settings or InstallSettings()
        self._values = dict(values or {})
        self._items = items
        self._index = -1
        self._commands.clear()
        self._current_command = None
        self._session.reset()
        self._session.is_running = True

        log.info(
            'Starting installation of %s', [item.name for item in items]
        )
        log.debug('Installation settings: %s', self._settings)
        if self._settings.parallel_installs:
            log.info('parallel_installs is set, items still run one by one')

        self.started.emit()
        if self._settings.skip_already_installed and self._check_installed():
            return
        self._process_queue()

    def cancel(self) -> None:
        """Cancel the running installation.

        The current item and every item not yet started end up
        ``skipped``.
        """
        log.info('Cancelling installation...')
        self._session.cancel()

    def is_running(self) -> bool:
        """True while a run is in progress."""
        return self._session.is_running

    def items(self) -> list[InstallItem]:
        """Current state of the items of the last run."""
        return list(self._items)

    def wait_for_finished(self, msecs: int = 30000) -> bool:
        """Block until the run ends or `msecs` elapse.

        Returns
        -------
        bool
            False if the run is still going on when the time is up.
        """
        deadline = monotonic() + msecs / 1000
        while self._session.is_running:
            remaining = int((deadline - monotonic()) * 1000)
            if remaining <= 0:
                return False
            process = self._session.current_process
            if process is not None:
                process.waitForFinished(min(remaining, 100))
            QCoreApplication.processEvents()
        return True

    # -------------------------- Private methods ------------------------------
    def _current(self) -> InstallItem:
        return self._items[self._index]

    def _set_item(
        self,
        index: int,
        status: ItemStatus,
        error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        item = self._items[index].with_status(status, error)
        self._items[index] = item
        data: ProgressData = {
            'item_id': item.id,
            'status': item.status.value,
            'error': error,
        }
        if exit_code is not None:
            data['exit_code'] = exit_code
        self.progress.emit(data)

    def _log_line(self, line: str, stream: str = 'stdout') -> None:
        item = self._current().with_log(line, self._max_logs)
        self._items[self._index] = item
        log.debug('[%s] %s', item.id, line)
        self.logLine.emit(item.id, line, stream)

    def _check_installed(self) -> bool:
        """Mark items found on the system as already installed.

        Returns True if an asynchronous query was started. The queue then
        continues once the query is over.
        """
        candidates = [
            index
            for index, item in enumerate(self._items)
            if item.kind in BREW_LIST_FLAGS
            and item.action != ItemAction.REINSTALL
            and item.status == ItemStatus.PENDING
        ]
        if not candidates:
            return False

        for index in candidates:
            self._set_item(index, ItemStatus.CHECKING)

        provider = self._installed_provider or self.INSTALLED_PACKAGES_PROVIDER
        if provider is None:
            query = InstalledPackagesQuery(self._session, self)
            query.finished.connect(
                partial(self._on_installed_query_finished, query, candidates)
            )
            query.start()
            return True

        try:
            installed = provider()
        except Exception:  # noqa: BLE001
            log.warning(
                'Could not list installed packages, installing everything',
                exc_info=True,
            )
            installed = InstalledPackages()
        self._apply_installed(candidates, installed)
        return False

    def _on_installed_query_finished(
        self,
        query: InstalledPackagesQuery,
        candidates: list[int],
        installed: InstalledPackages,
    ) -> None:
        query.deleteLater()
        self._apply_installed(candidates, installed)
        # a cancel during the query skips every item from here
        self._process_queue()

    def _apply_installed(
        self, candidates: list[int], installed: InstalledPackages
    ) -> None:
        for index in candidates:
            item = self._items[index]
            if installed.contains(item.kind, item.name):
                self._set_item(index, ItemStatus.ALREADY_INSTALLED)
            else:
                self._set_item(index, ItemStatus.PENDING)

    def _process_queue(self) -> None:
        while True:
            self._index += 1
            if self._index >= len(self._items):
                self._finish_run()
                return

            if self._session.is_cancelled:
                self._skip_remaining(self._index, CANCELLED_MESSAGE)
                self._finish_run()
                return

            item = self._current()
            if (
                item.status == ItemStatus.ALREADY_INSTALLED
                and self._settings.skip_already_installed
            ):
                self._log_line(
                    f'{SUCCESS_PREFIX}{item.name} is already installed'
                )
                self._set_item(self._index, ItemStatus.ALREADY_INSTALLED)
                continue

            if self._start_item(item):
                # a process is running, its signals continue the queue
                return
            if not self._should_continue():
                return

    def _start_item(self, item: InstallItem) -> bool:
        """Start `item`, return False if it already finished."""
        self.itemStarted.emit(item.id)
        self._set_item(self._index, ItemStatus.INSTALLING)
        self._current_command = None
        if self._session.is_cancelled:
            # cancelled from a slot of the signals above
            self._skip_current()
            return False

        if item.is_script:
            if not item.commands:
                self._fail(f'No commands defined for {item.name}')
                return False
            self._commands = deque(item.commands)
            self._item_values = resolve_values(
                item.prompt_for_input, self._values
            )
            return self._run_next_command()

        self._commands = deque(item.post_install)
        self._item_values = self._values
        return self._start_package(item)

    def _start_package(self, item: InstallItem) -> bool:
        if not is_valid_package_name(item.name):
            self._fail(
                f'Invalid package name: {item.name}',
                error='Invalid package name',
            )
            return False

        tool = build_tool(item.kind, item.name, item.action)
        executable = tool.executable()
        if executable is None:
            self._fail(
                f'Package manager not found: {tool.EXECUTABLE_NAME}',
                error=f'{tool.EXECUTABLE_NAME} not found',
            )
            return False

        args = tool.arguments()
        self._log_line(
            f'{COMMAND_PREFIX}{tool.EXECUTABLE_NAME} {" ".join(args)}'
        )
        self._launch(executable, args, tool.environment())
        return True

    def _run_next_command(self) -> bool:
        """Start the next command of the current item.

        Returns False if the item was finished instead.
        """
        if self._session.is_cancelled:
            self._skip_current()
            return False

        template = self._commands.popleft()
        unresolved = [
            name
            for name in find_variables(template)
            if name and name not in self._item_values
        ]
        if unresolved:
            log.warning(
                'Unresolved placeholders in command of %s: %s',
                self._current().name,
                ', '.join(unresolved),
            )
        command = substitute(template, self._item_values)
        self._current_command = command
        self._log_line(f'{COMMAND_PREFIX}{command}')

        env = QProcessEnvironment.systemEnvironment()
        env.insert('PATH', enhanced_path(env.value('PATH', '')))
        program, args = shell_command(command)
        self._launch(program, args, env)
        return True

    def _launch(
        self, program: str, args: Iterable[str], env: QProcessEnvironment
    ) -> None:
        process = QProcess(self)
        process.setProcessChannelMode(
            QProcess.ProcessChannelMode.SeparateChannels
        )
        process.setProgram(str(program))
        process.setArguments([str(arg) for arg in args])
        process.setProcessEnvironment(env)
        process.readyReadStandardOutput.connect(
            partial(self._on_output_ready, process, 'stdout')
        )
        process.readyReadStandardError.connect(
            partial(self._on_output_ready, process, 'stderr')
        )
        process.finished.connect(partial(self._on_process_finished, process))
        process.errorOccurred.connect(
            partial(self._on_error_occurred, process)
        )

        self._process_error = None
        self._buffers = {'stdout': '', 'stderr': ''}
        self._session.current_process = process
        log.debug(
            "Starting '%s' with args %s",
            process.program(),
            process.arguments(),
        )
        process.start()

    def _on_output_ready(self, process: QProcess, stream: str) -> None:
        if process is not self._session.current_process:
            return
        self._read_output(process, stream)

    def _read_output(self, process: QProcess, stream: str) -> None:
        if stream == 'stdout':
            data = process.readAllStandardOutput()
        else:
            data = process.readAllStandardError()
        text = bytes(data.data()).decode(errors='replace')
        if not text:
            return
        *lines, self._buffers[stream] = (self._buffers[stream] + text).split(
            '\n'
        )
        for line in lines:
            self._emit_output_line(line, stream)

    def _emit_output_line(self, line: str, stream: str) -> None:
        line = line.rstrip('\r')
        if line:
            self._log_line(line, stream)

    def _flush_output(self, process: QProcess) -> None:
        for stream in ('stdout', 'stderr'):
            self._read_output(process, stream)
            rest, self._buffers[stream] = self._buffers[stream], ''
            self._emit_output_line(rest, stream)

    def _release(self, process: QProcess) -> None:
        self._session.current_process = None
        process.deleteLater()

    def _on_process_finished(
        self,
        process: QProcess,
        exit_code: int,
        exit_status: QProcess.ExitStatus,
    ) -> None:
        if process is not self._session.current_process:
            return
        self._flush_output(process)
        self._release(process)
        self._after_process(exit_code, exit_status)

    def _on_error_occurred(
        self, process: QProcess, error: QProcess.ProcessError
    ) -> None:
        if process is not self._session.current_process:
            return
        if error != QProcess.ProcessError.FailedToStart:
            # `finished` follows for crashes
            self._process_error = error
            return

        message = process.errorString()
        self._release(process)
        if self._session.is_cancelled:
            self._skip_current()
        else:
            self._fail(
                f'Failed to start {process.program()}: {message}',
                error=message,
            )
        self._advance()

    def _after_process(
        self, exit_code: int, exit_status: QProcess.ExitStatus
    ) -> None:
        item = self._current()
        if self._session.is_cancelled:
            self._skip_current()
        elif is_termination(exit_status, self._process_error):
            self._fail(
                f'{item.name} was terminated before completing',
                error='Process terminated',
            )
        elif exit_code != 0:
            if self._current_command is not None:
                line = (
                    f'Command failed with exit code {exit_code}: '
                    f'{self._current_command}'
                )
            else:
                line = (
                    f'Failed to install {item.name} '
                    f'(exit code: {exit_code})'
                )
            self._fail(
                line,
                error=f'Failed with exit code {exit_code}',
                exit_code=exit_code,
            )
        elif self._commands:
            if self._run_next_command():
                return
        else:
            if item.is_script:
                self._log_line(f'{SUCCESS_PREFIX}Script {item.name} completed')
            else:
                self._log_line(
                    f'{SUCCESS_PREFIX}Successfully installed {item.name}'
                )
            self._set_item(self._index, ItemStatus.SUCCESS)
        self._advance()

    def _fail(
        self,
        line: str,
        error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        self._log_line(f'{FAILURE_PREFIX}{line}', 'stderr')
        self._set_item(
            self._index, ItemStatus.FAILED, error or line, exit_code
        )

    def _skip_current(self) -> None:
        self._log_line(
            f'{SKIPPED_PREFIX}Installation of {self._current().name} '
            f'{CANCELLED_MESSAGE}',
            'stderr',
        )
        self._set_item(self._index, ItemStatus.SKIPPED, CANCELLED_MESSAGE)

    def _skip_remaining(self, start: int, error: str | None = None) -> None:
        for index in range(start, len(self._items)):
            if not self._items[index].status.is_terminal:
                self._set_item(index, ItemStatus.SKIPPED, error)

    def _advance(self) -> None:
        if self._should_continue():
            self._process_queue()

    def _should_continue(self) -> bool:
        if self._current().status.is_failure and not (
            self._settings.continue_on_error
        ):
            log.info('Stopping installation due to error (continue_on_error)')
            self._skip_remaining(self._index + 1)
            self._finish_run()
            return False
        return True

    def _finish_run(self) -> None:
        statuses = [item.status for item in self._items]
        cancelled = self._session.is_cancelled
        summary: RunSummary = {
            'status': 'cancelled' if cancelled else 'completed',
            'completed': sum(
                status
                in (ItemStatus.SUCCESS, ItemStatus.ALREADY_INSTALLED)
                for status in statuses
            ),
            'failed': statuses.count(ItemStatus.FAILED),
            'skipped': statuses.count(ItemStatus.SKIPPED),
            'items': tuple(self._items),
        }
        self._session.is_running = False
        self._session.current_process = None
        self._commands.clear()
        log.info(
            'Installation %s: %s succeeded, %s failed, %s skipped',
            summary['status'],
            summary['completed'],
            summary['failed'],
            summary['skipped'],
        )
        self.allFinished.emit(summary)
