"""Per-run mutable state shared between a caller and the executor."""

import contextlib
import os
from logging import getLogger

from qtpy.QtCore import QObject, QProcess, QTimer, Signal

log = getLogger(__name__)


def is_running(process: QProcess | None) -> bool:
    return (
        process is not None
        and process.state() != QProcess.ProcessState.NotRunning
    )


def is_termination(
    exit_status: QProcess.ExitStatus | None = None,
    error: QProcess.ProcessError | None = None,
) -> bool:
    """Whether a process ended because it was killed or timed out.

    Such endings are reported as terminations instead of plain non-zero
    exits, however the platform surfaced them.
    """
    if exit_status == QProcess.ExitStatus.CrashExit:
        return True
    return error in (
        QProcess.ProcessError.Crashed,
        QProcess.ProcessError.Timedout,
    )


class InstallSession(QObject):
    """Cancellation state of a single installation run.

    The session is owned by whoever starts a run and handed to the
    `InstallerQueue`, which records the live child process in
    `current_process`. At most one child process is live at a time.
    """

    # emitted the first time `cancel` is called during a run
    cancelled = Signal()

    # time the child gets to exit after a terminate request before it
    # is killed
    KILL_GRACE_PERIOD_MS = 5000

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.is_running = False
        self.is_cancelled = False
        self.current_process: QProcess | None = None

    def reset(self) -> None:
        """Prepare the session for a new run."""
        self.is_running = False
        self.is_cancelled = False
        self.current_process = None

    def cancel(self) -> None:
        """Request cancellation of the run.

        The flag is consulted before every new process launch. A live
        child process is asked to terminate and is killed if it is still
        running after `KILL_GRACE_PERIOD_MS`.
        """
        already_cancelled = self.is_cancelled
        self.is_cancelled = True
        if not already_cancelled:
            self.cancelled.emit()

        process = self.current_process
        if not is_running(process):
            return

        log.info('Terminating process %s', process.processId())
        if os.name == 'nt':
            # console programs ignore WM_CLOSE, kill them right away
            process.kill()
            return

        process.terminate()
        QTimer.singleShot(
            self.KILL_GRACE_PERIOD_MS, lambda: self._kill_if_running(process)
        )

    def _kill_if_running(self, process: QProcess) -> None:
        # the process object may already have been deleted
        with contextlib.suppress(RuntimeError):
            if not is_running(process):
                return

            log.warning(
                'Process %s did not terminate within %s ms, killing it',
                process.processId(),
                self.KILL_GRACE_PERIOD_MS,
            )
            process.kill()
