import pytest
from qtpy.QtCore import QProcess

from pakky_installer import session as session_module
from pakky_installer.session import InstallSession, is_termination


def test_cancel_sets_flag_and_emits_once(qtbot):
    session = InstallSession()
    emitted = []
    session.cancelled.connect(lambda: emitted.append(True))

    session.cancel()
    session.cancel()

    assert session.is_cancelled
    assert emitted == [True]

    session.reset()
    assert not session.is_cancelled
    assert session.current_process is None


def test_cancel_without_process(qtbot):
    session = InstallSession()
    session.current_process = QProcess()
    # a process that never started is left alone
    session.cancel()
    assert session.is_cancelled


def test_cancel_kills_at_once_on_windows(qtbot, monkeypatch):
    original_kill = QProcess.kill
    calls = []
    monkeypatch.setattr(
        QProcess, 'terminate', lambda p: calls.append('terminate')
    )
    monkeypatch.setattr(QProcess, 'kill', lambda p: calls.append('kill'))
    process = QProcess()
    process.start('sleep', ['30'])
    assert process.waitForStarted(5000)

    session = InstallSession()
    session.current_process = process
    with monkeypatch.context() as m:
        m.setattr(session_module.os, 'name', 'nt')
        session.cancel()

    assert calls == ['kill']
    original_kill(process)
    process.waitForFinished(5000)


@pytest.mark.parametrize(
    ('exit_status', 'error', 'expected'),
    [
        (QProcess.ExitStatus.NormalExit, None, False),
        (QProcess.ExitStatus.CrashExit, None, True),
        (QProcess.ExitStatus.NormalExit, QProcess.ProcessError.Crashed, True),
        (None, QProcess.ProcessError.Timedout, True),
        (None, QProcess.ProcessError.ReadError, False),
    ],
)
def test_is_termination(exit_status, error, expected):
    assert is_termination(exit_status, error) is expected
