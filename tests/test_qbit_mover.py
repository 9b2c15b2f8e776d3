from unittest.mock import patch

import pytest

from qbit_mover import __version__
from qbit_mover.core_logic.move_ledger import MoveLedger
from qbit_mover.core_logic.poller import CycleResult
from qbit_mover.qbit_mover import main


@pytest.fixture(autouse=True)
def cli_environment(monkeypatch, clean_root_logger):
    monkeypatch.setenv('COLUMNS', '200')
    with patch('qbit_mover.system_manager.atexit.register'):
        yield


@pytest.fixture
def workdir(tmp_path):
    config_path = tmp_path / 'config.ini'
    config_path.write_text(f"""\
[SETTINGS]
poll_interval = 60
rate_limit_delay = 0
log_file = {tmp_path / 'qbit_mover.log'}
max_log_file_size = 1M
ledger_dir = {tmp_path / 'ledger'}

[SERVER home]
url = http://localhost:8080
username = admin
password = adminadmin

[CATEGORIES home]
distros = {tmp_path / 'data' / 'distros'}
""")
    return tmp_path


def run(workdir, *args):
    return main(['--config', str(workdir / 'config.ini'), '--simple', *args])


def test_version(capsys):
    assert main(['--version']) == 0
    assert __version__ in capsys.readouterr().out


def test_check_config_valid(workdir):
    assert run(workdir, '--check-config') == 0


def test_check_config_invalid(workdir):
    (workdir / 'config.ini').write_text("[SETTINGS]\npoll_interval = 60\n")
    assert run(workdir, '--check-config') == 1


def test_missing_config_is_created_from_template_and_fails(tmp_path):
    config_path = tmp_path / 'config.ini'

    assert main(['--config', str(config_path), '--simple', '--once']) == 1
    assert config_path.exists()
    assert '[SETTINGS]' in config_path.read_text()


def test_status_lists_ledger_records(workdir, capsys):
    ledger = MoveLedger.for_server(workdir / 'ledger', 'home')
    ledger.record_success('abc123', '/data/distros/file.iso')
    ledger.record_attempt('def456', None, RuntimeError("unmapped"), name='song.flac', category='music')

    assert run(workdir, '--status') == 0

    out = capsys.readouterr().out
    assert 'abc123' in out
    assert 'def456' in out
    assert 'moved' in out
    assert 'pending' in out


def test_status_without_records(workdir, capsys):
    assert run(workdir, '--status') == 0
    assert 'No ledger records found.' in capsys.readouterr().out


def test_forget_removes_record(workdir):
    MoveLedger.for_server(workdir / 'ledger', 'home').record_success('abc123', '/data/x')

    assert run(workdir, '--forget', 'home', 'abc123') == 0

    assert not MoveLedger.for_server(workdir / 'ledger', 'home').is_moved('abc123')
    assert not (workdir / 'ledger' / 'qbit_mover.lock').exists()


def test_forget_unknown_server(workdir):
    assert run(workdir, '--forget', 'nope', 'abc123') == 1


def test_once_runs_a_single_cycle(workdir):
    with patch('qbit_mover.qbit_mover.Engine') as mock_engine, \
            patch('qbit_mover.qbit_mover._install_signal_handlers'):
        mock_engine.return_value.run_once.return_value = [CycleResult(server='home', moved=2)]
        assert run(workdir, '--once') == 0

    mock_engine.return_value.run_once.assert_called_once()
    mock_engine.return_value.run.assert_not_called()


def test_lock_held_by_other_instance(workdir):
    with patch('qbit_mover.qbit_mover.LockFile.acquire', side_effect=RuntimeError("already running")), \
            patch('qbit_mover.qbit_mover.Engine') as mock_engine:
        assert run(workdir, '--once') == 1
    mock_engine.assert_not_called()
