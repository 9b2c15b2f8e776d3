import errno
from pathlib import Path
from unittest.mock import patch

import pytest

from qbit_mover.core_logic.mover import Mover
from qbit_mover.utils import (
    CrossVolumeCopyFailed, InsufficientSpace, MoveError, PermissionDenied, SourceNotFound
)


@pytest.fixture
def mover():
    return Mover()


def test_same_volume_file_rename(fs, mover):
    fs.create_file('/downloads/file.iso', contents='x' * 100)

    result = mover.move('/downloads/file.iso', '/library/distros')

    assert result == Path('/library/distros/file.iso')
    assert result.read_text() == 'x' * 100
    assert not Path('/downloads/file.iso').exists()


def test_same_volume_directory_rename(fs, mover):
    fs.create_file('/downloads/Show/ep1.mkv', contents='a')
    fs.create_file('/downloads/Show/sub/ep1.srt', contents='b')

    result = mover.move('/downloads/Show', '/library/tv')

    assert result == Path('/library/tv/Show')
    assert (result / 'sub' / 'ep1.srt').read_text() == 'b'
    assert not Path('/downloads/Show').exists()


def test_existing_destination_is_treated_as_moved(fs, mover):
    fs.create_file('/downloads/file.iso', contents='new')
    fs.create_file('/library/distros/file.iso', contents='old')

    result = mover.move('/downloads/file.iso', '/library/distros')

    assert result == Path('/library/distros/file.iso')
    assert result.read_text() == 'old'
    assert Path('/downloads/file.iso').exists()


def test_missing_source_raises(fs, mover):
    with pytest.raises(SourceNotFound) as excinfo:
        mover.move('/downloads/missing.iso', '/library/distros')
    assert excinfo.value.source == Path('/downloads/missing.iso')
    assert not Path('/library/distros').exists()


def test_cross_volume_file_is_copied_then_deleted(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/file.iso', contents='x' * 2048)

    result = mover.move('/downloads/file.iso', '/data/distros')

    assert result == Path('/data/distros/file.iso')
    assert result.stat().st_size == 2048
    assert not Path('/downloads/file.iso').exists()


def test_cross_volume_directory_is_copied_then_deleted(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/Album/01.flac', contents='1' * 10)
    fs.create_file('/downloads/Album/02.flac', contents='2' * 20)

    result = mover.move('/downloads/Album', '/data/music')

    assert sorted(p.name for p in result.iterdir()) == ['01.flac', '02.flac']
    assert not Path('/downloads/Album').exists()


def test_cross_volume_out_of_space_removes_partial(fs, mover):
    fs.add_mount_point('/data', total_size=1000)
    fs.create_file('/downloads/big.iso', contents='x' * 5000)

    with pytest.raises(InsufficientSpace):
        mover.move('/downloads/big.iso', '/data/distros')

    assert Path('/downloads/big.iso').exists()
    assert not Path('/data/distros/big.iso').exists()
    assert not Path('/data/distros/.big.iso.partial').exists()


def test_cross_volume_out_of_space_directory(fs, mover):
    fs.add_mount_point('/data', total_size=1000)
    fs.create_file('/downloads/Show/ep1.mkv', contents='x' * 600)
    fs.create_file('/downloads/Show/ep2.mkv', contents='x' * 600)

    with pytest.raises(InsufficientSpace):
        mover.move('/downloads/Show', '/data/tv')

    assert Path('/downloads/Show/ep2.mkv').exists()
    assert not Path('/data/tv/Show').exists()


def test_short_copy_is_rejected_and_source_kept(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/file.iso', contents='x' * 100)

    with patch('qbit_mover.core_logic.mover._total_size', side_effect=[100, 50]):
        with pytest.raises(CrossVolumeCopyFailed):
            mover.move('/downloads/file.iso', '/data/distros')

    assert Path('/downloads/file.iso').exists()
    assert not Path('/data/distros/file.iso').exists()


def test_rename_permission_error_is_translated(fs, mover):
    fs.create_file('/downloads/file.iso')

    with patch('qbit_mover.core_logic.mover.os.rename', side_effect=PermissionError(errno.EACCES, "Permission denied")):
        with pytest.raises(PermissionDenied):
            mover.move('/downloads/file.iso', '/library/distros')

    assert Path('/downloads/file.iso').exists()


def test_rename_crossing_devices_falls_back_to_copy(fs, mover):
    fs.create_file('/downloads/file.iso', contents='abc')

    with patch('qbit_mover.core_logic.mover.os.rename', side_effect=OSError(errno.EXDEV, "Invalid cross-device link")):
        result = mover.move('/downloads/file.iso', '/library/distros')

    assert result.read_text() == 'abc'
    assert not Path('/downloads/file.iso').exists()


def test_other_os_errors_become_move_error(fs, mover):
    fs.create_file('/downloads/file.iso')

    with patch('qbit_mover.core_logic.mover.os.rename', side_effect=OSError(errno.EIO, "I/O error")):
        with pytest.raises(MoveError) as excinfo:
            mover.move('/downloads/file.iso', '/library/distros')

    assert type(excinfo.value) is MoveError


def test_cross_volume_copy_is_staged_under_partial_name(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/file.iso', contents='x' * 1000)

    def killed_mid_copy(src, dst, **kwargs):
        Path(dst).write_text('x' * 10)
        raise KeyboardInterrupt()

    with patch('qbit_mover.core_logic.mover.shutil.copy2', side_effect=killed_mid_copy):
        with pytest.raises(KeyboardInterrupt):
            mover.move('/downloads/file.iso', '/data/distros')

    assert not Path('/data/distros/file.iso').exists()
    assert Path('/data/distros/.file.iso.partial').stat().st_size == 10
    assert Path('/downloads/file.iso').exists()


def test_stale_partial_copy_is_replaced_on_next_attempt(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/file.iso', contents='x' * 1000)
    fs.create_file('/data/distros/.file.iso.partial', contents='x' * 10)

    result = mover.move('/downloads/file.iso', '/data/distros')

    assert result == Path('/data/distros/file.iso')
    assert result.stat().st_size == 1000
    assert not Path('/data/distros/.file.iso.partial').exists()
    assert not Path('/downloads/file.iso').exists()


def test_stale_partial_directory_is_replaced_on_next_attempt(fs, mover):
    fs.add_mount_point('/data')
    fs.create_file('/downloads/Album/01.flac', contents='1' * 10)
    fs.create_file('/downloads/Album/02.flac', contents='2' * 20)
    fs.create_file('/data/music/.Album.partial/01.flac', contents='1' * 3)

    result = mover.move('/downloads/Album', '/data/music')

    assert sorted(p.name for p in result.iterdir()) == ['01.flac', '02.flac']
    assert (result / '02.flac').stat().st_size == 20
    assert not Path('/data/music/.Album.partial').exists()
