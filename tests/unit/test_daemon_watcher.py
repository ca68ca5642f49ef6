"""Unit tests for the key media watcher."""

import time

from lockchain.daemon.watcher import MediaWatcher


def test_first_poll_records_baseline(tmp_path):
    changes = []
    watcher = MediaWatcher(tmp_path / "key.hex", changes.append)
    assert watcher.poll() is False
    assert watcher.present is False
    assert changes == []


def test_detects_insert_and_removal(tmp_path):
    path = tmp_path / "key.hex"
    changes = []
    watcher = MediaWatcher(path, changes.append)
    watcher.poll()

    path.write_text("x")
    assert watcher.poll() is True
    assert watcher.poll() is False
    path.unlink()
    assert watcher.poll() is True
    assert changes == [True, False]


def test_background_thread_notices_key(tmp_path):
    path = tmp_path / "key.hex"
    changes = []
    watcher = MediaWatcher(path, changes.append, interval=0.01)
    watcher.start()
    try:
        path.write_text("x")
        deadline = time.time() + 5
        while not changes and time.time() < deadline:
            time.sleep(0.01)
    finally:
        watcher.stop()
    assert changes == [True]
