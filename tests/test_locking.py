#!/usr/bin/env python3
"""
Directory locks: exclusion across threads, re-entry, timeout.
"""

import sys
import os
# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading

import pytest

from pkitoolkit.common.errors import LockTimeout, StorageError
from pkitoolkit.storage.locking import authority_lock


def test_lock_dir_lifecycle(tmp_path):
    lock_dir = str(tmp_path / "locks" / "root_ca.lock")
    with authority_lock(lock_dir, timeout=0.5):
        assert os.path.isdir(lock_dir)
    assert not os.path.exists(lock_dir)


def test_reentrant_in_same_thread(tmp_path):
    lock_dir = str(tmp_path / "a.lock")
    with authority_lock(lock_dir, timeout=0.5):
        with authority_lock(lock_dir, timeout=0.5):
            assert os.path.isdir(lock_dir)
        assert os.path.isdir(lock_dir)
    assert not os.path.exists(lock_dir)


def test_stale_lock_times_out(tmp_path):
    lock_dir = tmp_path / "stale.lock"
    lock_dir.mkdir()
    with pytest.raises(LockTimeout) as exc:
        with authority_lock(str(lock_dir), timeout=0.1):
            pass
    assert isinstance(exc.value, StorageError)
    assert lock_dir.is_dir()


def test_other_thread_waits(tmp_path):
    lock_dir = str(tmp_path / "shared.lock")
    errors = []

    def contender():
        try:
            with authority_lock(lock_dir, timeout=0.1):
                pass
        except LockTimeout as e:
            errors.append(e)

    with authority_lock(lock_dir, timeout=0.5):
        t = threading.Thread(target=contender)
        t.start()
        t.join()
    assert len(errors) == 1

    # free again once released
    t = threading.Thread(target=contender)
    t.start()
    t.join()
    assert len(errors) == 1
