import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lotengine.errors import LockTimeout
from lotengine.locks import SymbolLocks


def test_hold_releases_on_exit():
    locks = SymbolLocks(timeout=0.1)

    with locks.hold("u:s:XRP"):
        assert locks.locked("u:s:XRP")
    assert not locks.locked("u:s:XRP")


def test_hold_releases_on_error():
    locks = SymbolLocks(timeout=0.1)

    with pytest.raises(RuntimeError):
        with locks.hold("u:s:XRP"):
            raise RuntimeError("boom")
    assert not locks.locked("u:s:XRP")


def test_contended_lock_times_out():
    locks = SymbolLocks(timeout=5)
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("u:s:XRP"):
            acquired.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(LockTimeout) as excinfo:
            with locks.hold("u:s:XRP", timeout=0.05):
                pass
        assert excinfo.value.key == "u:s:XRP"

        with locks.hold("u:s:BTC", timeout=0.05):
            pass
    finally:
        release.set()
        thread.join(5)
