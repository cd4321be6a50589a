# dedupe.py
"""
Collapse concurrent identical lookups into one call.

While a call for ``key`` is running (and for ``linger`` seconds after it
finishes) other callers with the same key get the same result, or the same
exception, instead of running ``fn`` again.
"""

import threading
import time
from concurrent.futures import Future

_pending = {}
_lock = threading.Lock()


def dedupe(key, fn, linger=0.1, clock=time.monotonic):
    with _lock:
        now = clock()
        for stale in [k for k, (_, done) in _pending.items() if done is not None and now - done > linger]:
            del _pending[stale]
        entry = _pending.get(key)
        if entry is not None:
            future = entry[0]
            owner = False
        else:
            future = Future()
            _pending[key] = (future, None)
            owner = True

    if not owner:
        return future.result()

    try:
        future.set_result(fn())
    except Exception as exc:
        future.set_exception(exc)
    finally:
        with _lock:
            if _pending.get(key, (None,))[0] is future:
                if linger > 0:
                    _pending[key] = (future, clock())
                else:
                    del _pending[key]
    return future.result()


def clear_pending():
    with _lock:
        _pending.clear()


def forget(key):
    """Drop a finished result for ``key`` so the next call runs ``fn`` again."""
    with _lock:
        entry = _pending.get(key)
        if entry is not None and entry[1] is not None:
            del _pending[key]
