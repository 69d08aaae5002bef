"""
app_log.py
Global app log.  Forwards user-facing progress lines to whoever displays them.

The front end (the CLI, or anything embedding the Controller) calls
set_app_log(log_fn) once.  Core code calls app_log(msg) so messages reach
the user regardless of which thread produced them.

Thread safety: when app_log is called from a background worker, messages are
put on a queue and drained on the control thread by Controller.pump() via
drain_app_log().  When called from the control thread (the one that called
set_app_log) the message is written immediately.  An optional after_fn lets a
GUI-style event loop schedule the drain itself, e.g. root.after(ms, cb).
"""

from __future__ import annotations

import logging
import queue
import threading

log = logging.getLogger(__name__)

_log_fn: callable | None = None
_after_fn: callable | None = None
_main_thread_id: int | None = None
_log_queue: queue.Queue[str] = queue.Queue()


def _emit(msg: str) -> None:
    try:
        _log_fn(msg)
    except Exception:
        # A broken sink must not take the caller down with it.
        log.exception("app log sink failed")


def drain_app_log() -> int:
    """Run on the control thread: write out queued messages.  Returns the count."""
    if _log_fn is None:
        return 0
    drained = 0
    while True:
        try:
            msg = _log_queue.get_nowait()
        except queue.Empty:
            break
        _emit(msg)
        drained += 1
    return drained


def _scheduled_drain() -> None:
    drain_app_log()
    if _after_fn is not None:
        _after_fn(50, _scheduled_drain)


def set_app_log(log_fn: callable[[str], None] | None, after_fn: callable | None = None) -> None:
    """Register the log sink; the calling thread becomes the control thread.

    Pass None to detach (queued messages are discarded).
    """
    global _log_fn, _after_fn, _main_thread_id
    _log_fn = log_fn
    _after_fn = after_fn
    _main_thread_id = threading.current_thread().ident
    if log_fn is None:
        while not _log_queue.empty():
            _log_queue.get_nowait()
        return
    if after_fn is not None:
        after_fn(0, _scheduled_drain)


def app_log(message: str) -> None:
    """Write a message to the application log (thread-safe).

    Always mirrored to the module logger at INFO so `-v` shows it even when no
    sink is registered.
    """
    log.info(message)
    if _log_fn is None:
        return
    if threading.current_thread().ident == _main_thread_id:
        _emit(message)
    else:
        _log_queue.put_nowait(message)
