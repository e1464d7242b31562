# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
pyos.py -- Wrappers for the operating system.

These return errno values instead of raising, so callers can decide which
errors are fatal and which leave the object in a usable state.
"""

from errno import ECHILD, EINTR
import os
import signal
import sys

from pipekit.mylib import log

from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING
if TYPE_CHECKING:
    from pipekit import error

_ = log

NO_FD = -1

# O_TRUNC: each invocation gets a fresh log file, even if the timestamp
# collides with a previous run.
LOG_FILE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
LOG_FILE_MODE = 0o666


def FlushStdout():
    # type: () -> Optional[error.IOError_OSError]
    """Flush CPython buffers.

    Must be done before fork(), or buffered output is written twice.
    """
    err = None  # type: Optional[error.IOError_OSError]
    try:
        sys.stdout.flush()
        sys.stderr.flush()
    except (IOError, OSError) as e:
        err = e
    return err


def WriteStderr(s):
    # type: (str) -> None
    """Write directly to fd 2, bypassing sys.stderr.

    Used in a forked child, where sys.stderr may be a wrapper owned by the
    parent (e.g. a test runner's capture).
    """
    try:
        os.write(2, s.encode('utf-8', 'replace'))
    except OSError:
        pass  # nowhere left to report it


def Fork():
    # type: () -> Tuple[int, int]
    """
    Return value:
      (pid, 0) on success, where pid is 0 in the child
      (-1, errno) on failure
    """
    try:
        pid = os.fork()
    except OSError as e:
        return -1, e.errno
    return pid, 0


def WaitPid(pid, waitpid_options):
    # type: (int, int) -> Tuple[int, int]
    """
    Return value:
      pid is 0 if WNOHANG passed, and nothing has changed state
      status: value that can be parsed with WIFEXITED() etc.
      (-1, errno) on failure
    """
    while True:
        try:
            return os.waitpid(pid, waitpid_options)
        except OSError as e:
            # PEP 475 retries EINTR for us, unless a handler raised.  Be
            # explicit anyway.
            if e.errno == EINTR:
                continue
            return -1, e.errno


def WaitExited(pid, no_hang):
    # type: (int, bool) -> int
    """Wait for pid to exit WITHOUT reaping it.

    The child stays a zombie, so its PID can't be reused until a later
    WaitPid() collects it.

    Returns:
      1 if the child has exited
      0 if no_hang was passed and the child is still running
      -errno on failure
    """
    options = os.WEXITED | os.WNOWAIT
    if no_hang:
        options |= os.WNOHANG
    while True:
        try:
            result = os.waitid(os.P_PID, pid, options)
        except OSError as e:
            if e.errno == EINTR:
                continue
            return -e.errno
        break

    # On Linux waitid() returns None for WNOHANG and nothing to report.  Some
    # platforms return a result with si_pid == 0 instead.
    if result is None or result.si_pid == 0:
        return 0
    return 1


def Kill(pid, sig):
    # type: (int, int) -> int
    """Returns 0 for success and nonzero errno for error."""
    try:
        os.kill(pid, sig)
    except OSError as e:
        return e.errno
    return 0


def Pipe():
    # type: () -> Tuple[int, int, int]
    """
    Returns (r, w, 0) or (NO_FD, NO_FD, errno).

    Python creates both ends with O_CLOEXEC, so a child only keeps the ends it
    dup2()s onto 0, 1 or 2.
    """
    try:
        r, w = os.pipe()
    except OSError as e:
        return NO_FD, NO_FD, e.errno
    return r, w, 0


def OpenLogFile(path):
    # type: (str) -> Tuple[int, int]
    """Returns (fd, 0) or (NO_FD, errno).  The fd is not inheritable."""
    try:
        fd = os.open(path, LOG_FILE_FLAGS, LOG_FILE_MODE)
    except OSError as e:
        return NO_FD, e.errno
    return fd, 0


def Close(fd):
    # type: (int) -> None
    try:
        os.close(fd)
    except OSError as e:
        log('close(%d) failed: %s', fd, os.strerror(e.errno))


def DecodeStatus(status):
    # type: (int) -> Tuple[int, int]
    """Turn a raw waitpid() status into (exit code, terminating signal).

    A child killed by a signal gets 128 + signal, like shells report it.  The
    signal is -1 for a normal exit.
    """
    if os.WIFSIGNALED(status):
        term_sig = os.WTERMSIG(status)
        return 128 + term_sig, term_sig

    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status), -1

    # We don't pass WUNTRACED, so a stopped child isn't reported.
    raise AssertionError(status)


def Sigaction(sig_num, handler):
    # type: (int, Any) -> None
    """Register a signal handler."""
    signal.signal(sig_num, handler)


def ResetChildSignals():
    # type: () -> None
    """Called in the child after fork().

    Python sets SIGPIPE (and SIGXFSZ) to SIG_IGN, and ignored signals survive
    exec().  The child program should get the defaults, or 'yes | head' spins
    on EPIPE instead of dying.
    """
    Sigaction(signal.SIGPIPE, signal.SIG_DFL)
    if hasattr(signal, 'SIGXFSZ'):
        Sigaction(signal.SIGXFSZ, signal.SIG_DFL)
    # Respond to Ctrl-\ (core dump)
    Sigaction(signal.SIGQUIT, signal.SIG_DFL)


def Environ():
    # type: () -> Dict[str, str]
    return os.environ


def IsNoChild(err_num):
    # type: (int) -> bool
    return err_num == ECHILD
