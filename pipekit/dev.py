# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
dev.py - Tracing of child process lifetimes, and the env vars that turn it on.

PIPEKIT_DEBUG_DIR=_tmp/trace  ./my_script.py   # writes _tmp/trace/123-pipekit.log
PIPEKIT_DEBUG_FILE=trace.log  ./my_script.py   # takes precedence over the dir
PIPEKIT_XTRACE=1              ./my_script.py   # trace lines go to stderr
"""

import os
import threading

from pipekit import mylib
from pipekit import os_path
from pipekit import util
from pipekit.mylib import print_stderr

from typing import Dict, List, Optional


class Tracer(object):
    """Hooks called by ProcessInvocation and Pipeline.

    Every line is prefixed with the PID of the process doing the tracing, so
    output from nested programs that also use this library can be told apart.
    """

    def __init__(self, f, my_pid=-1):
        # type: (util._DebugFile, int) -> None
        self.f = f  # can be stderr, the debug file, etc.
        self.my_pid = my_pid if my_pid != -1 else os.getpid()
        # Writes from racing Execute() / Wait() calls shouldn't interleave
        self.lock = threading.Lock()

    def _Line(self, s):
        # type: (str) -> None
        with self.lock:
            self.f.writeln('[%d] %s' % (self.my_pid, s))

    def OnProcessStart(self, pid, argv):
        # type: (int, List[str]) -> None
        """In the parent, after fork() returns the child PID."""
        self._Line('process %d: %s' % (pid, util.ArgvString(argv)))

    def OnProcessEnd(self, pid, status):
        # type: (int, int) -> None
        self._Line('process %d: status %d' % (pid, status))

    def OnProcessSignal(self, pid, sig_num):
        # type: (int, int) -> None
        self._Line('process %d: sent signal %d' % (pid, sig_num))

    def OnPipelineStart(self, pids):
        # type: (List[int]) -> None
        self._Line('pipeline %s' % ' '.join(str(p) for p in pids))

    def OnMessage(self, msg):
        # type: (str) -> None
        self._Line(msg)


def TracerFromEnv(environ, my_pid=-1):
    # type: (Dict[str, str], int) -> Tracer
    """Build a Tracer configured by PIPEKIT_* variables.

    A debug file that can't be opened is reported, and tracing falls back to
    the null file.
    """
    if my_pid == -1:
        my_pid = os.getpid()

    debug_path = environ.get('PIPEKIT_DEBUG_FILE', '')
    debug_dir = environ.get('PIPEKIT_DEBUG_DIR', '')
    if not len(debug_path) and len(debug_dir):
        debug_path = os_path.join(debug_dir, '%d-pipekit.log' % my_pid)

    if len(debug_path):
        try:
            # Line buffered, and closed when the process exits
            f = open(debug_path, 'a', buffering=1)
        except (IOError, OSError) as e:
            print_stderr("pipekit: Couldn't open %r: %s" %
                         (debug_path, os.strerror(e.errno)))
            return Tracer(util.NullDebugFile(), my_pid)
        return Tracer(util.DebugFile(f), my_pid)

    if environ.get('PIPEKIT_XTRACE', '') == '1':
        return Tracer(util.DebugFile(mylib.Stderr()), my_pid)

    return Tracer(util.NullDebugFile(), my_pid)


_gTracer = None  # type: Optional[Tracer]
_gTracerLock = threading.Lock()


def DefaultTracer():
    # type: () -> Tracer
    """The process-wide tracer, configured from os.environ on first use."""
    global _gTracer
    with _gTracerLock:
        if _gTracer is None:
            _gTracer = TracerFromEnv(os.environ)
        return _gTracer


def SetDefaultTracer(tracer):
    # type: (Optional[Tracer]) -> None
    """Replace the process-wide tracer.  None means re-read os.environ."""
    global _gTracer
    with _gTracerLock:
        _gTracer = tracer
