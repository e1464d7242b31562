# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
util.py - Common infrastructure.
"""

import time

from pipekit import mylib

from typing import List, Optional

STDOUT = 'stdout'
STDERR = 'stderr'

# Local time, e.g. 20240131235959
LOG_TIME_FORMAT = '%Y%m%d%H%M%S'


def LogFilePath(prefix, argv0, stream, now=None):
    # type: (str, str, str, Optional[float]) -> str
    """Name of the file that a redirected stream is logged to.

    [{prefix}_]{argv0}_{YYYYMMDDHHMMSS}.std{out|err}.log

    The path is relative to the current directory, unless the prefix has a
    directory part.
    """
    assert stream in (STDOUT, STDERR), stream
    if now is None:
        now = time.time()
    stamp = time.strftime(LOG_TIME_FORMAT, time.localtime(now))

    parts = []  # type: List[str]
    if prefix:
        parts.append(prefix)
    parts.append(argv0)
    parts.append(stamp)
    return '%s.%s.log' % ('_'.join(parts), stream)


def _IsPlainChar(ch):
    # type: (str) -> bool
    # [a-zA-Z0-9._\-/=+,:@%] don't need quotes
    return ch.isalnum() or ch in '._-/=+,:@%'


def MaybeShellEncode(s):
    # type: (str) -> str
    """Display an argument so it could be pasted into a shell.

    Simple strings stay "bare" words for readability, e.g.

    + echo hi
    not
    + 'echo' 'hi'
    """
    if len(s) and all(_IsPlainChar(ch) for ch in s):
        return s
    return "'%s'" % s.replace("'", "'\\''")


def ArgvString(argv):
    # type: (List[str]) -> str
    """For trace lines and __repr__."""
    return ' '.join(MaybeShellEncode(a) for a in argv)


class _DebugFile(object):

    def __init__(self):
        # type: () -> None
        pass

    def write(self, s):
        # type: (str) -> None
        pass

    def writeln(self, s):
        # type: (str) -> None
        pass

    def isatty(self):
        # type: () -> bool
        return False


class NullDebugFile(_DebugFile):

    def __init__(self):
        # type: () -> None
        _DebugFile.__init__(self)


class DebugFile(_DebugFile):

    def __init__(self, f):
        # type: (mylib.Writer) -> None
        _DebugFile.__init__(self)
        self.f = f

    def write(self, s):
        # type: (str) -> None
        """Used by dev.Tracer."""
        self.f.write(s)

    def writeln(self, s):
        # type: (str) -> None
        self.write(s + '\n')
        self.f.flush()

    def isatty(self):
        # type: () -> bool
        return self.f.isatty()
