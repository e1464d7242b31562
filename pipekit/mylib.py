# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
mylib.py - Printing and writer helpers shared by the library.
"""

import sys

from typing import Any, List


def log(msg, *args):
    # type: (str, *Any) -> None
    """Print debug output to stderr."""
    if args:
        msg = msg % args
    print(msg, file=sys.stderr)


def print_stderr(s):
    # type: (str) -> None
    """Print a message to stderr for the user.

    This should be used sparingly.  We use it for warnings that can't be
    raised, e.g. in a forked child right before it exits.
    """
    print(s, file=sys.stderr)


class Writer(object):

    def write(self, s):
        # type: (str) -> None
        raise NotImplementedError()

    def flush(self):
        # type: () -> None
        raise NotImplementedError()

    def isatty(self):
        # type: () -> bool
        raise NotImplementedError()


class BufWriter(Writer):
    """Mimic the StringIO API, for capturing trace output."""

    def __init__(self):
        # type: () -> None
        self.parts = []  # type: List[str]

    def write(self, s):
        # type: (str) -> None
        self.parts.append(s)

    def flush(self):
        # type: () -> None
        pass

    def isatty(self):
        # type: () -> bool
        return False

    def getvalue(self):
        # type: () -> str
        return ''.join(self.parts)


class _StderrWriter(Writer):
    """Looks up sys.stderr on every call, so tests can swap it out."""

    def write(self, s):
        # type: (str) -> None
        sys.stderr.write(s)

    def flush(self):
        # type: () -> None
        sys.stderr.flush()

    def isatty(self):
        # type: () -> bool
        return sys.stderr.isatty()


_gStderr = _StderrWriter()


def Stderr():
    # type: () -> Writer
    return _gStderr
