# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
""" pipekit/error.py """

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Union
    IOError_OSError = Union[IOError, OSError]

# POSIX mentions 126 and 127 for two specific exec() errors.  A child that
# can't exec its program exits with one of these.
#
# http://pubs.opengroup.org/onlinepubs/9699919799.2016edition/utilities/V3_chap02.html#tag_18_08_02
EXEC_NOT_EXECUTABLE = 126
EXEC_NOT_FOUND = 127


class ProcessError(Exception):
    """Base class for errors raised by ProcessInvocation and Pipeline."""

    def __init__(self, msg):
        # type: (str) -> None
        Exception.__init__(self, msg)
        self.msg = msg

    def UserErrorString(self):
        # type: () -> str
        return self.msg

    def __repr__(self):
        # type: () -> str
        return '<%s %r>' % (self.__class__.__name__, self.msg)


class InvalidCommand(ProcessError):
    """An invocation without an application was given to a Pipeline."""

    def __init__(self, msg, index=-1):
        # type: (str, int) -> None
        ProcessError.__init__(self, msg)
        self.index = index


class AlreadyRunning(ProcessError):
    """Execute() was called while a child is launching or still alive.

    Also raised by Pipeline when it's executed or extended a second time.
    """
    pass


class LaunchError(ProcessError):
    """fork() failed, or a redirect couldn't be set up in the parent.

    The invocation is left in a state where it can be executed again.
    """

    def __init__(self, msg, err_num):
        # type: (str, int) -> None
        ProcessError.__init__(self, msg)
        self.err_num = err_num


class ChildExecFailed(ProcessError):
    """The child couldn't exec() its program.

    This happens after the fork, so the parent only learns about it through
    the reserved exit status.
    """

    def __init__(self, msg, status):
        # type: (str, int) -> None
        ProcessError.__init__(self, msg)
        self.status = status

    def ExitStatus(self):
        # type: () -> int
        return self.status


def IsExecFailure(status):
    # type: (int) -> bool
    return status == EXEC_NOT_EXECUTABLE or status == EXEC_NOT_FOUND
