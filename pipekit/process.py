# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
process.py - Launch a process, redirect its output, and wait for it.
"""

from errno import EACCES, ESRCH
import os
import signal
import threading
import time

from pipekit import dev
from pipekit import error
from pipekit import os_path
from pipekit import pyos
from pipekit import util
from pipekit.mylib import log, print_stderr
from pipekit.pyos import NO_FD

from typing import Any, Dict, List, Optional

_ = log


class launch_state_e(object):
    """The launch guard.

    Idle -> Launching -> Running -> Idle, or Launching -> Idle when the
    launch fails.  Only the thread that moved Idle -> Launching may fork.
    """
    Idle = 1
    Launching = 2
    Running = 3


_LAUNCH_STATE_NAMES = {
    launch_state_e.Idle: 'Idle',
    launch_state_e.Launching: 'Launching',
    launch_state_e.Running: 'Running',
}


def launch_state_str(s):
    # type: (int) -> str
    return _LAUNCH_STATE_NAMES[s]


class ctx_FdCloser(object):
    """Close descriptors opened in the parent, on every path out of a launch."""

    def __init__(self):
        # type: () -> None
        self.fds = []  # type: List[int]

    def Add(self, fd):
        # type: (int) -> int
        self.fds.append(fd)
        return fd

    def __enter__(self):
        # type: () -> ctx_FdCloser
        return self

    def __exit__(self, type, value, traceback):
        # type: (Any, Any, Any) -> None
        for fd in self.fds:
            pyos.Close(fd)
        del self.fds[:]


class _ArgvBuffer(object):
    """The argument vector passed to exec().

    Slot 0 is argv[0], derived from the application.  The slot after the last
    argument is always None, like the NULL that terminates a C argv array.
    Capacity doubles when it runs out.
    """
    INITIAL_CAPACITY = 8

    def __init__(self, capacity=INITIAL_CAPACITY):
        # type: (int) -> None
        self.capacity = max(capacity, 2)
        self.buf = [None] * self.capacity  # type: List[Optional[str]]
        self.n = 1  # slot 0 always exists, even before an application is set

    def _Reserve(self, num_more):
        # type: (int) -> None
        needed = self.n + num_more + 1  # 1 for the terminator
        if needed <= self.capacity:
            return
        new_capacity = self.capacity
        while new_capacity < needed:
            new_capacity *= 2
        self.buf.extend([None] * (new_capacity - self.capacity))
        self.capacity = new_capacity

    def SetArgv0(self, s):
        # type: (Optional[str]) -> None
        self.buf[0] = s

    def Argv0(self):
        # type: () -> str
        s = self.buf[0]
        return s if s is not None else ''

    def Append(self, s):
        # type: (str) -> None
        self._Reserve(1)
        self.buf[self.n] = s
        self.n += 1

    def Extend(self, strs):
        # type: (List[str]) -> None
        if len(strs) == 0:
            return
        self._Reserve(len(strs))
        for s in strs:
            self.buf[self.n] = s
            self.n += 1

    def Strings(self):
        # type: () -> List[str]
        """A copy of argv, without the terminator."""
        argv = [self.Argv0()]
        for i in range(1, self.n):
            argv.append(self.buf[i])
        return argv

    def Capacity(self):
        # type: () -> int
        return self.capacity

    def Copy(self):
        # type: () -> _ArgvBuffer
        other = _ArgvBuffer(self.capacity)
        other.buf[:self.n] = self.buf[:self.n]
        other.n = self.n
        return other

    def __len__(self):
        # type: () -> int
        return self.n

    def __repr__(self):
        # type: () -> str
        return '<_ArgvBuffer %d/%d %s>' % (self.n, self.capacity,
                                           self.Strings())


class ProcessHandle(object):
    """A child PID that this process is responsible for collecting.

    The only operations are Poll(), Wait() and Signal().

    Invariants:
    - The PID is reaped exactly once, by Wait().
    - Signal() is never sent after the reap, when the PID could belong to an
      unrelated process.

    Wait() blocks with WNOWAIT, which leaves the child as a zombie.  The reap
    then happens under state_lock, which Signal() also takes.
    """

    def __init__(self, pid):
        # type: (int) -> None
        self.pid = pid
        self.status = -1  # -1 until reaped
        self.term_sig = -1

        self.state_lock = threading.Lock()
        self.wait_lock = threading.Lock()  # serializes blocking waiters

    def __repr__(self):
        # type: () -> str
        return '<ProcessHandle %d status=%d>' % (self.pid, self.status)

    def Poll(self):
        # type: () -> bool
        """Returns True if the child hasn't exited.  Doesn't reap it."""
        with self.state_lock:
            if self.status != -1:
                return False
            result = pyos.WaitExited(self.pid, True)
        if result < 0:
            # ECHILD: it was reaped without us, e.g. SIGCHLD is SIG_IGN.
            return False
        return result == 0

    def Wait(self):
        # type: () -> int
        """Block until the child exits, and return its status.

        Threads calling this concurrently all get the same status.
        """
        with self.wait_lock:
            if self.status == -1:
                # Block without reaping.
                pyos.WaitExited(self.pid, False)
                with self.state_lock:
                    self._Reap()
        return self.status

    def _Reap(self):
        # type: () -> None
        pid, raw_status = pyos.WaitPid(self.pid, 0)
        if pid < 0:
            err_num = raw_status
            if not pyos.IsNoChild(err_num):
                raise OSError(err_num, 'waitpid(%d) failed: %s' %
                              (self.pid, os.strerror(err_num)))
            # We can't know the status of a child the kernel reaped for us,
            # e.g. when SIGCHLD is SIG_IGN.
            print_stderr('pipekit: PID %d was already reaped: %s' %
                         (self.pid, os.strerror(err_num)))
            self.status = 0
            self.term_sig = -1
            return

        self.status, self.term_sig = pyos.DecodeStatus(raw_status)

    def Signal(self, sig_num):
        # type: (int) -> int
        """Send a signal to the child.

        Returns 0 for success and nonzero errno for error.  Signaling a child
        that has exited or been collected is not an error.
        """
        with self.state_lock:
            if self.status != -1:
                return 0
            err_num = pyos.Kill(self.pid, sig_num)
        if err_num == ESRCH:
            return 0
        return err_num


class ProcessInvocation(object):
    """An application, its arguments, environment, and redirects.

    Configure it, then Execute() and Wait(), or ExecuteAndWait().

    Setters are not thread safe.  Execute() and Wait() may race: exactly one
    concurrent Execute() forks, and exactly one concurrent Wait() reaps.
    """

    def __init__(self, application='', arguments=None, tracer=None):
        # type: (str, Optional[List[str]], Optional[dev.Tracer]) -> None
        """
        Args:
          application: a path, or a name to look up in $PATH
          arguments: appended after argv[0]
          tracer: defaults to dev.DefaultTracer()
        """
        self.tracer = tracer
        # Guards state and handle.  Never held across fork() or a blocking
        # wait.
        self.guard = threading.Condition(threading.Lock())
        self._Init()
        self._SetApplication(application)
        if arguments:
            self.argv.Extend(list(arguments))

    def _Init(self):
        # type: () -> None
        self.application = ''
        self.argv = _ArgvBuffer()
        self.env_overrides = {}  # type: Dict[str, str]
        self.clear_env = False

        self.log_stdout = False
        self.stdout_prefix = ''
        self.log_stderr = False
        self.stderr_prefix = ''

        self.state = launch_state_e.Idle
        self.handle = None  # type: Optional[ProcessHandle]
        self.exit_status = 0
        self.term_sig = -1

    def __repr__(self):
        # type: () -> str
        return '<ProcessInvocation %s %s>' % (launch_state_str(self.state),
                                              util.ArgvString(self.Argv()))

    def __del__(self):
        # type: () -> None
        # Don't leave a zombie behind.  The object may be partially constructed.
        if getattr(self, 'handle', None) is not None:
            self._Drain()

    def _Tracer(self):
        # type: () -> dev.Tracer
        if self.tracer is None:
            return dev.DefaultTracer()
        return self.tracer

    def _Busy(self):
        # type: () -> bool
        return self.state != launch_state_e.Idle

    def _SetApplication(self, application):
        # type: (Optional[str]) -> None
        if not application:
            self.application = ''
            self.argv.SetArgv0(None)
            return

        self.application = application
        self.argv.SetArgv0(os_path.argv0(application))

    #
    # Configuration
    #

    def SetApplication(self, application):
        # type: (str) -> None
        """Replace the application.  Ignored while a child is running."""
        if self._Busy():
            return
        self._SetApplication(application)

    def AppendArgument(self, argument):
        # type: (str) -> None
        if self._Busy():
            return
        self.argv.Append(argument)

    def AppendArguments(self, arguments):
        # type: (List[str]) -> None
        if self._Busy():
            return
        self.argv.Extend(list(arguments))

    def SetEnvironmentVariable(self, name, value):
        # type: (str, str) -> None
        """Set a variable in the child's environment only."""
        if not name:
            return
        self.env_overrides[name] = value

    def SetEnvironmentVariables(self, env):
        # type: (Dict[str, str]) -> None
        for name, value in env.items():
            self.SetEnvironmentVariable(name, value)

    def ClearEnvironmentVariables(self):
        # type: () -> None
        """Drop the overrides, and start the child with an empty environment."""
        self.env_overrides.clear()
        self.clear_env = True

    def LogStdoutToFile(self, prefix=''):
        # type: (str) -> None
        """Redirect stdout to [{prefix}_]{argv0}_{time}.stdout.log"""
        self.log_stdout = True
        self.stdout_prefix = prefix or ''

    def LogStderrToFile(self, prefix=''):
        # type: (str) -> None
        """Redirect stderr to [{prefix}_]{argv0}_{time}.stderr.log"""
        self.log_stderr = True
        self.stderr_prefix = prefix or ''

    #
    # Accessors
    #

    def ApplicationName(self):
        # type: () -> str
        return self.application

    def Argv(self):
        # type: () -> List[str]
        return self.argv.Strings()

    def Environment(self):
        # type: () -> Dict[str, str]
        """The overrides, not the whole child environment."""
        return dict(self.env_overrides)

    def ExitStatus(self):
        # type: () -> int
        """Status of the last collected run.

        Zero if it never ran, so check IsRunning() before relying on it.
        """
        return self.exit_status

    def TermSignal(self):
        # type: () -> int
        """The signal that killed the last run, or -1 if it exited normally."""
        return self.term_sig

    def ExecFailed(self):
        # type: () -> bool
        """Whether the last run's status is one reserved for exec() failure."""
        return self.term_sig == -1 and error.IsExecFailure(self.exit_status)

    def Pid(self):
        # type: () -> int
        """PID of the uncollected child, or -1."""
        h = self.handle
        return h.pid if h is not None else -1

    def LogFilePaths(self, now=None):
        # type: (Optional[float]) -> Dict[str, str]
        """The log files that a run starting at 'now' would write."""
        paths = {}  # type: Dict[str, str]
        argv0 = self.argv.Argv0()
        if self.log_stdout:
            paths[util.STDOUT] = util.LogFilePath(self.stdout_prefix, argv0,
                                                  util.STDOUT, now)
        if self.log_stderr:
            paths[util.STDERR] = util.LogFilePath(self.stderr_prefix, argv0,
                                                  util.STDERR, now)
        return paths

    #
    # Execution
    #

    def _BeginLaunch(self):
        # type: () -> None
        with self.guard:
            if self.state != launch_state_e.Idle:
                raise error.AlreadyRunning(
                    '%r is already %s' %
                    (self.argv.Argv0(), launch_state_str(self.state).lower()))
            if not self.application:
                raise error.InvalidCommand('No application to execute')
            self.state = launch_state_e.Launching
            self.exit_status = 0
            self.term_sig = -1

    def _EndLaunch(self, handle):
        # type: (Optional[ProcessHandle]) -> None
        with self.guard:
            if handle is None:
                self.state = launch_state_e.Idle
            else:
                self.handle = handle
                self.state = launch_state_e.Running
            self.guard.notify_all()

    def _OpenLog(self, path):
        # type: (str) -> int
        fd, err_num = pyos.OpenLogFile(path)
        if fd == NO_FD:
            raise error.LaunchError(
                "Couldn't open log file %r: %s" % (path, os.strerror(err_num)),
                err_num)
        return fd

    def _ChildEnviron(self):
        # type: () -> Dict[str, str]
        if self.clear_env:
            environ = {}  # type: Dict[str, str]
        else:
            environ = dict(pyos.Environ())
        environ.update(self.env_overrides)
        return environ

    def _ChildExec(self, argv, environ, stdin_fd, stdout_fd, stderr_fd):
        # type: (List[str], Dict[str, str], int, int, int) -> None
        """Runs in the child after fork().  Never returns."""
        status = error.EXEC_NOT_FOUND
        try:
            pyos.ResetChildSignals()

            # The originals are O_CLOEXEC, so exec() closes them.
            if stdin_fd != NO_FD:
                os.dup2(stdin_fd, 0)
            if stdout_fd != NO_FD:
                os.dup2(stdout_fd, 1)
            if stderr_fd != NO_FD:
                os.dup2(stderr_fd, 2)

            if os_path.has_sep(self.application):
                os.execve(self.application, argv, environ)
            else:
                os.execvpe(self.application, argv, environ)
        except OSError as e:
            if e.errno == EACCES:
                status = error.EXEC_NOT_EXECUTABLE
            else:
                status = error.EXEC_NOT_FOUND
            pyos.WriteStderr("pipekit: Can't execute %r: %s\n" %
                             (self.application, os.strerror(e.errno)))
        finally:
            # Nothing may unwind into the caller's stack in the child.  Don't
            # flush sys.stdout here: another parent thread may have held its
            # lock at fork() time.  The parent flushed before forking.
            os._exit(status)

    def _Launch(self, stdin_fd, stdout_fd):
        # type: (int, int) -> ProcessHandle
        """Fork and exec.  The caller owns stdin_fd and stdout_fd.

        A stdout pipe takes precedence over LogStdoutToFile().
        """
        argv = self.argv.Strings()
        now = time.time()

        with ctx_FdCloser() as closer:
            if stdout_fd == NO_FD and self.log_stdout:
                path = util.LogFilePath(self.stdout_prefix, argv[0],
                                        util.STDOUT, now)
                stdout_fd = closer.Add(self._OpenLog(path))

            stderr_fd = NO_FD
            if self.log_stderr:
                path = util.LogFilePath(self.stderr_prefix, argv[0],
                                        util.STDERR, now)
                stderr_fd = closer.Add(self._OpenLog(path))

            environ = self._ChildEnviron()

            # Otherwise buffered output would be written by both processes.
            pyos.FlushStdout()

            pid, err_num = pyos.Fork()
            if pid < 0:
                raise error.LaunchError(
                    'fork() failed: %s' % os.strerror(err_num), err_num)

            if pid == 0:  # child
                self._ChildExec(argv, environ, stdin_fd, stdout_fd, stderr_fd)
                # NO RETURN

        #log('STARTED process %s, pid = %d', argv, pid)
        self._Tracer().OnProcessStart(pid, argv)
        return ProcessHandle(pid)

    def _ExecuteWithPipes(self, stdin_fd, stdout_fd):
        # type: (int, int) -> int
        """Used by Execute() and by Pipeline.  Returns the child PID."""
        self._BeginLaunch()

        handle = None  # type: Optional[ProcessHandle]
        try:
            handle = self._Launch(stdin_fd, stdout_fd)
        finally:
            self._EndLaunch(handle)
        return handle.pid

    def Execute(self):
        # type: () -> int
        """Start the child and return its PID without waiting.

        Raises:
          AlreadyRunning: another Execute() is in flight, or the last child
            hasn't been collected with Wait().
          InvalidCommand: no application is set.
          LaunchError: fork() or opening a log file failed.
        """
        return self._ExecuteWithPipes(NO_FD, NO_FD)

    def ExecuteAndWait(self):
        # type: () -> int
        """Execute(), then Wait() for the exit status.

        If a concurrent caller's run is already in flight, this waits for that
        run instead of failing.
        """
        try:
            self.Execute()
        except error.AlreadyRunning as e:
            #log('ExecuteAndWait: %s', e.UserErrorString())
            self._Tracer().OnMessage(
                'waiting on run in flight: %s' % e.UserErrorString())
        return self.Wait()

    def Run(self):
        # type: () -> int
        """Like ExecuteAndWait(), but a failed exec() raises ChildExecFailed."""
        status = self.ExecuteAndWait()
        if self.ExecFailed():
            raise error.ChildExecFailed(
                "Couldn't execute %r (status %d)" % (self.application, status),
                status)
        return status

    def IsRunning(self):
        # type: () -> bool
        """Non-blocking.  Doesn't collect the exit status."""
        with self.guard:
            if self.state == launch_state_e.Launching:
                return True
            h = self.handle
        if h is None:
            return False
        return h.Poll()

    def Wait(self):
        # type: () -> int
        """Block until the child exits, and return its exit status.

        Returns 0 right away if there's no child, i.e. it never ran or was
        already collected.  ExitStatus() keeps the collected status.
        """
        with self.guard:
            while self.state == launch_state_e.Launching:
                self.guard.wait()
            h = self.handle
            if h is None:
                return 0

        status = h.Wait()

        with self.guard:
            # Only the first thread to get here clears the handle.
            if self.handle is h:
                self.exit_status = h.status
                self.term_sig = h.term_sig
                self.handle = None
                self.state = launch_state_e.Idle
                self._Tracer().OnProcessEnd(h.pid, status)
                self.guard.notify_all()
        return status

    def Terminate(self, wait_after=False):
        # type: (bool) -> int
        """Send SIGTERM to the child, if there is one.

        Args:
          wait_after: collect the child after signaling it.

        Returns:
          0 for success, or the errno from kill().
        """
        err_num = self._SendSignal(signal.SIGTERM)
        if err_num == 0 and wait_after:
            self.Wait()
        return err_num

    def Kill(self):
        # type: () -> int
        """Send SIGKILL to the child, for one that ignores SIGTERM.

        Doesn't collect it.  Returns 0 or the errno from kill().
        """
        return self._SendSignal(signal.SIGKILL)

    def _SendSignal(self, sig_num):
        # type: (int) -> int
        with self.guard:
            h = self.handle
        if h is None:
            return 0

        err_num = h.Signal(sig_num)
        if err_num != 0:
            print_stderr("pipekit: Couldn't signal PID %d: %s" %
                         (h.pid, os.strerror(err_num)))
            return err_num

        self._Tracer().OnProcessSignal(h.pid, sig_num)
        return 0

    def _Drain(self):
        # type: () -> None
        with self.guard:
            while self.state == launch_state_e.Launching:
                self.guard.wait()
        self.Terminate(wait_after=True)

    def Clear(self):
        # type: () -> None
        """Go back to the state of ProcessInvocation().

        A live child is terminated and collected first.
        """
        self._Drain()
        with self.guard:
            self._Init()

    #
    # Copy and move
    #

    def __copy__(self):
        # type: () -> ProcessInvocation
        """Copies the configuration, never the child."""
        other = ProcessInvocation(tracer=self.tracer)
        other.application = self.application
        other.argv = self.argv.Copy()
        other.env_overrides = dict(self.env_overrides)
        other.clear_env = self.clear_env
        other.log_stdout = self.log_stdout
        other.stdout_prefix = self.stdout_prefix
        other.log_stderr = self.log_stderr
        other.stderr_prefix = self.stderr_prefix
        return other

    def __deepcopy__(self, memo):
        # type: (Dict[int, Any]) -> ProcessInvocation
        return self.__copy__()

    def MoveFrom(self, other):
        # type: (ProcessInvocation) -> None
        """Take other's configuration and live child.

        Our own child, if any, is terminated and collected first.  other is
        left as if freshly constructed.
        """
        if other is self:
            return
        self.Clear()

        # Always lock in id() order, so a.MoveFrom(b) racing b.MoveFrom(a)
        # can't deadlock.
        if id(self) < id(other):
            first, second = self, other
        else:
            first, second = other, self

        with first.guard, second.guard:
            # Only other.guard is released while waiting, and finishing a
            # launch takes nothing else.
            while other.state == launch_state_e.Launching:
                other.guard.wait()

            self.tracer = other.tracer
            self.application = other.application
            self.argv = other.argv
            self.env_overrides = other.env_overrides
            self.clear_env = other.clear_env
            self.log_stdout = other.log_stdout
            self.stdout_prefix = other.stdout_prefix
            self.log_stderr = other.log_stderr
            self.stderr_prefix = other.stderr_prefix
            self.state = other.state
            self.handle = other.handle
            self.exit_status = other.exit_status
            self.term_sig = other.term_sig

            other._Init()
