# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
pipeline.py - Chain processes stdout -> stdin, and wait for the chain.

foo | bar | baz
"""

import copy
import os
import threading
import time

from pipekit import dev
from pipekit import error
from pipekit import pyos
from pipekit.mylib import log
from pipekit.process import ProcessInvocation
from pipekit.pyos import NO_FD

from typing import Any, List, Optional

_ = log

# Return values of Pipeline.IsRunning()
NOT_RUNNING = 0
RUNNING = 1
BROKEN = -1

# 128 + SIGPIPE
SIGPIPE_STATUS = 141

# How long terminated stages get to exit before SIGKILL
KILL_AFTER_SECS = 0.5
POLL_INTERVAL_SECS = 0.01


class _BoundaryPipe(object):
    """The pipe between stage i's stdout and stage i+1's stdin.

    The parent closes each end as soon as the stage that consumes it has been
    forked.  Closing twice is harmless.
    """

    def __init__(self, r, w):
        # type: (int, int) -> None
        self.r = r
        self.w = w

    def __repr__(self):
        # type: () -> str
        return '<_BoundaryPipe %d %d>' % (self.r, self.w)

    def CloseRead(self):
        # type: () -> None
        if self.r != NO_FD:
            pyos.Close(self.r)
            self.r = NO_FD

    def CloseWrite(self):
        # type: () -> None
        if self.w != NO_FD:
            pyos.Close(self.w)
            self.w = NO_FD

    def Close(self):
        # type: () -> None
        self.CloseRead()
        self.CloseWrite()


class ctx_Boundaries(object):
    """Owns the boundary pipes while a pipeline is being started."""

    def __init__(self):
        # type: () -> None
        self.pipes = []  # type: List[_BoundaryPipe]

    def __enter__(self):
        # type: () -> ctx_Boundaries
        return self

    def __exit__(self, type, value, traceback):
        # type: (Any, Any, Any) -> None
        for p in self.pipes:
            p.Close()

    def Create(self, n):
        # type: (int) -> None
        for _ in range(n):
            r, w, err_num = pyos.Pipe()
            if err_num != 0:
                raise error.LaunchError(
                    "Couldn't create pipe: %s" % os.strerror(err_num), err_num)
            self.pipes.append(_BoundaryPipe(r, w))


class Pipeline(object):
    """A pipeline of processes to run.

    The stages are copies of the invocations passed in, so the pipeline is the
    only thing that can execute them.  The stage list is frozen by Execute().
    """

    def __init__(self, commands=None, sigpipe_status_ok=False, tracer=None,
                 kill_after_secs=KILL_AFTER_SECS):
        # type: (Optional[List[ProcessInvocation]], bool, Optional[dev.Tracer], float) -> None
        """
        Args:
          commands: initial stages, validated like AppendCommands()
          sigpipe_status_ok: treat status 141 as success, e.g. for 'yes | head'
          tracer: defaults to dev.DefaultTracer()
          kill_after_secs: grace period between SIGTERM and SIGKILL for
            stages stopped by a failure
        """
        self.stages = []  # type: List[ProcessInvocation]
        self.sigpipe_status_ok = sigpipe_status_ok
        self.kill_after_secs = kill_after_secs
        self.tracer = tracer

        self.lock = threading.Lock()  # guards has_executed
        self.has_executed = False
        self.exit_status = 0
        self.pipe_status = []  # type: List[Optional[int]]

        if commands:
            self.AppendCommands(commands)

    def __repr__(self):
        # type: () -> str
        return '<Pipeline %s>' % ' | '.join(
            ' '.join(s.Argv()) for s in self.stages)

    def __len__(self):
        # type: () -> int
        return len(self.stages)

    def _Tracer(self):
        # type: () -> dev.Tracer
        if self.tracer is None:
            return dev.DefaultTracer()
        return self.tracer

    def _CheckNotExecuted(self):
        # type: () -> None
        if self.has_executed:
            raise error.AlreadyRunning(
                "Can't add commands to a pipeline that was executed")

    def AppendCommand(self, command):
        # type: (ProcessInvocation) -> None
        """Append a copy of command to the pipeline.

        Raises:
          InvalidCommand if command has no application.
        """
        self._CheckNotExecuted()
        if not command.ApplicationName():
            raise error.InvalidCommand('Command does not have a set application')
        self.stages.append(copy.copy(command))

    def AppendCommands(self, commands):
        # type: (List[ProcessInvocation]) -> None
        """Append copies of commands.  Nothing is appended if one is invalid."""
        self._CheckNotExecuted()
        commands = list(commands)
        for i, command in enumerate(commands):
            if not command.ApplicationName():
                raise error.InvalidCommand(
                    'Command at index %d does not have a set application' % i,
                    index=i)
        for command in commands:
            self.stages.append(copy.copy(command))

    def Stages(self):
        # type: () -> List[ProcessInvocation]
        return list(self.stages)

    def HasExecuted(self):
        # type: () -> bool
        return self.has_executed

    def ExitStatus(self):
        # type: () -> int
        """Status of the last stage waited on.  Zero until Wait() returns."""
        return self.exit_status

    def PipeStatus(self):
        # type: () -> List[Optional[int]]
        """Per-stage statuses from Wait().  None for terminated stages."""
        return list(self.pipe_status)

    def Execute(self):
        # type: () -> List[int]
        """Fork every stage, left to right.  Returns the PIDs.

        Raises:
          AlreadyRunning: the pipeline was already executed.
          LaunchError: a pipe or a stage couldn't be created.  Stages that
            were started are terminated and collected.
        """
        with self.lock:
            if self.has_executed:
                raise error.AlreadyRunning('Pipeline was already executed')
            self.has_executed = True
        self.exit_status = 0
        self.pipe_status = []

        n = len(self.stages)
        pids = []  # type: List[int]
        with ctx_Boundaries() as boundaries:
            try:
                boundaries.Create(n - 1 if n else 0)
                pipes = boundaries.pipes

                for i, stage in enumerate(self.stages):
                    stdin_fd = pipes[i - 1].r if i > 0 else NO_FD
                    stdout_fd = pipes[i].w if i < n - 1 else NO_FD

                    pids.append(stage._ExecuteWithPipes(stdin_fd, stdout_fd))

                    # NOTE: This is done in the parent after every fork().
                    # If the write end stayed open here, the next stage would
                    # never see EOF.
                    if i > 0:
                        pipes[i - 1].CloseRead()
                    if i < n - 1:
                        pipes[i].CloseWrite()

            except error.ProcessError:
                for p in boundaries.pipes:
                    p.Close()
                self._Abort()
                raise

        #log('STARTED pipeline %s', pids)
        self._Tracer().OnPipelineStart(pids)
        return pids

    def _Abort(self):
        # type: () -> None
        for stage in self.stages:
            stage.Terminate()
        self._Collect(self.stages)

    def _Collect(self, stages):
        # type: (List[ProcessInvocation]) -> None
        """Collect stages that were sent SIGTERM, so none stays a zombie.

        A stage still alive after kill_after_secs gets SIGKILL, so this can't
        block on a stage that ignores SIGTERM.
        """
        deadline = time.time() + self.kill_after_secs
        for stage in stages:
            while stage.IsRunning() and time.time() < deadline:
                time.sleep(POLL_INTERVAL_SECS)
            if stage.IsRunning():
                stage.Kill()
            stage.Wait()

    def ExecuteAndWait(self):
        # type: () -> int
        self.Execute()
        return self.Wait()

    def IsRunning(self):
        # type: () -> int
        """
        Returns:
          NOT_RUNNING if no stage is alive.
          RUNNING if the alive stages are contiguous.
          BROKEN if an exited stage sits between alive stages, i.e. a stage
            died mid-chain.
        """
        if not self.has_executed:
            return NOT_RUNNING

        running = False
        falling_edge = False
        for stage in reversed(self.stages):
            if stage.IsRunning():
                if falling_edge:
                    return BROKEN
                running = True
            else:
                falling_edge = running

        return RUNNING if running else NOT_RUNNING

    def Wait(self):
        # type: () -> int
        """Wait on each stage in order, from first to last.

        Once a stage fails, the stages after it are terminated rather than
        waited on, since they may be blocked on a pipe nobody will write to.
        Those that outlive the grace period are killed.

        Returns:
          The status of the last stage that was waited on.  Like
          ProcessInvocation.Wait(), that's 0 once the stages were collected.
        """
        if not self.has_executed:
            return 0

        status = 0
        failing = False
        terminated = []  # type: List[ProcessInvocation]
        pipe_status = []  # type: List[Optional[int]]

        for stage in self.stages:
            if failing:
                stage.Terminate()
                terminated.append(stage)
                pipe_status.append(None)
                continue

            status = stage.Wait()
            if status == SIGPIPE_STATUS and self.sigpipe_status_ok:
                status = 0
            pipe_status.append(status)
            failing = status != 0

        self._Collect(terminated)

        self.pipe_status = pipe_status
        self.exit_status = status
        return status

    def Terminate(self):
        # type: () -> int
        """Send SIGTERM to every stage.

        Returns:
          0, or the first nonzero errno.  All stages are tried regardless.
        """
        if not self.has_executed:
            return 0

        result = 0
        for stage in self.stages:
            err_num = stage.Terminate()
            if result == 0 and err_num != 0:
                result = err_num
        return result
