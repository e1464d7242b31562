#!/usr/bin/env python3
# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""pipeline_test.py: Tests for pipeline.py."""

import os
import signal
import time
import unittest

from pipekit import error
from pipekit import pipeline  # module under test
from pipekit import test_lib
from pipekit import util
from pipekit.process import ProcessInvocation

Pipeline = pipeline.Pipeline


class _Common(unittest.TestCase):

    def setUp(self):
        self.tmp = test_lib.MakeTempDir()
        self.tracer, self.trace_buf = test_lib.MakeTracer()
        self.pipelines = []

    def tearDown(self):
        for pi in self.pipelines:
            pi.Terminate()
            pi.Wait()
        test_lib.RemoveTempDir(self.tmp)

    def _Proc(self, application, args=None):
        return ProcessInvocation(application, args, tracer=self.tracer)

    def _Sh(self, script):
        return self._Proc('/bin/sh', ['-c', script])

    def _LastLogged(self, p):
        p.LogStdoutToFile(os.path.join(self.tmp, 'last'))
        return p

    def _Pipeline(self, commands=None, **kwargs):
        pi = Pipeline(commands, tracer=self.tracer, **kwargs)
        self.pipelines.append(pi)
        return pi


class ConstructionTest(_Common):

    def testAppendCommand(self):
        pi = self._Pipeline()
        self.assertEqual(0, len(pi))
        pi.AppendCommand(self._Proc('ls'))
        pi.AppendCommands([self._Proc('sort'), self._Proc('uniq', ['-c'])])
        self.assertEqual(3, len(pi))
        self.assertEqual(['uniq', '-c'], pi.Stages()[2].Argv())

    def testEmptyApplicationRejected(self):
        pi = self._Pipeline([self._Proc('ls')])

        self.assertRaises(error.InvalidCommand, pi.AppendCommand,
                          ProcessInvocation())
        self.assertEqual(1, len(pi))

        try:
            pi.AppendCommands([self._Proc('sort'), ProcessInvocation('')])
        except error.InvalidCommand as e:
            self.assertEqual(1, e.index)
        else:
            self.fail('Expected InvalidCommand')
        # Nothing from the list was appended
        self.assertEqual(1, len(pi))

    def testConstructorValidates(self):
        self.assertRaises(error.InvalidCommand, Pipeline,
                          [self._Proc('ls'), ProcessInvocation()])

    def testStagesAreCopies(self):
        cat = self._Proc('cat')
        pi = self._Pipeline([self._Proc('true'), cat])
        cat.AppendArgument('-n')
        self.assertEqual(['cat'], pi.Stages()[1].Argv())

        pi.ExecuteAndWait()
        self.assertFalse(cat.IsRunning())
        self.assertEqual(-1, cat.Pid())

    def testNotExecuted(self):
        pi = self._Pipeline([self._Proc('true')])
        self.assertFalse(pi.HasExecuted())
        self.assertEqual(pipeline.NOT_RUNNING, pi.IsRunning())
        self.assertEqual(0, pi.Wait())
        self.assertEqual(0, pi.Terminate())
        self.assertEqual([], pi.PipeStatus())

    def testEmptyPipeline(self):
        pi = self._Pipeline()
        self.assertEqual([], pi.Execute())
        self.assertEqual(pipeline.NOT_RUNNING, pi.IsRunning())
        self.assertEqual(0, pi.Wait())


class ExecuteTest(_Common):

    def testEndToEnd(self):
        pi = self._Pipeline([
            self._Proc('echo', ['hello']),
            self._Proc('cat'),
            self._LastLogged(self._Proc('cat')),
        ])
        pids = pi.Execute()
        self.assertEqual(3, len(pids))
        self.assertTrue(pi.HasExecuted())

        self.assertEqual(0, pi.Wait())
        self.assertEqual(0, pi.ExitStatus())
        self.assertEqual([0, 0, 0], pi.PipeStatus())
        self.assertEqual('hello\n', test_lib.ReadOnlyLog(self.tmp,
                                                         util.STDOUT))
        for pid in pids:
            self.assertTrue(test_lib.IsUnreserved(pid))

        self.assertIn('pipeline %s' % ' '.join(str(p) for p in pids),
                      self.trace_buf.getvalue())

    def testManyBytes(self):
        n = 100000
        pi = self._Pipeline([
            self._Sh('head -c %d /dev/zero' % n),
            self._Proc('cat'),
            self._LastLogged(self._Proc('wc', ['-c'])),
        ])
        self.assertEqual(0, pi.ExecuteAndWait())
        self.assertEqual(str(n),
                         test_lib.ReadOnlyLog(self.tmp, util.STDOUT).strip())

    def testSingleStage(self):
        pi = self._Pipeline([self._Sh('exit 9')])
        self.assertEqual(9, pi.ExecuteAndWait())

    def testPipeOverridesStdoutLog(self):
        first = self._Proc('echo', ['piped'])
        first.LogStdoutToFile(os.path.join(self.tmp, 'first'))
        pi = self._Pipeline([first, self._LastLogged(self._Proc('cat'))])
        self.assertEqual(0, pi.ExecuteAndWait())

        # Only the last stage wrote a stdout log
        paths = test_lib.LogFiles(self.tmp, util.STDOUT)
        self.assertEqual(1, len(paths))
        self.assertIn('last_cat_', paths[0])
        self.assertEqual('piped\n', test_lib.ReadOnlyLog(self.tmp,
                                                         util.STDOUT))

    def testStderrLogInPipeline(self):
        first = self._Sh('echo to-pipe; echo to-log >&2')
        first.LogStderrToFile(os.path.join(self.tmp, 'first'))
        pi = self._Pipeline([first, self._LastLogged(self._Proc('cat'))])
        self.assertEqual(0, pi.ExecuteAndWait())

        self.assertEqual('to-pipe\n', test_lib.ReadOnlyLog(self.tmp,
                                                           util.STDOUT))
        self.assertEqual('to-log\n', test_lib.ReadOnlyLog(self.tmp,
                                                          util.STDERR))

    def testExecuteTwice(self):
        pi = self._Pipeline([self._Proc('true')])
        pi.Execute()
        self.assertRaises(error.AlreadyRunning, pi.Execute)
        self.assertRaises(error.AlreadyRunning, pi.AppendCommand,
                          self._Proc('true'))
        self.assertEqual(1, len(pi))
        self.assertEqual(0, pi.Wait())

    def testNoDescriptorLeak(self):
        if not os.path.exists('/proc/self/fd'):
            self.skipTest('needs /proc')

        before = test_lib.OpenFdCount()
        for _ in range(5):
            pi = self._Pipeline([
                self._Proc('echo', ['x']),
                self._Proc('cat'),
                self._Proc('cat'),
                self._LastLogged(self._Proc('cat')),
            ])
            pi.Execute()
            # The parent holds no pipe ends once everything is forked
            self.assertEqual(before, test_lib.OpenFdCount())
            pi.Wait()
        self.assertEqual(before, test_lib.OpenFdCount())

    def testLaunchFailureCleansUp(self):
        if not os.path.exists('/proc/self/fd'):
            self.skipTest('needs /proc')

        bad = self._Proc('cat')
        bad.LogStderrToFile(os.path.join(self.tmp, 'no-such-dir', 'x'))
        pi = self._Pipeline([self._Proc('sleep', ['10']), bad,
                             self._Proc('cat')])

        before = test_lib.OpenFdCount()
        self.assertRaises(error.LaunchError, pi.Execute)
        self.assertEqual(before, test_lib.OpenFdCount())

        first = pi.Stages()[0]
        self.assertFalse(first.IsRunning())
        self.assertEqual(128 + signal.SIGTERM, first.ExitStatus())

        # It counts as executed; the stage list is frozen
        self.assertRaises(error.AlreadyRunning, pi.Execute)


class WaitTest(_Common):

    def testMiddleStageFails(self):
        pi = self._Pipeline([
            self._Proc('true'),
            self._Sh('exit 3'),
            self._Proc('sleep', ['10']),
        ])
        start = time.time()
        pi.Execute()
        self.assertEqual(3, pi.Wait())
        self.assertLess(time.time() - start, 5.0)

        self.assertEqual(3, pi.ExitStatus())
        self.assertEqual([0, 3, None], pi.PipeStatus())

        last = pi.Stages()[2]
        self.assertFalse(last.IsRunning())
        self.assertEqual(signal.SIGTERM, last.TermSignal())

    def testFirstStageFails(self):
        pi = self._Pipeline([
            self._Sh('exit 2'),
            self._Proc('cat'),
            self._Proc('sleep', ['10']),
        ])
        self.assertEqual(2, pi.ExecuteAndWait())
        self.assertEqual([2, None, None], pi.PipeStatus())

    def testSigpipe(self):
        # 'yes' gets SIGPIPE once 'head' exits, which requires SIGPIPE to be
        # reset to the default in the child.
        pi = self._Pipeline([
            self._Proc('yes'),
            self._LastLogged(self._Proc('head', ['-n', '1'])),
        ])
        self.assertEqual(pipeline.SIGPIPE_STATUS, pi.ExecuteAndWait())
        self.assertEqual(pipeline.SIGPIPE_STATUS, pi.PipeStatus()[0])

    def testSigpipeStatusOk(self):
        pi = self._Pipeline([
            self._Proc('yes'),
            self._LastLogged(self._Proc('head', ['-n', '1'])),
        ], sigpipe_status_ok=True)
        self.assertEqual(0, pi.ExecuteAndWait())
        self.assertEqual([0, 0], pi.PipeStatus())
        self.assertEqual('y\n', test_lib.ReadOnlyLog(self.tmp, util.STDOUT))

    def testWaitTwice(self):
        pi = self._Pipeline([self._Proc('true'), self._Sh('exit 4')])
        self.assertEqual(4, pi.ExecuteAndWait())
        self.assertEqual(4, pi.Stages()[1].ExitStatus())
        # Stages were collected, so there's nothing left to wait on
        self.assertEqual(0, pi.Wait())
        self.assertEqual(4, pi.Stages()[1].ExitStatus())

    def testStageIgnoringTerm(self):
        pi = self._Pipeline([
            self._Sh('exit 0'),
            self._Sh('exit 4'),
            self._Sh('trap "" TERM; sleep 3'),
        ], kill_after_secs=0.2)
        start = time.time()
        pi.Execute()
        self.assertEqual(4, pi.Wait())
        self.assertLess(time.time() - start, 2.0)

        self.assertEqual([0, 4, None], pi.PipeStatus())
        last = pi.Stages()[2]
        self.assertFalse(last.IsRunning())
        self.assertEqual(-1, last.Pid())
        # SIGTERM if it came before the trap was set
        self.assertIn(last.TermSignal(), (signal.SIGTERM, signal.SIGKILL))


class RunningStateTest(_Common):

    def testRunning(self):
        pi = self._Pipeline([self._Proc('sleep', ['10']), self._Proc('cat')])
        pi.Execute()
        self.assertEqual(pipeline.RUNNING, pi.IsRunning())

        self.assertEqual(0, pi.Terminate())
        self.assertNotEqual(0, pi.Wait())
        self.assertEqual(pipeline.NOT_RUNNING, pi.IsRunning())

    def testUpstreamDoneIsStillRunning(self):
        # The normal way a pipeline drains: early stages exit first
        pi = self._Pipeline([self._Proc('true'), self._Proc('sleep', ['10'])])
        pi.Execute()
        first = pi.Stages()[0]
        self.assertTrue(test_lib.WaitUntil(lambda: not first.IsRunning()))
        self.assertEqual(pipeline.RUNNING, pi.IsRunning())

    def testBroken(self):
        pi = self._Pipeline([
            self._Proc('sleep', ['10']),
            self._Sh('exit 1'),
            self._Proc('sleep', ['10']),
        ])
        pi.Execute()
        self.assertTrue(
            test_lib.WaitUntil(lambda: pi.IsRunning() == pipeline.BROKEN))

        self.assertEqual(0, pi.Terminate())
        self.assertEqual(128 + signal.SIGTERM, pi.Wait())
        self.assertEqual(pipeline.NOT_RUNNING, pi.IsRunning())

    def testTerminateIsBestEffort(self):
        pi = self._Pipeline([
            self._Proc('sleep', ['10']),
            self._Proc('sleep', ['10']),
        ])
        pi.Execute()
        self.assertEqual(0, pi.Terminate())
        # Again, after they're signaled
        self.assertEqual(0, pi.Terminate())
        pi.Wait()
        for stage in pi.Stages():
            self.assertFalse(stage.IsRunning())
        # And after they're collected
        self.assertEqual(0, pi.Terminate())


if __name__ == '__main__':
    unittest.main()
