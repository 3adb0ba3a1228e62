# -*- test-case-name: onionwrap.test.test_supervisor -*-

import os, signal
from zope.interface import implementer
from twisted.internet import defer, error, protocol
from twisted.python import procutils

from onionwrap import log
from onionwrap.log import NOISY, UNUSUAL
from onionwrap.config import CONTROL_PASSWD_ENV
from onionwrap.interfaces import ITerminationSource, WorkerStartFailure
from onionwrap.util import OneShotObserverList

EXIT_SUCCESS = 0
# a signal death or nonzero rc are both reported as this, since the real
# status cannot always be recovered
EXIT_FAILURE = 1

FACILITY = "onionwrap/supervisor"

def rewrite_argv(argv, port_spec):
    """Substitute %VPORT, %TPORT and %TADDR in every argument but the
    first. %TPORT is left alone for unix socket targets, which have no
    port."""
    rewritten = [argv[0]]
    for arg in argv[1:]:
        arg = arg.replace("%VPORT", str(port_spec.virtual_port))
        if port_spec.target_port is not None:
            arg = arg.replace("%TPORT", str(port_spec.target_port))
        arg = arg.replace("%TADDR", port_spec.target)
        rewritten.append(arg)
    return rewritten

def worker_environment(environ=None):
    if environ is None:
        environ = os.environ
    env = dict(environ)
    # the worker has no business talking to the control port
    env.pop(CONTROL_PASSWD_ENV, None)
    return env

def exit_code_for(status):
    """Map a ProcessDone/ProcessTerminated to our exit code."""
    if status.signal is None and status.exitCode == 0:
        return EXIT_SUCCESS
    return EXIT_FAILURE

class WorkerTemplate:
    """The wrapped command, before per-instance argument rewriting."""

    def __init__(self, argv, port_spec, rewrite=True):
        if not argv:
            raise WorkerStartFailure("no command specified to wrap")
        self.argv = list(argv)
        self.port_spec = port_spec
        self.rewrite = rewrite

    def build_argv(self):
        if self.rewrite:
            return rewrite_argv(self.argv, self.port_spec)
        return list(self.argv)

    def resolve_executable(self):
        name = self.argv[0]
        if os.sep in name:
            if os.path.isfile(name) and os.access(name, os.X_OK):
                return name
            raise WorkerStartFailure("%s is not an executable file" % name)
        found = procutils.which(name)
        if not found:
            raise WorkerStartFailure("%s not found in $PATH" % name)
        return found[0]

class WorkerProcessProtocol(protocol.ProcessProtocol):
    # in normal mode the worker uses our own stdio directly, so all there
    # is to watch is the exit
    def __init__(self):
        self.ended = OneShotObserverList()

    def processEnded(self, reason):
        self.ended.fire(reason.value)

class Supervisor:
    """I run a single long-lived worker.

    run() starts it and returns a Deferred with our exit code. terminate()
    is the termination-request entry point: it forwards the signal and, if
    the worker is still around after the grace period, SIGKILLs it.
    """

    def __init__(self, template, config, reactor=None, spawner=None,
                 environ=None):
        if reactor is None:
            from twisted.internet import reactor
        self._reactor = reactor
        # spawner has the reactor.spawnProcess signature, tests replace it
        self._spawn = spawner or reactor.spawnProcess
        self._environ = environ
        self.template = template
        self.config = config
        self.grace_period = config.grace_period
        self.process = None
        self._kill_timer = None
        self._forced = False
        self._exited = False
        self._done = OneShotObserverList()

    def run(self, childFDs=None):
        assert self.process is None
        if childFDs is None:
            childFDs = {0: 0, 1: 1, 2: 2}
        argv = self.template.build_argv()
        executable = self.template.resolve_executable()
        pp = WorkerProcessProtocol()
        log.msg("Cmd: %r" % (argv,), level=NOISY, facility=FACILITY)
        try:
            self.process = self._spawn(pp, executable, argv,
                                       env=worker_environment(self._environ),
                                       childFDs=childFDs)
        except OSError as e:
            raise WorkerStartFailure("failed to start %s: %s" % (argv[0], e))
        d = pp.ended.whenFired()
        d.addCallback(self._ended)
        return self.when_done()

    def when_done(self):
        return self._done.whenFired()

    def _ended(self, status):
        self._exited = True
        if self._kill_timer is not None and self._kill_timer.active():
            self._kill_timer.cancel()
        self._kill_timer = None
        code = exit_code_for(status)
        if self._forced:
            code = EXIT_FAILURE
        log.msg("child process terminated (signal=%s, rc=%s)"
                % (status.signal, status.exitCode),
                level=NOISY, facility=FACILITY)
        self._done.fire(code)

    def terminate(self, signum):
        """Forward signum to the worker, then allow it grace_period seconds
        to exit before killing it."""
        if self.process is None or self._exited:
            return
        log.msg("received signal %d, forwarding to child" % signum,
                level=NOISY, facility=FACILITY)
        try:
            self.process.signalProcess(signum)
        except error.ProcessExitedAlready:
            return
        if self._kill_timer is None:
            self._kill_timer = self._reactor.callLater(self.grace_period,
                                                       self._grace_expired)

    def _grace_expired(self):
        self._kill_timer = None
        log.msg("post signal delay elapsed, killing child", level=UNUSUAL,
                facility=FACILITY)
        self._forced = True
        self.kill()

    def kill(self):
        if self.process is None or self._exited:
            return
        try:
            self.process.signalProcess("KILL")
        except error.ProcessExitedAlready:
            pass

    def stop(self):
        """Kill the worker unconditionally (a no-op if it already exited)
        and return a Deferred that fires with the exit code once it has
        been reaped. Used once the wait has been resolved by any path, so
        no child outlives us."""
        if self.process is None:
            return defer.succeed(None)
        self.kill()
        return self.when_done()


@implementer(ITerminationSource)
class SignalTermination:
    """Deliver real SIGINT/SIGTERM to a terminate(signum) callable. This
    must be installed after the reactor has started, since the reactor
    installs its own handlers for these signals."""

    signals = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, reactor=None):
        if reactor is None:
            from twisted.internet import reactor
        self._reactor = reactor
        self._terminate = None
        self._previous = {}

    def install(self, terminate):
        self._terminate = terminate
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handler)

    def _handler(self, signum, frame):
        self._reactor.callFromThread(self._terminate, signum)

    def uninstall(self):
        previous, self._previous = self._previous, {}
        for signum, handler in previous.items():
            signal.signal(signum, handler)
