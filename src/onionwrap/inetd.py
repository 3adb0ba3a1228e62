# -*- test-case-name: onionwrap.test.test_inetd -*-

"""A trivial inetd: listen on the onion service's target address and run
one copy of the wrapped command per connection, with the connection
plumbed into its stdin/stdout."""

import errno
from zope.interface import implementer
from twisted.internet import defer, error, protocol
from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import (TCP4ServerEndpoint, TCP6ServerEndpoint,
                                        UNIXServerEndpoint)
from twisted.internet.interfaces import IHalfCloseableProtocol

from onionwrap import log
from onionwrap.log import NOISY, UNUSUAL
from onionwrap.interfaces import ListenerError, WorkerStartFailure
from onionwrap.supervisor import worker_environment
from onionwrap.util import OneShotObserverList

FACILITY = "onionwrap/inetd"

# accept() failures that leave the listening socket usable. Anything else
# is fatal to the listener.
TRANSIENT_ACCEPT_ERRORS = frozenset([
    errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR, errno.EPERM,
    errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM,
    errno.ECONNABORTED, errno.ECONNRESET, errno.ETIMEDOUT,
    ])

class AcceptWatcher:
    """I stand in for a listening port's socket, passing everything through
    but reporting non-transient accept() failures to on_fatal. The error
    is re-raised, so the port handles (and logs) it as before."""

    def __init__(self, skt, on_fatal):
        self.skt = skt
        self.on_fatal = on_fatal

    def __getattr__(self, name):
        return getattr(self.skt, name)

    def accept(self):
        try:
            return self.skt.accept()
        except OSError as e:
            if e.errno not in TRANSIENT_ACCEPT_ERRORS:
                self.on_fatal(e)
            raise

class InetdWorkerProtocol(protocol.ProcessProtocol):
    def __init__(self, handler):
        self.handler = handler

    def outReceived(self, data):
        self.handler.worker_output(data)

    def outConnectionLost(self):
        self.handler.worker_output_closed()

    def inConnectionLost(self):
        # either we closed its stdin, or it went away
        self.handler.worker_input_closed()

    def processEnded(self, reason):
        self.handler.worker_ended(reason.value)

@implementer(IHalfCloseableProtocol)
class InetdConnection(protocol.Protocol):
    """One accepted connection and its worker.

    Two pumps run independently: connection -> worker stdin, and worker
    stdout -> connection. Each one closes its destination when its source
    hits EOF. Once both are finished the worker is killed and reaped, and
    only then is the connection closed.
    """

    def __init__(self, multiplexer):
        self.multiplexer = multiplexer
        self.process = None
        self.peer = None
        self._inbound_done = defer.Deferred()
        self._outbound_done = defer.Deferred()
        self._inbound_finished = False
        self._outbound_finished = False
        self._lost = False
        self._reaped = OneShotObserverList()
        self.done = OneShotObserverList()

    def connectionMade(self):
        self.peer = self.transport.getPeer()
        log.msg("inetd: new connection: %s" % (self.peer,), level=NOISY,
                facility=FACILITY)
        self.multiplexer.connection_started(self)
        try:
            self.process = self.multiplexer.spawn_worker(
                InetdWorkerProtocol(self))
        except WorkerStartFailure as e:
            log.msg("inetd: %s" % e, level=UNUSUAL, facility=FACILITY)
            self.transport.loseConnection()
            return
        d = defer.gatherResults([self._inbound_done, self._outbound_done])
        d.addCallback(self._pumps_finished)

    # connection -> worker

    def dataReceived(self, data):
        if self.process is not None and not self._inbound_finished:
            self.process.write(data)

    def readConnectionLost(self):
        self._finish_inbound()

    def worker_input_closed(self):
        self._finish_inbound()

    def _finish_inbound(self):
        if self._inbound_finished:
            return
        self._inbound_finished = True
        if self.process is not None:
            self.process.closeStdin()
        self._inbound_done.callback(None)

    # worker -> connection

    def worker_output(self, data):
        if not self._outbound_finished:
            self.transport.write(data)

    def worker_output_closed(self):
        if self._outbound_finished:
            return
        self.transport.loseWriteConnection()
        self._finish_outbound()

    def writeConnectionLost(self):
        self._finish_outbound()

    def _finish_outbound(self):
        if self._outbound_finished:
            return
        self._outbound_finished = True
        self._outbound_done.callback(None)

    # teardown

    def connectionLost(self, reason):
        self._lost = True
        self._finish_inbound()
        self._finish_outbound()
        self._maybe_done()

    def _pumps_finished(self, _):
        try:
            self.process.signalProcess("KILL")
        except error.ProcessExitedAlready:
            pass
        d = self._reaped.whenFired()
        d.addCallback(lambda _: self.transport.loseConnection())

    def worker_ended(self, status):
        log.msg("inetd: worker for %s exited (signal=%s, rc=%s)"
                % (self.peer, status.signal, status.exitCode),
                level=NOISY, facility=FACILITY)
        # nothing more can be delivered to it
        self._finish_inbound()
        self._reaped.fire(status)
        self._maybe_done()

    def _maybe_done(self):
        if self.done.isFired() or not self._lost:
            return
        if self.process is not None and not self._reaped.isFired():
            return
        log.msg("inetd: closed connection: %s" % (self.peer,), level=NOISY,
                facility=FACILITY)
        self.multiplexer.connection_finished(self)
        self.done.fire(None)

class InetdFactory(protocol.Factory):
    noisy = False

    def __init__(self, multiplexer):
        self.multiplexer = multiplexer

    def buildProtocol(self, addr):
        p = InetdConnection(self.multiplexer)
        p.factory = self
        return p

class Multiplexer:
    """I listen on the target address and hand every accepted connection to
    its own InetdConnection. There is no admission control: every
    connection gets a worker."""

    def __init__(self, template, config, reactor=None, spawner=None,
                 environ=None):
        if reactor is None:
            from twisted.internet import reactor
        self._reactor = reactor
        self._spawn = spawner or reactor.spawnProcess
        self._environ = environ
        self.template = template
        self.config = config
        self.handlers = set()
        self._port = None
        self._stopping = None
        self._stopped = OneShotObserverList()
        self._failure = None

    def server_endpoint(self, port_spec):
        if port_spec.is_unix:
            return UNIXServerEndpoint(self._reactor, port_spec.target)
        host, _ = port_spec.host_and_port()
        if ":" in host:
            return TCP6ServerEndpoint(self._reactor, port_spec.target_port,
                                      interface=host)
        return TCP4ServerEndpoint(self._reactor, port_spec.target_port,
                                  interface=host)

    @inlineCallbacks
    def listen(self, port_spec):
        ep = self.server_endpoint(port_spec)
        try:
            self._port = yield ep.listen(InetdFactory(self))
        except (error.CannotListenError, OSError) as e:
            raise ListenerError("failed to create an inetd listener: %s" % e)
        self._port.socket = AcceptWatcher(self._port.socket,
                                          self.accept_failed)
        log.msg("inetd: listening on %s" % port_spec.target, level=NOISY,
                facility=FACILITY)
        return self._port

    def accept_failed(self, e):
        """The listener is broken: shut everything down, and make
        when_stopped() report why."""
        if self._failure is not None:
            return
        self._failure = ListenerError("critical accept() failure: %s" % e)
        # we are inside the port's doRead
        self._reactor.callLater(0, self.stop)

    def spawn_worker(self, processProtocol):
        argv = self.template.build_argv()
        executable = self.template.resolve_executable()
        try:
            return self._spawn(processProtocol, executable, argv,
                               env=worker_environment(self._environ),
                               childFDs={0: "w", 1: "r", 2: 2})
        except OSError as e:
            raise WorkerStartFailure("failed to start command: %s" % e)

    def connection_started(self, handler):
        self.handlers.add(handler)

    def connection_finished(self, handler):
        self.handlers.discard(handler)

    def when_stopped(self):
        """Fire once stop() has finished, or errback with ListenerError if
        the listener died."""
        d = self._stopped.whenFired()
        d.addCallback(self._check_failure)
        return d

    def _check_failure(self, _):
        if self._failure is not None:
            raise self._failure

    def serve(self, port_spec):
        """Listen, then wait. The Deferred only fires if stop() is called;
        listener failures errback it with ListenerError."""
        done = defer.Deferred()
        d = self.listen(port_spec)
        d.addCallback(lambda _: self.when_stopped())
        d.addCallbacks(done.callback, done.errback)
        return done

    def stop(self):
        """Stop accepting, drop every live connection (which kills its
        worker), and fire once all of them are cleaned up."""
        if self._stopping is not None:
            return self._stopped.whenFired()
        if self._port is not None:
            d = defer.maybeDeferred(self._port.stopListening)
        else:
            d = defer.succeed(None)
        handlers = list(self.handlers)
        waiting = [h.done.whenFired() for h in handlers]
        for h in handlers:
            h.transport.loseConnection()
        self._stopping = d
        d.addCallback(lambda _: defer.gatherResults(waiting))
        d.addCallback(lambda _: self._stopped.fire(None))
        return self._stopped.whenFired()
