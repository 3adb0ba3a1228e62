import sys, time
import socket
import mock
from twisted.internet import defer, task, error
from twisted.python import failure
from twisted.python.runtime import platformType
import txtorcon

from onionwrap.keys import ServiceKey, ED25519_V3, to_wire
from onionwrap.util import OneShotObserverList

class ShouldFailMixin:

    def shouldFail(self, expected_failure, which, substring,
                   callable, *args, **kwargs):
        assert substring is None or isinstance(substring, str)
        d = defer.maybeDeferred(callable, *args, **kwargs)
        def done(res):
            if isinstance(res, failure.Failure):
                if not res.check(expected_failure):
                    self.fail("got failure %s, was expecting %s"
                              % (res, expected_failure))
                if substring:
                    self.assertTrue(substring in str(res),
                                    "%s: substring '%s' not in '%s'"
                                    % (which, substring, str(res)))
                # make the Failure available to a subsequent callback, but
                # keep it from triggering an errback
                return [res]
            else:
                self.fail("%s was supposed to raise %s, not get '%s'" %
                          (which, expected_failure, res))
        d.addBoth(done)
        return d

class TimeoutError(Exception):
    pass

class PollComplete(Exception):
    pass

class PollMixin:

    def poll(self, check_f, pollinterval=0.01, timeout=None):
        # Return a Deferred, then call check_f periodically until it returns
        # True, at which point the Deferred will fire. If check_f does not
        # succeed within timeout= seconds, the Deferred will errback.
        cutoff = None
        if timeout is not None:
            cutoff = time.time() + timeout
        lc = task.LoopingCall(self._poll, check_f, cutoff)
        d = lc.start(pollinterval)
        def _convert_done(f):
            f.trap(PollComplete)
            return None
        d.addErrback(_convert_done)
        return d

    def _poll(self, check_f, cutoff):
        if cutoff is not None and time.time() > cutoff:
            raise TimeoutError()
        if check_f():
            raise PollComplete()


def allocate_tcp_port():
    """Return an (integer) available TCP port on localhost. This briefly
    listens on the port in question, then closes it right away."""

    # Allocate with 0.0.0.0 first, then make sure both 0.0.0.0 and
    # 127.0.0.1 can really listen on it: some kernels will hand out ports
    # that are in use by another process's 127.0.0.1 listener, or by the
    # near side of an ESTABLISHED connection.
    count = 0
    while True:
        s = _make_socket()
        s.bind(("0.0.0.0", 0))
        port = s.getsockname()[1]
        s.close()

        s = _make_socket()
        try:
            s.bind(("0.0.0.0", port))
            s.listen(5) # this is what sometimes fails
            s.close()
            s = _make_socket()
            s.bind(("127.0.0.1", port))
            s.listen(5)
            s.close()
            return port
        except socket.error:
            s.close()
            count += 1
            if count > 100:
                raise
            # try again

def _make_socket():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if platformType == "posix" and sys.platform != "cygwin":
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    return s


FAKE_SERVICE_ID = "xa4r2iadxm55fbnqgwwi5mymqdcofiu3w6rpbtqn7b2dyn7mgwj64jyd"
FAKE_KEY = ServiceKey(ED25519_V3, bytes(range(64)))

class FakeControlTransport:
    def __init__(self, proto):
        self.proto = proto

    def loseConnection(self):
        self.proto.hangup()

class FakeTorControlProtocol:
    """Stands in for a txtorcon.TorControlProtocol that is talking to tor.
    Authentication follows txtorcon's preference order (HASHEDPASSWORD
    when a password_function is available, then NULL), and every command
    lands in the FakeTor's .commands list."""

    version = "0.4.8.9"

    def __init__(self, tor, password_function):
        self.tor = tor
        self.password_function = password_function
        self.post_bootstrap = defer.Deferred()
        self.transport = FakeControlTransport(self)
        self.listeners = {}
        self.connected = True
        self._disconnected = OneShotObserverList()

    def start_authentication(self):
        methods = self.tor.methods
        if "HASHEDPASSWORD" in methods:
            d = defer.maybeDeferred(self.password_function)
            d.addCallback(self._check_password)
        elif "NULL" in methods:
            self.tor.commands.append("AUTHENTICATE")
            d = defer.succeed(None)
        else:
            d = defer.fail(RuntimeError(
                "The Tor I connected to doesn't support SAFECOOKIE nor "
                "COOKIE authentication and I have no password_function "
                "specified."))
        d.addCallbacks(lambda _: self.post_bootstrap.callback(self),
                       self.post_bootstrap.errback)

    def _check_password(self, passwd):
        if not passwd:
            raise RuntimeError("No password available.")
        self.tor.commands.append('AUTHENTICATE "%s"' % passwd)
        if passwd != self.tor.password:
            # tor hangs up on a failed AUTHENTICATE
            self.hangup()
            raise txtorcon.TorProtocolError(
                515, "Authentication failed: Password did not match "
                "HashedControlPassword value from configuration")

    def queue_command(self, cmd):
        if not self.connected:
            return defer.fail(RuntimeError("Tor unexpectedly disconnected "
                                           "while running: %s" % cmd))
        self.tor.commands.append(cmd)
        verb = cmd.split(" ")[0]
        handler = getattr(self, "cmd_" + verb, None)
        if handler is None:
            return defer.fail(txtorcon.TorProtocolError(
                510, 'Unrecognized command "%s"' % verb))
        return defer.maybeDeferred(handler, cmd)

    def cmd_ADD_ONION(self, cmd):
        f = self.tor
        if f.add_onion_error:
            raise txtorcon.TorProtocolError(*f.add_onion_error)
        lines = []
        if not f.omit_service_id:
            lines.append("ServiceID=%s" % f.service_id)
        keyspec = cmd.split(" ")[1]
        if (keyspec.startswith("NEW:") and "Flags=DiscardPK" not in cmd) \
           or f.always_send_key:
            lines.append("PrivateKey=%s" % to_wire(f.generated_key))
        return "\n".join(lines)

    def add_event_listener(self, name, callback):
        if name in self.tor.unknown_events:
            raise RuntimeError("Unknown event type: " + name)
        self.listeners.setdefault(name, []).append(callback)
        self.tor.commands.append("SETEVENTS %s"
                                 % " ".join(sorted(self.listeners)))
        return defer.succeed(None)

    def emit(self, name, text):
        for cb in self.listeners.get(name, []):
            cb(text)

    def when_disconnected(self):
        return self._disconnected.whenFired()

    def hangup(self):
        if not self.connected:
            return
        self.connected = False
        self.tor.disconnected(self)
        self._disconnected.fire(self)

class FakeTor:
    """Replaces txtorcon.build_tor_connection for the duration of a test,
    handing out FakeTorControlProtocols."""

    control_port = "tcp://127.0.0.1:9051"

    def __init__(self, methods=("NULL",), password=None):
        self.methods = methods
        self.password = password
        self.service_id = FAKE_SERVICE_ID
        self.generated_key = FAKE_KEY
        self.refuse = False
        self.omit_service_id = False
        self.always_send_key = False
        self.add_onion_error = None
        self.unknown_events = ()
        self.endpoints = []
        self.commands = []
        self.connections = []
        self.lost = []
        self._disconnected = OneShotObserverList()

    def install(self, testcase):
        patcher = mock.patch("txtorcon.build_tor_connection",
                             self.build_tor_connection)
        patcher.start()
        testcase.addCleanup(patcher.stop)
        testcase.addCleanup(self.stop)

    def build_tor_connection(self, connection, build_state=True,
                             wait_for_proto=True,
                             password_function=lambda: None):
        self.endpoints.append(connection)
        if self.refuse:
            return defer.fail(error.ConnectionRefusedError())
        p = FakeTorControlProtocol(self, password_function)
        self.connections.append(p)
        p.start_authentication()
        if wait_for_proto:
            return p.post_bootstrap
        return defer.succeed(p)

    def commands_starting(self, prefix):
        return [c for c in self.commands if c.startswith(prefix)]

    def disconnected(self, p):
        self.lost.append(p)
        if not self._disconnected.isFired():
            self._disconnected.fire(None)

    def when_disconnected(self):
        return self._disconnected.whenFired()

    def hangup(self):
        for p in self.connections:
            p.hangup()

    def stop(self):
        self.hangup()
        return defer.succeed(None)


class FakeProcess:
    """Stands in for an IProcessTransport. ended() delivers processEnded
    the way the reactor would."""

    def __init__(self, proto):
        self.proto = proto
        self.signals = []
        self.exited = False
        self.stdin_closed = False
        self.written = []

    def signalProcess(self, signum):
        if self.exited:
            raise error.ProcessExitedAlready()
        self.signals.append(signum)

    def write(self, data):
        self.written.append(data)

    def closeStdin(self):
        self.stdin_closed = True

    def ended(self, exitCode=0, signal=None):
        self.exited = True
        if exitCode == 0 and signal is None:
            reason = error.ProcessDone(0)
        else:
            reason = error.ProcessTerminated(exitCode=exitCode, signal=signal)
        self.proto.processEnded(failure.Failure(reason))

class FakeSpawner:
    """Has the reactor.spawnProcess signature."""

    def __init__(self, fail_with=None):
        self.calls = []
        self.processes = []
        self.fail_with = fail_with

    def __call__(self, processProtocol, executable, args=(), env=None,
                 path=None, uid=None, gid=None, usePTY=0, childFDs=None):
        self.calls.append((executable, list(args), env, childFDs))
        if self.fail_with:
            raise self.fail_with
        p = FakeProcess(processProtocol)
        self.processes.append(p)
        processProtocol.makeConnection(p)
        return p
