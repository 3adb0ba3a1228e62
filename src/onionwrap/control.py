# -*- test-case-name: onionwrap.test.test_control -*-

"""The Tor control-port session. txtorcon speaks the protocol (reply
framing, authentication, event dispatch); this module decides what to say
with it: authenticate, run ADD_ONION, and keep the connection (and
therefore the onion service) alive while draining asynchronous events."""

import re
from collections import namedtuple
from functools import partial
from twisted.internet import defer, error
from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import clientFromString, quoteStringArgument
from twisted.python.failure import Failure
import txtorcon

from onionwrap import log
from onionwrap.log import NOISY, UNUSUAL
from onionwrap.interfaces import (ControlConnectionError, AuthFailed,
                                  ProtocolViolation, CommandFailed,
                                  SessionEnded)
from onionwrap.keys import to_wire, from_wire
from onionwrap.util import OneShotObserverList

# session states. Transitions only ever move forwards.
DISCONNECTED, CONNECTED, AUTHENTICATED, SERVICE_ACTIVE, CLOSED = range(5)

# subscribed to for the life of the session, and logged at NOISY
DRAIN_EVENTS = ("STATUS_GENERAL",)

BARE_PORT_RE = re.compile(r"^\d{1,5}$")
HOST_PORT_RE = re.compile(r"^(\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9.\-]+):(\d{1,5})$")
REPLY_PREFIX_RE = re.compile(r"^\d{3}[ +-]")

FACILITY = "onionwrap/control"

class ServiceHandle(namedtuple("ServiceHandle", ["service_id", "virtual_port",
                                                 "target_port", "target"])):
    __slots__ = ()

    @property
    def onion_address(self):
        return self.service_id + ".onion"

    def describe(self):
        return "%s:%d -> %s" % (self.onion_address, self.virtual_port,
                                self.target)

def control_endpoint_description(control_port):
    """Turn the control port spellings people actually use into a Twisted
    client endpoint description:

      tcp://HOST:PORT, unix://PATH, unix:/PATH, HOST:PORT, PORT

    Anything else is assumed to already be an endpoint description (like
    'tcp:host=127.0.0.1:port=9051')."""
    s = control_port.strip()
    if s.startswith("tcp://"):
        s = s[len("tcp://"):]
        mo = HOST_PORT_RE.search(s)
        if not mo:
            raise ValueError("expected tcp://HOST:PORT")
        return _tcp_description(mo.group(1), mo.group(2))
    if s.startswith("unix://"):
        return "unix:path=%s" % quoteStringArgument(s[len("unix://"):])
    if s.startswith("unix:/"):
        return "unix:path=%s" % quoteStringArgument(s[len("unix:"):])
    if BARE_PORT_RE.search(s):
        return _tcp_description("127.0.0.1", s)
    mo = HOST_PORT_RE.search(s)
    if mo:
        return _tcp_description(mo.group(1), mo.group(2))
    return s

def _tcp_description(host, port):
    host = host.lstrip("[").rstrip("]")
    return "tcp:host=%s:port=%d" % (quoteStringArgument(host), int(port))

def reply_lines(reply):
    """Split a reply string (as txtorcon delivers it) into keyword lines,
    tolerating 'NNN-' prefixes and the trailing 'OK'."""
    for line in reply.splitlines():
        mo = REPLY_PREFIX_RE.search(line)
        if mo:
            line = line[mo.end():]
        line = line.strip()
        if line and line != "OK":
            yield line

def parse_add_onion_reply(reply, key_requested):
    """Return (service_id, generated ServiceKey or None)."""
    service_id = None
    key = None
    for line in reply_lines(reply):
        if line.startswith("ServiceID="):
            service_id = line[len("ServiceID="):]
        elif line.startswith("PrivateKey="):
            if not key_requested:
                raise ProtocolViolation("received a private key when we "
                                        "shouldn't have")
            key = from_wire(line[len("PrivateKey="):])
    if not service_id:
        # tor always sends this on success
        raise ProtocolViolation("failed to determine service ID")
    if key_requested and key is None:
        raise ProtocolViolation("asked for the generated private key, "
                                "but none was sent")
    return service_id, key


class ControlSession:
    """I own one control connection, from connect() to close(). Closing the
    connection is how the onion service gets removed: ADD_ONION services
    live exactly as long as the control connection that created them."""

    def __init__(self, config, reactor=None):
        if reactor is None:
            from twisted.internet import reactor
        self._reactor = reactor
        self.config = config
        self.state = DISCONNECTED
        self.event_reader_active = False
        self._protocol = None
        self._secret = OneShotObserverList()
        self._ended = OneShotObserverList()
        self._events_seen = 0

    def _trace(self, text):
        if self.config.debug:
            log.msg("C: %s" % text, level=NOISY, facility=FACILITY)

    def _password(self):
        # txtorcon asks for this only when tor wants HASHEDPASSWORD, and
        # possibly before authenticate() has been told the secret
        return self._secret.whenFired()

    @inlineCallbacks
    def connect(self, control_port):
        assert self.state == DISCONNECTED, self.state
        try:
            desc = control_endpoint_description(control_port)
            ep = clientFromString(self._reactor, desc)
        except ValueError as e:
            raise ControlConnectionError("invalid control port '%s': %s"
                                         % (control_port, e))
        log.msg("connecting to control port %s" % desc, level=NOISY,
                facility=FACILITY)
        try:
            # wait_for_proto=False: authentication is authenticate()'s job
            self._protocol = yield txtorcon.build_tor_connection(
                ep, build_state=False, wait_for_proto=False,
                password_function=self._password)
        except (error.ConnectError, error.DNSLookupError, OSError) as e:
            raise ControlConnectionError("failed to connect to the control "
                                         "port %s: %s" % (control_port, e))
        self._protocol.when_disconnected().addBoth(self._connection_lost)
        self.state = CONNECTED

    def _connection_lost(self, res):
        if isinstance(res, Failure):
            why = res.getErrorMessage()
        else:
            why = "Connection was closed cleanly."
        log.msg("control connection closed: %s" % why, level=NOISY,
                facility=FACILITY)
        if not self._ended.isFired():
            self._ended.fire(why)

    @property
    def authenticated(self):
        return self.state in (AUTHENTICATED, SERVICE_ACTIVE)

    @inlineCallbacks
    def authenticate(self, secret=None):
        """Let txtorcon authenticate using whatever PROTOCOLINFO says tor
        will accept. A secret (the control port password) is only used for
        HASHEDPASSWORD; without one, the cookie methods and NULL are
        tried."""
        assert self.state == CONNECTED, self.state
        how = ", password <redacted>" if secret else ""
        log.msg("authenticating%s" % how, level=NOISY, facility=FACILITY)
        if not self._secret.isFired():
            self._secret.fire(secret or None)
        try:
            yield self._protocol.post_bootstrap
        except txtorcon.TorProtocolError as e:
            raise AuthFailed(e.text)
        except (RuntimeError, EnvironmentError) as e:
            raise AuthFailed(str(e))
        if self._ended.isFired():
            raise SessionEnded("control connection closed during "
                               "authentication")
        log.msg("authenticated to tor %s" % (self._protocol.version,),
                level=NOISY, facility=FACILITY)
        self.state = AUTHENTICATED

    @inlineCallbacks
    def _command(self, line, redacted=None):
        if self.state == CLOSED or self._ended.isFired():
            raise SessionEnded("control session already closed")
        self._trace(redacted or line)
        try:
            reply = yield self._protocol.queue_command(line)
        except txtorcon.TorProtocolError as e:
            raise CommandFailed(str(e.code), e.text)
        except Exception:
            if self._ended.isFired():
                raise SessionEnded("control connection closed while "
                                   "running %s" % line.split(" ")[0])
            raise
        return reply

    @inlineCallbacks
    def create_service(self, port_spec, key=None, persist_if_generated=False):
        """Run ADD_ONION. Returns (ServiceHandle, ServiceKey-or-None); the
        key is only returned when tor generated it and we asked to keep it,
        and it is the caller's job to save it."""
        assert self.state == AUTHENTICATED, self.state
        port_arg = port_spec.port_argument()
        if key is not None:
            key_requested = False
            line = "ADD_ONION %s Port=%s" % (to_wire(key), port_arg)
            redacted = "ADD_ONION %s:<redacted> Port=%s" % (key.key_type,
                                                            port_arg)
        else:
            key_requested = bool(persist_if_generated)
            line = "ADD_ONION NEW:BEST Port=%s" % port_arg
            if not key_requested:
                line += " Flags=DiscardPK"
            redacted = None
        reply = yield self._command(line, redacted)
        service_id, generated = parse_add_onion_reply(reply, key_requested)
        self.state = SERVICE_ACTIVE
        handle = ServiceHandle(service_id, port_spec.virtual_port,
                               port_spec.target_port, port_spec.target)
        return (handle, generated)

    def _event_received(self, name, text):
        self._events_seen += 1
        log.msg("event: %s %s" % (name, text), level=NOISY,
                facility=FACILITY)

    def _subscribe_failed(self, f, name):
        log.msg("unable to subscribe to %s events: %s"
                % (name, f.getErrorMessage()), level=UNUSUAL,
                facility=FACILITY)

    def start_event_drain(self, events=DRAIN_EVENTS):
        """Keep consuming asynchronous events for the rest of the session.
        Returns a cancellable Deferred which errbacks with SessionEnded when
        the control connection goes away; it never succeeds."""
        assert self._protocol is not None
        self.event_reader_active = True
        for name in events:
            d = defer.maybeDeferred(self._protocol.add_event_listener, name,
                                    partial(self._event_received, name))
            d.addErrback(self._subscribe_failed, name)
        def _stopped(res):
            self.event_reader_active = False
            if isinstance(res, Failure):
                return res
            raise SessionEnded("control connection closed: %s" % res)
        d = self._ended.whenFired()
        d.addBoth(_stopped)
        return d

    def close(self):
        """Drop the control connection, which makes tor remove the onion
        service. Safe to call more than once, and from any state."""
        if self.state == CLOSED:
            return defer.succeed(None)
        self.state = CLOSED
        if self._protocol is None:
            return defer.succeed(None)
        d = self._ended.whenFired()
        if not self._ended.isFired():
            self._protocol.transport.loseConnection()
        d.addCallback(lambda _: None)
        return d
