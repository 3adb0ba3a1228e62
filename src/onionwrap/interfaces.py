
from zope.interface import interface
Interface = interface.Interface

class OnionWrapError(Exception):
    """Base class for every error onionwrap reports to the user."""

class InvalidSpec(OnionWrapError):
    """The VPORT[,TARGET] port specification was malformed."""

class ControlConnectionError(OnionWrapError):
    """The Tor control port refused the connection or was unreachable."""

class AuthFailed(OnionWrapError):
    """Tor rejected (or we could not attempt) control port authentication."""

class ProtocolViolation(OnionWrapError):
    """Tor answered outside of the documented control protocol contract. This
    usually means an incompatible Tor version."""

class CommandFailed(OnionWrapError):
    """A control command got a non-2xx reply."""
    def __init__(self, code, text):
        OnionWrapError.__init__(self, code, text)
        self.code = code
        self.text = text

    def __str__(self):
        return "%s %s" % (self.code, self.text)

class SessionEnded(OnionWrapError):
    """The control connection closed. Tor tears down any onion service
    created on it."""

class KeyIOError(OnionWrapError):
    """The onion key file could not be read or written."""

class KeyNotFound(KeyIOError):
    """The onion key file does not exist."""

class MalformedKey(OnionWrapError):
    """The onion key was not in a recognized format."""

class WorkerStartFailure(OnionWrapError):
    """The wrapped command could not be launched."""

class ListenerError(OnionWrapError):
    """The inetd listener could not be created, or died."""


class ITerminationSource(Interface):
    def install(terminate):
        """Arrange for terminate(signum) to be called whenever somebody
        asks us to shut down (SIGINT/SIGTERM for real processes). The
        callable is always invoked from the reactor thread."""

    def uninstall():
        """Stop delivering termination requests and restore whatever was
        in place before install()."""
