
# application code should import names from here rather than from the
# individual modules, which may get rearranged.

from onionwrap import __version__
from onionwrap.config import Config, make_config
from onionwrap.portspec import PortSpec, parse_port_spec
from onionwrap.keys import ServiceKey, load_key, save_key
from onionwrap.control import ControlSession, ServiceHandle
from onionwrap.supervisor import Supervisor, WorkerTemplate, SignalTermination
from onionwrap.inetd import Multiplexer
from onionwrap.cli import OnionWrap, run_onionwrap
from onionwrap.interfaces import (OnionWrapError, InvalidSpec,
                                  ControlConnectionError, AuthFailed,
                                  ProtocolViolation, CommandFailed,
                                  SessionEnded, KeyIOError, KeyNotFound,
                                  MalformedKey, WorkerStartFailure,
                                  ListenerError, ITerminationSource)

# hush pyflakes
_unused = [
    __version__,
    Config, make_config,
    PortSpec, parse_port_spec,
    ServiceKey, load_key, save_key,
    ControlSession, ServiceHandle,
    Supervisor, WorkerTemplate, SignalTermination,
    Multiplexer,
    OnionWrap, run_onionwrap,
    OnionWrapError, InvalidSpec, ControlConnectionError, AuthFailed,
    ProtocolViolation, CommandFailed, SessionEnded, KeyIOError, KeyNotFound,
    MalformedKey, WorkerStartFailure, ListenerError, ITerminationSource,
    ]
del _unused
