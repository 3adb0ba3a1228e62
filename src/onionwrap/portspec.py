# -*- test-case-name: onionwrap.test.test_portspec -*-

import re
import socket
from collections import namedtuple
from onionwrap.interfaces import InvalidSpec

LOCALHOST = "127.0.0.1"
UNIX_PREFIX = "unix:"

# "[v6addr]:port" or "host:port"
BRACKETED_RE = re.compile(r"^\[([^\]]+)\]:([^:]+)$")

class PortSpec(namedtuple("PortSpec", ["virtual_port", "target_port",
                                       "target"])):
    """One parsed VPORT[,TARGET] argument. target_port is None when the
    target is a unix socket path."""
    __slots__ = ()

    @property
    def is_unix(self):
        return self.target_port is None

    def host_and_port(self):
        assert not self.is_unix
        return split_host_port(self.target)

    def port_argument(self):
        """Return the value for ADD_ONION's Port= argument."""
        if self.is_unix:
            path = self.target
            if re.search(r"\s", path):
                path = '"%s"' % path.replace("\\", "\\\\").replace('"', '\\"')
            return "%d,%s%s" % (self.virtual_port, UNIX_PREFIX, path)
        return "%d,%s" % (self.virtual_port, self.target)

def parse_port(s):
    # only plain decimal digits, so "+80" and " 80" are rejected like strconv
    if not s.isdigit() or not s.isascii():
        raise InvalidSpec("invalid port '%s'" % s)
    port = int(s)
    if port == 0:
        raise InvalidSpec("invalid port '0'")
    if port > 65535:
        raise InvalidSpec("port '%s' out of range" % s)
    return port

def split_host_port(target):
    mo = BRACKETED_RE.search(target)
    if mo:
        return mo.group(1), mo.group(2)
    host, sep, port = target.rpartition(":")
    if not sep:
        raise InvalidSpec("target '%s' is missing a port" % target)
    if ":" in host:
        raise InvalidSpec("IPv6 target '%s' must use [ADDR]:PORT" % target)
    return host, port

def resolve_tcp_port(target):
    host, port = split_host_port(target)
    try:
        infos = socket.getaddrinfo(host or None, port, 0, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise InvalidSpec("unable to resolve target '%s': %s" % (target, e))
    if not infos:
        raise InvalidSpec("unable to resolve target '%s'" % target)
    portnum = infos[0][4][1]
    if portnum == 0:
        raise InvalidSpec("target has invalid port '0'")
    return portnum

def parse_port_spec(arg):
    """Parse VPORT[,TARGET], the same syntax ADD_ONION uses for Port=.

     * If TARGET is omitted, VPORT is mirrored onto 127.0.0.1.
     * If TARGET is a naked port, 127.0.0.1:TARGET is used.
     * If TARGET starts with 'unix:', the rest is an AF_UNIX socket path.
     * Otherwise TARGET is a HOST:PORT, which must resolve.
    """
    if not arg:
        raise InvalidSpec("no onion service port specified")
    pieces = arg.split(",", 1)
    vport = parse_port(pieces[0])
    if len(pieces) == 1:
        return PortSpec(vport, vport, "%s:%d" % (LOCALHOST, vport))

    target = pieces[1]
    try:
        tport = parse_port(target)
    except InvalidSpec:
        pass
    else:
        return PortSpec(vport, tport, "%s:%d" % (LOCALHOST, tport))

    if target.startswith(UNIX_PREFIX):
        path = target[len(UNIX_PREFIX):]
        if not path:
            raise InvalidSpec("empty unix socket path")
        return PortSpec(vport, None, path)

    return PortSpec(vport, resolve_tcp_port(target), target)
