# -*- test-case-name: onionwrap.test.test_cli -*-

from collections import namedtuple

CONTROL_PORT_ENV = "TOR_CONTROL_PORT"
CONTROL_PASSWD_ENV = "TOR_CONTROL_PASSWD"
DEFAULT_CONTROL_PORT = "tcp://127.0.0.1:9051"

# how long a worker gets to exit after we forward SIGINT/SIGTERM to it
SIGKILL_DELAY = 5.0

_fields = ["control_port", "control_password", "port_spec", "key_path",
           "generate", "inetd", "rewrite_args", "debug", "quiet",
           "grace_period", "command"]

class Config(namedtuple("Config", _fields)):
    """Everything one onionwrap invocation was asked to do. Components get
    this at construction time instead of consulting global state."""
    __slots__ = ()

    def __repr__(self):
        # keep the password out of debug output
        r = self._replace(control_password=self.control_password
                          and "<redacted>")
        return "Config(%s)" % ", ".join(["%s=%r" % (k, getattr(r, k))
                                         for k in self._fields])

def make_config(**kwargs):
    values = {"control_port": DEFAULT_CONTROL_PORT,
              "control_password": None,
              "port_spec": None,
              "key_path": None,
              "generate": False,
              "inetd": False,
              "rewrite_args": True,
              "debug": False,
              "quiet": False,
              "grace_period": SIGKILL_DELAY,
              "command": (),
              }
    values.update(kwargs)
    return Config(**values)

def config_from_options(options, port_spec, environ):
    """Merge parsed command-line options with the environment. The control
    port comes from --control-port, then $TOR_CONTROL_PORT, then the
    default. The password only ever comes from $TOR_CONTROL_PASSWD, so it
    never shows up in a process listing."""
    control_port = (options["control-port"]
                    or environ.get(CONTROL_PORT_ENV)
                    or DEFAULT_CONTROL_PORT)
    return make_config(control_port=control_port,
                       control_password=environ.get(CONTROL_PASSWD_ENV) or None,
                       port_spec=port_spec,
                       key_path=options["onion-key"],
                       generate=bool(options["generate"]),
                       inetd=bool(options["inetd"]),
                       rewrite_args=not options["no-rewrite"],
                       debug=bool(options["debug"]),
                       quiet=bool(options["quiet"]),
                       command=tuple(options.command),
                       )
