# -*- test-case-name: onionwrap.test.test_cli -*-

import os, sys
from io import StringIO
from twisted.python import usage
from twisted.internet import defer
from twisted.internet.defer import inlineCallbacks

import onionwrap
from onionwrap import log
from onionwrap.log import NOISY, OPERATIONAL, WEIRD, BAD
from onionwrap.config import (config_from_options, DEFAULT_CONTROL_PORT,
                              CONTROL_PORT_ENV, CONTROL_PASSWD_ENV)
from onionwrap.control import ControlSession
from onionwrap.inetd import Multiplexer
from onionwrap.interfaces import OnionWrapError, InvalidSpec, KeyNotFound
from onionwrap.keys import load_key, save_key
from onionwrap.portspec import parse_port_spec
from onionwrap.supervisor import (Supervisor, WorkerTemplate, SignalTermination,
                                  EXIT_SUCCESS, EXIT_FAILURE)

class Options(usage.Options):
    synopsis = "Usage: onionwrap [options] --port=VPORT[,TARGET] COMMAND [ARGS..]"

    optFlags = [
        ("generate", None, "Generate and save a new key if needed"),
        ("inetd", None, "Listen on the target port and run COMMAND per connection"),
        ("no-rewrite", None, "Disable rewriting COMMAND arguments"),
        ("debug", "d", "Print debug messages to stderr"),
        ("quiet", "q", "Suppress non-error messages"),
        ]
    optParameters = [
        ("control-port", None, None,
         "Tor control port (default: $%s, then %s)"
         % (CONTROL_PORT_ENV, DEFAULT_CONTROL_PORT)),
        ("port", "p", None, "Onion Service port, as VPORT[,TARGET]"),
        ("onion-key", "k", None, "Onion Service private key file"),
        ]

    longdesc = """onionwrap creates a Tor Onion Service through the control
    port, then runs COMMAND, removing the service when COMMAND exits. In
    COMMAND's arguments, %%VPORT, %%TPORT and %%TADDR are replaced with the
    virtual port, target port and target address (unless --no-rewrite is
    given). The control port password, if any, is read from $%s.""" % (
        CONTROL_PASSWD_ENV,)

    opt_h = usage.Options.opt_help

    def parseArgs(self, *command):
        self.command = command

    def postOptions(self):
        if not self["port"]:
            raise usage.UsageError("--port= is mandatory")
        if not self.command:
            raise usage.UsageError("no command specified to wrap")
        if self["generate"] and not self["onion-key"]:
            raise usage.UsageError("--generate requires --onion-key=")

    def opt_version(self):
        from twisted import copyright
        stdout = getattr(self, "stdout", sys.stdout)
        print("onionwrap version:", onionwrap.__version__, file=stdout)
        print("Twisted version:", copyright.version, file=stdout)
        sys.exit(0)


class OnionWrap:
    """One invocation: create the onion service, then run the command (or
    the inetd listener) until it finishes or the control connection dies.
    The service is removed, by closing the control connection, on every
    exit path."""

    def __init__(self, config, reactor=None, termination=None, spawner=None,
                 environ=None):
        if reactor is None:
            from twisted.internet import reactor
        self._reactor = reactor
        self.config = config
        self.termination = termination
        self._spawner = spawner
        self._environ = environ

    def load_key(self):
        config = self.config
        if not config.key_path:
            return None
        try:
            return load_key(config.key_path)
        except KeyNotFound:
            if not config.generate:
                raise
        return None

    @inlineCallbacks
    def run(self):
        config = self.config
        key = self.load_key()
        template = WorkerTemplate(config.command, config.port_spec,
                                  config.rewrite_args)
        # find out about a missing executable before creating the service
        template.resolve_executable()
        log.msg("Cmd: %r" % (template.build_argv(),), level=NOISY)
        log.msg("CtrlPort: %s" % config.control_port, level=NOISY)
        log.msg("VirtPort: %d Target: %s" % (config.port_spec.virtual_port,
                                             config.port_spec.target),
                level=NOISY)

        session = ControlSession(config, self._reactor)
        try:
            yield session.connect(config.control_port)
            yield session.authenticate(config.control_password)
            persist = config.generate and key is None
            handle, generated = yield session.create_service(
                config.port_spec, key, persist_if_generated=persist)
            if generated is not None:
                # if this fails, the finally clause below tears the
                # (already live) service down before we report it
                save_key(config.key_path, generated)
                log.msg("Saved new onion key to %s" % config.key_path,
                        level=NOISY)
            log.msg("Created onion: %s" % handle.describe(),
                    level=OPERATIONAL)
            drain = session.start_event_drain()
            try:
                if config.inetd:
                    rc = yield self.run_inetd(template, drain)
                else:
                    rc = yield self.run_worker(template, drain)
            finally:
                drain.addErrback(lambda f: None)
                drain.cancel()
        finally:
            yield session.close()
        return rc

    def _install_termination(self, terminate):
        if self.termination is not None:
            self.termination.install(terminate)

    def _uninstall_termination(self):
        if self.termination is not None:
            self.termination.uninstall()

    @inlineCallbacks
    def run_worker(self, template, drain):
        supervisor = Supervisor(template, self.config, self._reactor,
                                spawner=self._spawner, environ=self._environ)
        worker = supervisor.run()
        self._install_termination(supervisor.terminate)
        try:
            race = defer.DeferredList([worker, drain], fireOnOneCallback=True,
                                      fireOnOneErrback=True,
                                      consumeErrors=True)
            try:
                (rc, _) = yield race
            except defer.FirstError as e:
                log.msg("Control connection lost: %s" % e.subFailure.value,
                        level=WEIRD)
                rc = EXIT_FAILURE
            # make sure it's really dead
            yield supervisor.stop()
        finally:
            self._uninstall_termination()
        return rc

    @inlineCallbacks
    def run_inetd(self, template, drain):
        mux = Multiplexer(template, self.config, self._reactor,
                          spawner=self._spawner, environ=self._environ)
        yield mux.listen(self.config.port_spec)
        self._install_termination(lambda signum: mux.stop())
        try:
            race = defer.DeferredList([mux.when_stopped(), drain],
                                      fireOnOneCallback=True,
                                      fireOnOneErrback=True,
                                      consumeErrors=True)
            try:
                yield race
                rc = EXIT_SUCCESS
            except defer.FirstError as e:
                if e.index == 0:
                    # the listener died
                    log.msg(str(e.subFailure.value), level=BAD)
                else:
                    log.msg("Control connection lost: %s"
                            % e.subFailure.value, level=WEIRD)
                rc = EXIT_FAILURE
            yield mux.stop()
        finally:
            self._uninstall_termination()
        return rc


def parse_options(command_name, argv, stdout, stderr):
    config = Options()
    config.stdout = stdout
    try:
        config.parseOptions(argv)
    except usage.error as e:
        print("%s:  %s" % (command_name, e), file=stderr)
        print(file=stderr)
        print(str(config), file=stderr)
        return None
    return config

def report_failure(f):
    if f.check(OnionWrapError):
        log.msg(str(f.value), level=BAD)
    else:
        log.err(f, "Command failed")
    return EXIT_FAILURE

def run_onionwrap(argv=None, run_by_human=True, environ=None, reactor=None,
                  spawner=None):
    if run_by_human:
        stdout = sys.stdout
        stderr = sys.stderr
    else:
        stdout = StringIO()
        stderr = StringIO()
    if environ is None:
        environ = os.environ
    if argv:
        command_name, argv = argv[0], argv[1:]
    else:
        command_name, argv = "onionwrap", sys.argv[1:]

    def _done(rc):
        if run_by_human:
            sys.exit(rc)
        return (rc, stdout.getvalue(), stderr.getvalue())

    options = parse_options(command_name, argv, stdout, stderr)
    if options is None:
        return _done(EXIT_FAILURE)
    try:
        port_spec = parse_port_spec(options["port"])
    except InvalidSpec as e:
        print("ERROR: Invalid virtual port: %s" % e, file=stderr)
        return _done(EXIT_FAILURE)
    config = config_from_options(options, port_spec, environ)
    observer = log.start_logging(config, stderr)

    termination = None
    if run_by_human:
        termination = SignalTermination(reactor)
    ow = OnionWrap(config, reactor, termination=termination,
                   spawner=spawner, environ=environ)

    if not run_by_human:
        d = defer.maybeDeferred(ow.run)
        d.addErrback(report_failure)
        def _stop_logging(res):
            log.stop_logging(observer)
            return res
        d.addBoth(_stop_logging)
        d.addCallback(_done)
        return d

    # we need to spin up our own reactor. OnionWrap.run() is started only
    # once the reactor is running, so its signal handlers replace the ones
    # the reactor installs.
    if reactor is None:
        from twisted.internet import reactor
    stash_rc = []
    def _start():
        d = defer.maybeDeferred(ow.run)
        d.addErrback(report_failure)
        def _finish(rc):
            stash_rc.append(rc)
            reactor.stop()
        d.addCallback(_finish)
    reactor.callWhenRunning(_start)
    reactor.run()
    log.stop_logging(observer)
    return _done(stash_rc[0] if stash_rc else EXIT_FAILURE)
