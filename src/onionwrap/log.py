# -*- test-case-name: onionwrap.test.test_log -*-

import sys
from twisted.python import log as twisted_log

# numeric severities, matching the stdlib logging values where they overlap
NOISY = 10 # == DEBUG
OPERATIONAL = 20 # == INFO
UNUSUAL = 23
WEIRD = 30 # == WARNING
BAD = 40 # == ERROR

def msg(message, **kwargs):
    """Emit a log event through twisted.python.log . 'level' defaults to
    OPERATIONAL, 'facility' should be a slash-joined name like
    'onionwrap/control'."""
    kwargs.setdefault("level", OPERATIONAL)
    kwargs["from-onionwrap"] = True
    twisted_log.msg(message, **kwargs)

def err(_stuff=None, _why=None, **kwargs):
    kwargs.setdefault("level", BAD)
    kwargs["from-onionwrap"] = True
    twisted_log.err(_stuff, _why, **kwargs)

def threshold_for(config):
    # --debug explicitly overrides --quiet
    if config.debug:
        return NOISY
    if config.quiet:
        return WEIRD
    return OPERATIONAL

def event_level(event):
    if "level" in event and isinstance(event["level"], int):
        return event["level"]
    if event.get("isError"):
        return BAD
    # everything else Twisted says about itself (factory starting, etc)
    return NOISY

def level_prefix(level):
    if level >= BAD:
        return "ERROR"
    if level >= UNUSUAL:
        return "WARNING"
    if level >= OPERATIONAL:
        return "INFO"
    return "DEBUG"

class StderrObserver:
    """I render log events as single 'LEVEL: text' lines on a stream,
    dropping anything below my threshold."""

    def __init__(self, stream, threshold=OPERATIONAL):
        self.stream = stream
        self.threshold = threshold

    def __call__(self, event):
        level = event_level(event)
        if level < self.threshold:
            return
        text = twisted_log.textFromEventDict(event)
        if text is None:
            return
        self.stream.write("%s: %s\n" % (level_prefix(level), text))
        self.stream.flush()

def start_logging(config, stream=None):
    if stream is None:
        stream = sys.stderr
    observer = StderrObserver(stream, threshold_for(config))
    twisted_log.addObserver(observer)
    return observer

def stop_logging(observer):
    twisted_log.removeObserver(observer)
