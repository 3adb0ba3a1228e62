from io import StringIO
from twisted.trial import unittest
from twisted.python import log as twisted_log

from onionwrap import log
from onionwrap.config import make_config

class Levels(unittest.TestCase):
    def test_threshold(self):
        self.assertEqual(log.threshold_for(make_config()), log.OPERATIONAL)
        self.assertEqual(log.threshold_for(make_config(quiet=True)), log.WEIRD)
        self.assertEqual(log.threshold_for(make_config(debug=True)), log.NOISY)
        # --debug wins
        self.assertEqual(log.threshold_for(make_config(debug=True,
                                                       quiet=True)),
                         log.NOISY)

    def test_prefix(self):
        self.assertEqual(log.level_prefix(log.NOISY), "DEBUG")
        self.assertEqual(log.level_prefix(log.OPERATIONAL), "INFO")
        self.assertEqual(log.level_prefix(log.UNUSUAL), "WARNING")
        self.assertEqual(log.level_prefix(log.WEIRD), "WARNING")
        self.assertEqual(log.level_prefix(log.BAD), "ERROR")

    def test_event_level(self):
        self.assertEqual(log.event_level({"level": log.UNUSUAL}), log.UNUSUAL)
        self.assertEqual(log.event_level({"isError": 1}), log.BAD)
        self.assertEqual(log.event_level({"message": ("hi",)}), log.NOISY)

class Observer(unittest.TestCase):
    def observe(self, threshold):
        out = StringIO()
        o = log.StderrObserver(out, threshold)
        twisted_log.addObserver(o)
        self.addCleanup(twisted_log.removeObserver, o)
        return out

    def test_filter(self):
        out = self.observe(log.OPERATIONAL)
        log.msg("noisy detail", level=log.NOISY)
        log.msg("created it")
        log.msg("odd thing", level=log.UNUSUAL)
        log.msg("broken", level=log.BAD)
        self.assertEqual(out.getvalue(),
                         "INFO: created it\n"
                         "WARNING: odd thing\n"
                         "ERROR: broken\n")

    def test_quiet(self):
        out = self.observe(log.WEIRD)
        log.msg("created it")
        log.msg("odd thing", level=log.UNUSUAL)
        log.msg("connection lost", level=log.WEIRD)
        log.msg("broken", level=log.BAD)
        self.assertEqual(out.getvalue(),
                         "WARNING: connection lost\n"
                         "ERROR: broken\n")

    def test_debug_includes_foreign_events(self):
        out = self.observe(log.NOISY)
        twisted_log.msg("something twisted said")
        self.assertEqual(out.getvalue(), "DEBUG: something twisted said\n")

    def test_err(self):
        out = self.observe(log.OPERATIONAL)
        log.err(ValueError("kaboom"), "while testing")
        self.flushLoggedErrors(ValueError)
        text = out.getvalue()
        self.assertTrue(text.startswith("ERROR: while testing"), text)
        self.assertIn("kaboom", text)

    def test_start_stop(self):
        out = StringIO()
        o = log.start_logging(make_config(quiet=True), out)
        try:
            log.msg("created it")
            log.msg("broken", level=log.BAD)
        finally:
            log.stop_logging(o)
        log.msg("after stop", level=log.BAD)
        self.assertEqual(out.getvalue(), "ERROR: broken\n")
