import os, sys
from twisted.internet import defer

class OneShotObserverList:
    """A one-shot event: whenFired() hands out Deferreds that all fire with
    the same result once fire() is called, including ones requested
    afterwards."""

    def __init__(self):
        self._fired = False
        self._result = None
        self._watchers = []

    def whenFired(self):
        if self._fired:
            d = defer.Deferred()
            d.callback(self._result)
            return d
        d = defer.Deferred()
        self._watchers.append(d)
        return d

    def fire(self, result):
        assert not self._fired
        self._fired = True
        self._result = result
        watchers, self._watchers = self._watchers, []
        for w in watchers:
            w.callback(result)
        return result

    def isFired(self):
        return self._fired

def move_into_place(source, dest):
    """Atomically replace a file, or as near to it as the platform allows.
    The dest file may or may not exist."""
    if "win32" in sys.platform.lower():
        try:
            os.remove(dest)
        except OSError:
            pass
    os.rename(source, dest)
