"""onionwrap: run a command behind a Tor Onion Service"""

__version__ = "0.1.0"
