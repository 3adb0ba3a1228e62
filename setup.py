#!/usr/bin/env python

from setuptools import setup, Command

commands = {}

class Trial(Command):
    description = "run trial"
    user_options = []

    def initialize_options(self):
        pass
    def finalize_options(self):
        pass
    def run(self):
        import sys
        from twisted.scripts import trial
        sys.argv = ["trial", "--rterrors", "onionwrap.test"]
        trial.run()  # does not return
commands["trial"] = Trial
commands["test"] = Trial

trove_classifiers = [
    "Development Status :: 4 - Beta",
    "Operating System :: POSIX",
    "License :: OSI Approved :: MIT License",
    "Programming Language :: Python",
    "Programming Language :: Python :: 3.8",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: Implementation :: CPython",
    "Topic :: Internet",
    "Topic :: Security",
    "Topic :: System :: Networking",
    ]

setup_args = {
    "name": "onionwrap",
    "version": "0.1.0",
    "description": "Run a command behind an ephemeral Tor Onion Service.",
    "license": "MIT",
    "long_description": """\
onionwrap asks a running tor (through its control port) to create an
ephemeral Onion Service with ADD_ONION, then runs a command that serves it.
The service lives exactly as long as the command: when the command exits,
the control connection is closed and tor removes the service. In --inetd
mode, onionwrap listens on the target address itself and runs one copy of
the command per connection, with the connection on its stdin/stdout.
""",
    "classifiers": trove_classifiers,
    "platforms": ["posix"],

    "package_dir": {"": "src"},
    "packages": ["onionwrap", "onionwrap.test"],
    "entry_points": {"console_scripts": [
        "onionwrap = onionwrap.cli:run_onionwrap",
        ] },
    "cmdclass": commands,
    "install_requires": ["twisted >= 16.0.0", "zope.interface",
                         "txtorcon >= 19.0.0"],
    "extras_require": {
        "dev": ["mock", "pytest"],
        },
    "python_requires": ">=3.8",
}

setup_args.update(
    include_package_data=True,
)

if __name__ == "__main__":
    setup(**setup_args)
