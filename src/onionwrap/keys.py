# -*- test-case-name: onionwrap.test.test_keys -*-

import os, re, tempfile
import base64, binascii
from collections import namedtuple
from onionwrap.interfaces import KeyIOError, KeyNotFound, MalformedKey
from onionwrap.util import move_into_place

RSA1024 = "RSA1024"
ED25519_V3 = "ED25519-V3"

# ADD_ONION key type -> armored block label, and back again
PEM_LABELS = {
    RSA1024: "RSA PRIVATE KEY",
    ED25519_V3: "ED25519-V3 PRIVATE KEY",
    }
KEY_TYPES = dict([(label, key_type)
                  for (key_type, label) in PEM_LABELS.items()])

PEM_BLOCK_RE = re.compile(r"-----BEGIN ([A-Z0-9 \-]+)-----\r?\n"
                          r"(.*?)"
                          r"-----END \1-----", re.S)

class ServiceKey(namedtuple("ServiceKey", ["key_type", "key_bytes"])):
    __slots__ = ()

    def __repr__(self):
        # never put key material in logs
        return "<ServiceKey %s (%d bytes)>" % (self.key_type,
                                               len(self.key_bytes))

def encode_pem(label, data):
    b64 = base64.b64encode(data).decode("ascii")
    lines = ["-----BEGIN %s-----" % label]
    for i in range(0, len(b64), 64):
        lines.append(b64[i:i+64])
    lines.append("-----END %s-----" % label)
    return "\n".join(lines) + "\n"

def iter_pem_blocks(text):
    """Yield (label, body) for each armored block. Headers (RFC1421-style
    'Key: value' lines) are not supported, and the body is returned as the
    still-encoded base64 text."""
    for mo in PEM_BLOCK_RE.finditer(text):
        yield mo.group(1), mo.group(2)

def _b64decode(s):
    try:
        return base64.b64decode("".join(s.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedKey("invalid base64 key data: %s" % e)

def to_wire(key):
    if key.key_type not in PEM_LABELS:
        raise MalformedKey("unknown key type: '%s'" % key.key_type)
    return "%s:%s" % (key.key_type,
                      base64.b64encode(key.key_bytes).decode("ascii"))

def from_wire(s):
    key_type, sep, blob = s.partition(":")
    if not sep:
        raise MalformedKey("failed to parse PrivateKey response")
    if key_type not in PEM_LABELS:
        raise MalformedKey("unknown key type: '%s'" % key_type)
    return ServiceKey(key_type, _b64decode(blob))

def load_key(path):
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        raise KeyNotFound("onion key does not exist: %s" % path)
    except EnvironmentError as e:
        raise KeyIOError("failed to read onion key %s: %s" % (path, e))
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedKey("onion key %s is not UTF-8 text" % path)
    for label, body in iter_pem_blocks(text):
        if label in KEY_TYPES:
            return ServiceKey(KEY_TYPES[label], _b64decode(body))
    raise MalformedKey("no valid PEM data found in %s" % path)

def save_key(path, key):
    """Write the key as a single armored block, readable only by the
    owner. The file is replaced atomically."""
    if key.key_type not in PEM_LABELS:
        raise MalformedKey("unknown key type: '%s'" % key.key_type)
    data = encode_pem(PEM_LABELS[key.key_type], key.key_bytes)
    tmpfile = None
    try:
        # mkstemp creates a fresh 0600 file next to the target
        fd, tmpfile = tempfile.mkstemp(dir=os.path.dirname(path) or ".",
                                       prefix=os.path.basename(path) + ".",
                                       suffix=".tmp")
        with os.fdopen(fd, "w") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        move_into_place(tmpfile, path)
    except EnvironmentError as e:
        if tmpfile is not None:
            try:
                os.unlink(tmpfile)
            except EnvironmentError:
                pass
        raise KeyIOError("failed to save onion key %s: %s" % (path, e))
