"""Encoding and decoding of the ``[type, payload]`` chat envelope."""
import json
import re
from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime

from .errors import MalformedJSON, NotArray

CHAT_MESSAGE = "chat:message"

Envelope = namedtuple("Envelope", ["type", "payload"])


@dataclass
class ChatMessage:
    sender: str
    message: str

    def to_payload(self):
        return {"from": self.sender, "message": self.message}


def _encode(event_type, payload):
    return json.dumps([event_type, payload]).encode("utf-8")


def encode_subscribe(channel):
    return _encode(f"subscribe:{channel}", {})


def encode_unsubscribe(channel):
    return _encode(f"unsubscribe:{channel}", {})


def encode_chat(sender, text):
    return _encode(CHAT_MESSAGE, ChatMessage(sender, text).to_payload())


def decode(raw):
    """
    Parse one frame into an ``Envelope``.

    Never raises: on failure the matching ``DecodeError`` instance is
    returned instead, with the raw text attached.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return MalformedJSON("frame is not valid UTF-8", raw=repr(raw))
    else:
        text = raw

    try:
        value = json.loads(text)
    except (TypeError, ValueError, RecursionError) as e:
        return MalformedJSON(f"invalid JSON: {e}", raw=text)

    if not isinstance(value, list) or len(value) != 2 or not isinstance(value[0], str):
        return NotArray("expected a [type, payload] array", raw=text)

    return Envelope(value[0], value[1])


# The server trims trailing zeros and goes down to nanoseconds; datetime
# wants exactly six digits.
_FRACTION = re.compile(r"\.(\d+)")


def parse_sent(payload):
    """Return the server's ``sent`` stamp as an aware datetime, or None."""
    if not isinstance(payload, dict):
        return None
    sent = payload.get("sent")
    if not isinstance(sent, str):
        return None
    sent = _FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], sent, count=1)
    if sent.endswith("Z"):
        sent = sent[:-1] + "+00:00"
    try:
        stamp = datetime.fromisoformat(sent)
    except ValueError:
        return None
    if stamp.tzinfo is None:
        return None
    return stamp
