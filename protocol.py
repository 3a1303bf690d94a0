"""
protocol.py - Speed test protocol: sample pattern, messages, and errors.

Contains the reference byte pattern, the literal wire tokens, the tagged
message types decoded at the transport boundary, and the exception
classes shared by the receiver and the sender.

Wire tokens (ASCII, no framing other than the payload delimiter):
  DISCOVERY        requester -> multicast group
  OFFER:<port>     responder -> requester (unicast)
  SIZE:<n>         sender -> receiver, stream only
  <pattern...>\\n   payload record, either transport
  FINE             end of transmission, either transport
"""

import re
import string
from dataclasses import dataclass
from typing import List

# ===================================================================
# Sample Pattern
# ===================================================================

# Byte i of every record must equal SAMPLE_PATTERN[i % len(SAMPLE_PATTERN)]
SAMPLE_PATTERN = (string.ascii_uppercase + string.ascii_lowercase
                  + string.digits).encode("ascii")

DELIMITER = b"\n"


def sample_bytes(length):
    """
    Return the first `length` bytes of the cyclic sample pattern.

    @param length: number of bytes wanted (0 gives b"")
    @return: bytes taken from the pattern, wrapping around as needed
    """
    repeats = length // len(SAMPLE_PATTERN) + 1
    return (SAMPLE_PATTERN * repeats)[:length]


def build_payload(size):
    """
    Build a payload record of exactly `size` bytes: size-1 pattern bytes
    followed by the delimiter.

    @param size: total payload length, at least 1
    @return: bytes payload
    """
    return sample_bytes(size - 1) + DELIMITER


# ===================================================================
# Wire Tokens
# ===================================================================

DISCOVERY_TOKEN = b"DISCOVERY"
OFFER_PREFIX    = b"OFFER:"
SIZE_PREFIX     = b"SIZE:"
FINE_TOKEN      = b"FINE"

_OFFER_RE = re.compile(rb"OFFER:(\d+)")
_SIZE_RE  = re.compile(rb"SIZE:(\d+)")


# ===================================================================
# Message Types
# ===================================================================

@dataclass(frozen=True)
class Discovery:
    """Discovery beacon sent to the multicast group."""


@dataclass(frozen=True)
class Offer:
    """Discovery reply carrying the responder's listening port."""
    port: int


@dataclass(frozen=True)
class SizeAnnounce:
    """Payload size announced by the sender before transmitting."""
    size: int


@dataclass(frozen=True)
class Payload:
    """Raw payload bytes, one or more records."""
    data: bytes


@dataclass(frozen=True)
class Fine:
    """End-of-transmission signal."""


def encode(message):
    """
    Encode a message into its literal wire form.

    @param message: one of Discovery, Offer, SizeAnnounce, Payload, Fine
    @return: bytes ready to send
    @raises TypeError: for anything that is not a protocol message
    """
    if isinstance(message, Discovery):
        return DISCOVERY_TOKEN
    if isinstance(message, Offer):
        return OFFER_PREFIX + str(message.port).encode("ascii")
    if isinstance(message, SizeAnnounce):
        return SIZE_PREFIX + str(message.size).encode("ascii")
    if isinstance(message, Payload):
        return message.data
    if isinstance(message, Fine):
        return FINE_TOKEN
    raise TypeError(f"Not a protocol message: {message!r}")


def decode_datagram(data):
    """
    Classify one datagram. Control tokens must match the whole datagram;
    anything else is payload.

    @param data: bytes of a single datagram
    @return: Discovery, Offer, Fine or Payload
    """
    if data == DISCOVERY_TOKEN:
        return Discovery()
    if data == FINE_TOKEN:
        return Fine()
    match = _OFFER_RE.fullmatch(data)
    if match:
        return Offer(int(match.group(1)))
    return Payload(data)


def decode_stream_chunk(data) -> List[object]:
    """
    Split one stream read into messages, in wire order.

    TCP may glue a SIZE announcement to the first payload bytes, or the
    final payload bytes to FINE, so a leading SIZE:<digits> and a
    trailing FINE are peeled off. Whatever is left is a single Payload.
    Records are not reassembled across reads.

    @param data: bytes from one stream read
    @return: list of SizeAnnounce, Payload and Fine messages
    """
    messages = []
    tail = []

    match = _SIZE_RE.match(data)
    if match:
        messages.append(SizeAnnounce(int(match.group(1))))
        data = data[match.end():]

    if data.endswith(FINE_TOKEN):
        tail.append(Fine())
        data = data[:-len(FINE_TOKEN)]

    if data:
        messages.append(Payload(data))
    return messages + tail


# ===================================================================
# Custom Exception Classes
# ===================================================================

class InvalidConfiguration(Exception):
    """Raised when a payload size falls outside the accepted range."""
    pass


class InvalidState(Exception):
    """Raised when a session operation is called in the wrong state."""
    pass


class TransportBindFailure(Exception):
    """Raised when a listener cannot bind its port."""
    pass


class ProtocolViolation(Exception):
    """Stream payload arrived before the payload size was announced."""
    pass


class ConnectionRejected(Exception):
    """A second stream client tried to connect while one is active."""
    pass
