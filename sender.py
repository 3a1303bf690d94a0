"""
sender.py - Speed test sender.

Finds a receiver through multicast discovery, connects over TCP,
announces the payload size, then sends the same payload on UDP and TCP
from two independent fixed-interval loops until told to stop. Both
loops are ended with the FINE control message.

Usage:
    python sender.py [--size 5] [--duration 2] [--target HOST:PORT]
"""

import argparse
import asyncio
import enum
import logging
import random
import socket
import sys

from config import (
    SEND_INTERVAL, MAX_PAYLOAD_SIZE, DEFAULT_PAYLOAD_SIZE, TRANSMIT_DURATION,
    DISCOVERY_GROUP, DISCOVERY_PORT, DISCOVERY_WAIT, CORRUPT_PROBABILITY,
)
from discovery import discover_receivers
from protocol import (
    Fine, SizeAnnounce, build_payload, encode,
    InvalidConfiguration, InvalidState,
)

logger = logging.getLogger(__name__)


class SenderState(enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    SIZE_ANNOUNCED = "size_announced"
    TRANSMITTING = "transmitting"
    STOPPED = "stopped"


class _DatagramSender(asyncio.DatagramProtocol):
    def error_received(self, exc):
        logger.warning("UDP: error %s", exc)


class SenderSession:
    """
    One transmission run towards a single receiver.

    State machine: IDLE -> CONNECTED -> SIZE_ANNOUNCED -> TRANSMITTING
    -> STOPPED. Calling an operation in any other state raises
    InvalidState and leaves the state untouched.
    """

    def __init__(self, interval=SEND_INTERVAL, max_size=MAX_PAYLOAD_SIZE,
                 corrupt_probability=CORRUPT_PROBABILITY):
        self.interval = interval
        self.max_size = max_size
        self.corrupt_probability = corrupt_probability

        self.state = SenderState.IDLE
        self.payload = None
        self.sent = {"UDP": 0, "TCP": 0}

        self._reader = None
        self._writer = None
        self._udp_transport = None
        self._tasks = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _require(self, state, action):
        if self.state is not state:
            raise InvalidState(
                f"Cannot {action} while {self.state.value} "
                f"(expected {state.value})")

    # ---------------------------------------------------------------
    # Setup
    # ---------------------------------------------------------------

    async def connect(self, address, port):
        """
        Open the TCP connection and a UDP endpoint aimed at the same
        address and port. Errors propagate; nothing is retried.
        """
        self._require(SenderState.IDLE, "connect")
        loop = asyncio.get_running_loop()

        reader, writer = await asyncio.open_connection(address, port)
        try:
            udp_transport, _ = await loop.create_datagram_endpoint(
                _DatagramSender, remote_addr=(address, port))
        except OSError:
            writer.close()
            raise

        self._reader, self._writer = reader, writer
        self._udp_transport = udp_transport
        self.state = SenderState.CONNECTED
        logger.info("TCP: connected to %s:%d", address, port)

    async def connect_discovered(self, servers, index=0):
        """Connect to entry `index` of a discovery result list."""
        address, port = servers[index]
        await self.connect(address, port)

    def set_nagle(self, enabled):
        """Turn Nagle's algorithm on or off for the TCP connection."""
        if self._writer is None:
            raise InvalidState("Cannot set Nagle option without a connection")
        sock = self._writer.get_extra_info("socket")
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY,
                        0 if enabled else 1)
        logger.info("TCP: Nagle %s", "enabled" if enabled else "disabled")

    async def announce_size(self, size):
        """
        Send SIZE:<size> and prepare the payload: size-1 pattern bytes
        followed by the delimiter.

        @raises InvalidConfiguration: if size is outside [1, max_size]
        @raises InvalidState: if not CONNECTED
        """
        if not 1 <= size <= self.max_size:
            raise InvalidConfiguration(
                f"Payload size {size} outside [1, {self.max_size}]")
        self._require(SenderState.CONNECTED, "announce size")

        self._writer.write(encode(SizeAnnounce(size)))
        await self._writer.drain()
        self.payload = build_payload(size)
        self.state = SenderState.SIZE_ANNOUNCED
        logger.info("-> Sent SIZE:%d", size)

    # ---------------------------------------------------------------
    # Transmission
    # ---------------------------------------------------------------

    def start(self):
        """Start one periodic send loop per transport."""
        self._require(SenderState.SIZE_ANNOUNCED, "start transmission")
        self._tasks = [
            asyncio.create_task(self._transmit("UDP", self._send_datagram)),
            asyncio.create_task(self._transmit("TCP", self._send_stream)),
        ]
        self.state = SenderState.TRANSMITTING
        logger.info("Transmission started (%d-byte payload every %.3f s)",
                    len(self.payload), self.interval)

    async def stop(self):
        """Cancel both loops, then send FINE on each transport."""
        self._require(SenderState.TRANSMITTING, "stop transmission")
        await self._cancel_tasks()

        fine = encode(Fine())
        self._udp_transport.sendto(fine)
        self._writer.write(fine)
        self.state = SenderState.STOPPED
        await self._writer.drain()
        logger.info("Transmission stopped. UDP sent: %d, TCP sent: %d",
                    self.sent["UDP"], self.sent["TCP"])

    async def _transmit(self, label, send):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            send(self._next_payload())
            self.sent[label] += 1
            logger.debug("%s: sent", label)

            next_tick += self.interval
            now = loop.time()
            if next_tick < now:
                # Late ticks are dropped, not replayed
                next_tick = now
            await asyncio.sleep(next_tick - now)

    def _send_datagram(self, data):
        self._udp_transport.sendto(data)

    def _send_stream(self, data):
        self._writer.write(data)

    def _next_payload(self):
        if self.corrupt_probability and len(self.payload) > 2 \
                and random.random() < self.corrupt_probability:
            # The receiver ignores the last byte of each record
            corrupted = bytearray(self.payload)
            corrupted[random.randrange(len(corrupted) - 2)] ^= 0x01
            logger.debug("[SIM] Corrupted outgoing payload")
            return bytes(corrupted)
        return self.payload

    async def _cancel_tasks(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def close(self):
        """Release both sockets. Safe in any state."""
        await self._cancel_tasks()
        if self._udp_transport is not None:
            self._udp_transport.close()
            self._udp_transport = None
        if self._writer is not None:
            writer, self._writer = self._writer, None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.warning("TCP: error while closing: %s", e)
            logger.info("TCP: connection closed")


# ===================================================================
# Main
# ===================================================================

def parse_target(value):
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="LAN speed test sender.")
    p.add_argument("--size", type=int, default=DEFAULT_PAYLOAD_SIZE,
                   help="Payload size in bytes")
    p.add_argument("--duration", type=float, default=TRANSMIT_DURATION,
                   help="Seconds to transmit")
    p.add_argument("--interval", type=float, default=SEND_INTERVAL,
                   help="Seconds between payloads on each transport")
    p.add_argument("--wait", type=float, default=DISCOVERY_WAIT,
                   help="Seconds to collect discovery replies")
    p.add_argument("--target", type=parse_target,
                   help="Skip discovery and use this receiver")
    p.add_argument("--group", default=DISCOVERY_GROUP,
                   help="Discovery multicast group")
    p.add_argument("--discovery-port", type=int, default=DISCOVERY_PORT)
    p.add_argument("--nagle", action="store_true",
                   help="Enable Nagle's algorithm on the TCP connection")
    p.add_argument("--corrupt", type=float, default=CORRUPT_PROBABILITY,
                   help="Probability of flipping one byte per payload")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Log every sent packet")
    return p.parse_args(argv)


async def run(args):
    if args.target is not None:
        servers = [args.target]
    else:
        servers = await discover_receivers(
            args.wait, args.group, args.discovery_port)
        if not servers:
            logger.error("[ERR] No receiver answered the discovery beacon")
            return 1

    async with SenderSession(interval=args.interval,
                             corrupt_probability=args.corrupt) as sender:
        await sender.connect_discovered(servers, 0)
        if args.nagle:
            sender.set_nagle(True)
        await sender.announce_size(args.size)
        sender.start()
        await asyncio.sleep(args.duration)
        await sender.stop()
    return 0


def main(argv=None):
    """Discover a receiver, transmit for a fixed duration, then stop."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[SENDER %(asctime)s] %(message)s", datefmt="%H:%M:%S")

    try:
        code = asyncio.run(run(args))
    except (InvalidConfiguration, InvalidState, OSError) as e:
        logger.error("[ERR] %s", e)
        code = 1
    except KeyboardInterrupt:
        logger.info("Sender shutting down...")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
