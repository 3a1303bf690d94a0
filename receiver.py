"""
receiver.py - Speed test receiver.

Listens on a UDP port and a TCP port with the same number, answers
multicast discovery beacons, and measures what arrives on each transport
with its own ThroughputCounter. Only one TCP client is served at a time.

Usage:
    python receiver.py [--port 5000] [--no-discovery]
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import NamedTuple

from config import (
    RECEIVER_HOST, RECEIVER_PORT, DISCOVERY_GROUP, DISCOVERY_PORT, RECV_BUF,
    MAX_PAYLOAD_SIZE,
)
from counter import ThroughputCounter
from discovery import start_responder
from protocol import (
    Fine, SizeAnnounce, decode_datagram, decode_stream_chunk,
    ConnectionRejected, ProtocolViolation, TransportBindFailure,
)

logger = logging.getLogger(__name__)


class Statistic(NamedTuple):
    """One row of the side-by-side report."""
    name: str
    datagram: object
    stream: object


class _DatagramListener(asyncio.DatagramProtocol):
    """Forwards every datagram on the data port to the session."""

    def __init__(self, session):
        self.session = session

    def datagram_received(self, data, addr):
        self.session.handle_datagram(data, addr)

    def error_received(self, exc):
        logger.warning("UDP: error %s", exc)


class ReceiverSession:
    """
    One measurement run on the receiving host.

    Owns a counter per transport, the UDP listener, the TCP listener and
    its single active connection, and optionally the discovery responder.
    """

    def __init__(self, port=RECEIVER_PORT, host=RECEIVER_HOST,
                 discovery=True, discovery_group=DISCOVERY_GROUP,
                 discovery_port=DISCOVERY_PORT, recv_buf=RECV_BUF,
                 max_size=MAX_PAYLOAD_SIZE, clock=time.monotonic):
        self.host = host
        self.port = port
        self.discovery = discovery
        self.discovery_group = discovery_group
        self.discovery_port = discovery_port
        self.recv_buf = recv_buf
        self.max_size = max_size

        self.udp_counter = ThroughputCounter(clock)
        self.tcp_counter = ThroughputCounter(clock)
        self.is_running = False

        self._buffer_size = None
        self._server = None
        self._udp_transport = None
        self._discovery_transport = None
        self._stream_writer = None

    @property
    def buffer_size(self):
        """Payload size announced by the sender, or None."""
        return self._buffer_size

    @property
    def stream_connected(self):
        return self._stream_writer is not None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    async def start(self):
        """
        Bind the TCP listener, then UDP on the same port number, then the
        discovery responder. With port 0 the TCP listener picks the port.

        @raises TransportBindFailure: if any of the three cannot bind
        """
        loop = asyncio.get_running_loop()
        try:
            self._server = await asyncio.start_server(
                self._handle_stream, self.host, self.port)
            self.port = self._server.sockets[0].getsockname()[1]
            logger.info("TCP: listening on port %d", self.port)

            self._udp_transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramListener(self),
                local_addr=(self.host, self.port))
            logger.info("UDP: listening on port %d", self.port)

            if self.discovery:
                self._discovery_transport, _ = await start_responder(
                    self.port, self.discovery_group, self.discovery_port)
        except OSError as e:
            await self._close_listeners()
            raise TransportBindFailure(
                f"Cannot bind port {self.port}: {e}") from e

    async def stop(self):
        """Reset both counters and release every socket. Never raises."""
        self.udp_counter.reset()
        self.tcp_counter.reset()

        if self._stream_writer is not None:
            self._stream_writer.close()
            self._stream_writer = None

        await self._close_listeners()
        self._buffer_size = None
        self.is_running = False
        logger.info("Receiver stopped")

    async def _close_listeners(self):
        for transport in (self._udp_transport, self._discovery_transport):
            if transport is not None:
                transport.close()
        self._udp_transport = None
        self._discovery_transport = None

        if self._server is not None:
            server, self._server = self._server, None
            server.close()
            try:
                await server.wait_closed()
            except OSError as e:
                logger.warning("TCP: error while closing listener: %s", e)

    # ---------------------------------------------------------------
    # UDP
    # ---------------------------------------------------------------

    def handle_datagram(self, data, addr=None):
        if isinstance(decode_datagram(data), Fine):
            self._finish("UDP", self.udp_counter)
            return
        self.udp_counter.count(data)
        self.is_running = True
        logger.debug("UDP: packet of size %d received", len(data))

    # ---------------------------------------------------------------
    # TCP
    # ---------------------------------------------------------------

    def _accept(self, writer):
        if self._stream_writer is not None:
            peer = writer.get_extra_info("peername")
            raise ConnectionRejected(
                f"Client {peer} rejected, a client is already connected")
        self._stream_writer = writer

    async def _handle_stream(self, reader, writer):
        try:
            self._accept(writer)
        except ConnectionRejected as e:
            logger.warning("[!] TCP: %s", e)
            writer.close()
            return

        peer = writer.get_extra_info("peername")
        logger.info("TCP: client connected from %s", peer)
        try:
            while True:
                data = await reader.read(self.recv_buf)
                if not data:
                    logger.info("TCP: client disconnected")
                    break
                for message in decode_stream_chunk(data):
                    try:
                        self.handle_stream_message(message)
                    except ProtocolViolation as e:
                        logger.warning("[!] TCP: %s", e)
        except ConnectionError as e:
            logger.warning("TCP: error %s", e)
        finally:
            writer.close()
            if self._stream_writer is writer:
                self._stream_writer = None
            logger.info("TCP: socket closed")

    def handle_stream_message(self, message):
        """
        Apply one decoded stream message to the session.

        @raises ProtocolViolation: for an out-of-range SIZE:<n>, or for
            payload before a valid SIZE:<n>
        """
        if isinstance(message, Fine):
            self._finish("TCP", self.tcp_counter)
        elif isinstance(message, SizeAnnounce):
            if not 1 <= message.size <= self.max_size:
                raise ProtocolViolation(
                    f"SIZE:{message.size} outside [1, {self.max_size}], ignored")
            self._buffer_size = message.size
            logger.info("Buffer size set to %d", message.size)
        elif self._buffer_size is None:
            raise ProtocolViolation(
                f"{len(message.data)} bytes received before SIZE, discarded")
        else:
            self.tcp_counter.count(message.data)
            self.is_running = True
            logger.debug("TCP: packet of size %d received", len(message.data))

    # ---------------------------------------------------------------
    # Reporting
    # ---------------------------------------------------------------

    def _finish(self, label, counter):
        counter.stop()
        self.is_running = False
        logger.info("%s: Transmission ended. Transmission time: %ss",
                    label, counter.elapsed_seconds())
        logger.info("%s: bytes received: %d", label, counter.bytes_received())
        logger.info("%s: transmission speed %s kB/s",
                    label, counter.throughput_kbps())
        logger.info("%s: transmission error %s%%", label, counter.error_rate())

    def get_statistics(self):
        udp, tcp = self.udp_counter, self.tcp_counter
        return [
            Statistic("Time", udp.elapsed_seconds(), tcp.elapsed_seconds()),
            Statistic("Bytes received", udp.bytes_received(),
                      tcp.bytes_received()),
            Statistic("Speed", udp.throughput_kbps(), tcp.throughput_kbps()),
            Statistic("Error", udp.error_rate(), tcp.error_rate()),
        ]


# ===================================================================
# Main
# ===================================================================

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="LAN speed test receiver.")
    p.add_argument("--host", default=RECEIVER_HOST, help="Address to bind")
    p.add_argument("--port", type=int, default=RECEIVER_PORT,
                   help="UDP and TCP listening port")
    p.add_argument("--group", default=DISCOVERY_GROUP,
                   help="Discovery multicast group")
    p.add_argument("--discovery-port", type=int, default=DISCOVERY_PORT)
    p.add_argument("--no-discovery", action="store_true",
                   help="Do not answer discovery beacons")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Log every received packet")
    return p.parse_args(argv)


async def serve(args):
    session = ReceiverSession(
        port=args.port, host=args.host, discovery=not args.no_discovery,
        discovery_group=args.group, discovery_port=args.discovery_port)
    async with session:
        logger.info("Waiting for transmissions...")
        await asyncio.Event().wait()


def main(argv=None):
    """Run a receiver until interrupted."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[RECEIVER %(asctime)s] %(message)s", datefmt="%H:%M:%S")

    try:
        asyncio.run(serve(args))
    except TransportBindFailure as e:
        logger.error("[ERR] %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Receiver shutting down...")


if __name__ == "__main__":
    main()
