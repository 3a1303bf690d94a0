"""
discovery.py - Multicast rendezvous between sender and receiver.

A requester sends the DISCOVERY beacon to the multicast group; every
responder listening on the group answers with OFFER:<port>, unicast to
the beacon's origin. The requester keeps every reply it sees (no
timeout, no deduplication) and the caller decides when to stop waiting.
"""

import asyncio
import logging
import socket
from typing import NamedTuple

from config import DISCOVERY_GROUP, DISCOVERY_PORT, DISCOVERY_WAIT
from protocol import Discovery, Offer, decode_datagram, encode

logger = logging.getLogger(__name__)


class DiscoveryRecord(NamedTuple):
    address: str
    port: int


# ===================================================================
# Responder
# ===================================================================

def open_multicast_socket(group, port):
    """
    Create a non-blocking UDP socket bound to `port` and joined to the
    multicast `group` on the default interface.

    SO_REUSEADDR lets several responders share the well-known port on
    one host.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", port))
        mreq = socket.inet_aton(group) + socket.inet_aton("0.0.0.0")
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class DiscoveryResponder(asyncio.DatagramProtocol):
    """Answers each exact DISCOVERY beacon with OFFER:<listen_port>."""

    def __init__(self, listen_port):
        self.listen_port = listen_port
        self.transport = None
        self.replies_sent = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if not isinstance(decode_datagram(data), Discovery):
            return
        self.transport.sendto(encode(Offer(self.listen_port)), addr)
        self.replies_sent += 1
        logger.info("DISCOVERY received from %s:%s, offered port %d",
                    addr[0], addr[1], self.listen_port)

    def error_received(self, exc):
        logger.warning("Discovery: error %s", exc)


async def start_responder(listen_port, group=DISCOVERY_GROUP,
                          port=DISCOVERY_PORT):
    """
    Join the discovery group and answer beacons until the returned
    transport is closed.

    @return: tuple (transport, DiscoveryResponder)
    @raises OSError: if the socket cannot bind or join the group
    """
    loop = asyncio.get_running_loop()
    sock = open_multicast_socket(group, port)
    try:
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: DiscoveryResponder(listen_port), sock=sock)
    except OSError:
        sock.close()
        raise
    logger.info("Discovery: listening on %s:%d", group, port)
    return transport, protocol


# ===================================================================
# Requester
# ===================================================================

class DiscoveryRequester(asyncio.DatagramProtocol):
    """Sends beacons and collects every OFFER reply it receives."""

    def __init__(self, group=DISCOVERY_GROUP, port=DISCOVERY_PORT):
        self.group = group
        self.port = port
        self.transport = None
        self.servers = []

    async def open(self):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: self, local_addr=("0.0.0.0", 0))
        return self

    def connection_made(self, transport):
        self.transport = transport

    def discover(self):
        self.transport.sendto(encode(Discovery()), (self.group, self.port))
        logger.info("-> DISCOVERY sent to %s:%d", self.group, self.port)

    def datagram_received(self, data, addr):
        message = decode_datagram(data)
        if not isinstance(message, Offer):
            return
        self.servers.append(DiscoveryRecord(addr[0], message.port))
        logger.info("<- Receiver discovered at %s:%d, %d available",
                    addr[0], message.port, len(self.servers))

    def error_received(self, exc):
        logger.warning("Discovery: error %s", exc)

    def close(self):
        if self.transport is not None:
            self.transport.close()
            self.transport = None


async def discover_receivers(wait=DISCOVERY_WAIT, group=DISCOVERY_GROUP,
                             port=DISCOVERY_PORT):
    """Send one beacon, collect offers for `wait` seconds, return them."""
    requester = await DiscoveryRequester(group, port).open()
    try:
        requester.discover()
        await asyncio.sleep(wait)
    finally:
        requester.close()
    return list(requester.servers)
