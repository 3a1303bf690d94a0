"""
config.py - Configuration parameters for the LAN speed test.

All tuneable constants for the discovery handshake, the receiver and the
sender are defined here. Sessions take each of these as a keyword
argument, so the values below are only defaults.
Set CORRUPT_PROBABILITY above zero to exercise the receiver's corruption
accounting without external network tools.
"""

# ─── Network Settings ────────────────────────────────────────────────
RECEIVER_HOST = "0.0.0.0"
RECEIVER_PORT = 5000        # Same number for the UDP and TCP listeners

# ─── Discovery ───────────────────────────────────────────────────────
DISCOVERY_GROUP = "233.255.255.253"
DISCOVERY_PORT  = 4000
DISCOVERY_WAIT  = 1.0       # Seconds the sender collects OFFER replies

# ─── Transfer Settings ───────────────────────────────────────────────
SEND_INTERVAL       = 0.001     # Seconds between payloads, per transport
MAX_PAYLOAD_SIZE    = 1000      # Largest size accepted by SIZE:<n>
DEFAULT_PAYLOAD_SIZE = 5
TRANSMIT_DURATION   = 2.0       # Seconds the sender entry point transmits
RECV_BUF            = 65536     # Max bytes read per datagram / stream read

# ─── Simulated Corruption (for testing) ──────────────────────────────
CORRUPT_PROBABILITY = 0.0   # Chance a sent payload has one byte flipped
