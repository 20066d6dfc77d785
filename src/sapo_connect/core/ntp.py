"""NTP based clock-offset check.

OAuth 1.0a signatures embed ``oauth_timestamp``; the identity server rejects
requests whose timestamp is more than five minutes away from its own clock.
:class:`ClockSyncChecker` asks a public NTP server for the time once and tells
the caller whether the local clock is close enough.

The check is *advisory*: when the NTP exchange fails for whatever reason the
checker reports ``None`` (unavailable) and callers let the login proceed.

Wire format
-----------
Only the fields needed for the four-timestamp exchange are handled.  A
request is a 48-byte NTPv3 client-mode packet whose transmit timestamp
(offset 40) carries the local send time; the server copies it into the
originate field (offset 24) of its reply and fills in receive (offset 32) and
transmit (offset 40).  Timestamps are 64-bit fixed point seconds since
1900-01-01.
"""

from __future__ import annotations

import contextlib
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Callable, Final, Protocol

from sapo_connect.core.clock import Clock, default_clock
from sapo_connect.core.models import MAX_CLOCK_OFFSET_MILLIS, ClockOffset

_LOG = logging.getLogger("sapo-connect.core.ntp")

NTP_SERVER: Final[str] = "europe.pool.ntp.org"
NTP_PORT: Final[int] = 123
NTP_TIMEOUT_SECONDS: Final[float] = 6.0

# seconds between 1900-01-01 (NTP era 0) and 1970-01-01
NTP_EPOCH_OFFSET: Final[float] = 2_208_988_800.0

_PACKET_LEN: Final[int] = 48
_ORIGINATE_AT: Final[int] = 24
_RECEIVE_AT: Final[int] = 32
_TRANSMIT_AT: Final[int] = 40
_LI_VN_MODE_CLIENT: Final[int] = (0 << 6) | (3 << 3) | 3
_MODE_SERVER: Final[int] = 4


class MalformedPacketError(ValueError):
    """The datagram is not a usable NTP reply."""


# --------------------------------------------------------------------------- #
# Packet codec                                                                #
# --------------------------------------------------------------------------- #
def encode_timestamp(unix_seconds: float) -> bytes:
    """Encode UNIX seconds as an 8-byte NTP timestamp."""
    ntp_seconds = unix_seconds + NTP_EPOCH_OFFSET
    whole = int(ntp_seconds)
    fraction = min(int((ntp_seconds - whole) * 2**32), 0xFFFFFFFF)
    return struct.pack("!II", whole & 0xFFFFFFFF, fraction)


def decode_timestamp(data: bytes) -> float:
    """Decode an 8-byte NTP timestamp into NTP-era seconds."""
    whole, fraction = struct.unpack("!II", data)
    return whole + fraction / 2**32


@dataclass(frozen=True, slots=True)
class NtpReply:
    """The parts of a server reply used by the offset computation."""

    stratum: int
    originate_raw: bytes
    originate: float
    receive: float
    transmit: float

    @classmethod
    def parse(cls, data: bytes) -> "NtpReply":
        if len(data) < _PACKET_LEN:
            raise MalformedPacketError(f"short NTP reply ({len(data)} bytes)")
        mode = data[0] & 0x07
        if mode != _MODE_SERVER:
            raise MalformedPacketError(f"unexpected NTP mode {mode}")
        transmit = decode_timestamp(data[_TRANSMIT_AT : _TRANSMIT_AT + 8])
        if transmit == 0:
            raise MalformedPacketError("NTP reply without transmit timestamp")
        return cls(
            stratum=data[1],
            originate_raw=bytes(data[_ORIGINATE_AT : _ORIGINATE_AT + 8]),
            originate=decode_timestamp(data[_ORIGINATE_AT : _ORIGINATE_AT + 8]),
            receive=decode_timestamp(data[_RECEIVE_AT : _RECEIVE_AT + 8]),
            transmit=transmit,
        )


def build_request(transmit_unix: float) -> bytes:
    """Return a client-mode request stamped with *transmit_unix*."""
    packet = bytearray(_PACKET_LEN)
    packet[0] = _LI_VN_MODE_CLIENT
    packet[_TRANSMIT_AT : _TRANSMIT_AT + 8] = encode_timestamp(transmit_unix)
    return bytes(packet)


def compute_offset(reply: NtpReply, destination_ntp: float) -> ClockOffset:
    """Apply the four-timestamp formulas to *reply*.

    ``destination_ntp`` is the local receive time in NTP-era seconds.
    """
    t1, t2, t3, t4 = reply.originate, reply.receive, reply.transmit, destination_ntp
    offset = ((t2 - t1) + (t3 - t4)) / 2
    delay = (t4 - t1) - (t3 - t2)
    return ClockOffset(
        delta_millis=int(offset * 1000),
        server_time_millis=int((t2 - NTP_EPOCH_OFFSET) * 1000),
        round_trip_millis=int(delay * 1000),
    )


# --------------------------------------------------------------------------- #
# Checker                                                                     #
# --------------------------------------------------------------------------- #
class TimeSyncChecker(Protocol):
    """What the flow controller needs from a clock checker."""

    def check_time_sync(self) -> ClockOffset | None: ...

    def is_within_acceptable_offset(self, offset: ClockOffset) -> bool: ...


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


class ClockSyncChecker:
    """Single-shot NTP query with a bounded timeout and no retries."""

    def __init__(
        self,
        server: str = NTP_SERVER,
        port: int = NTP_PORT,
        *,
        timeout: float = NTP_TIMEOUT_SECONDS,
        tolerance_millis: int = MAX_CLOCK_OFFSET_MILLIS,
        clock: Clock = default_clock,
        socket_factory: Callable[[], socket.socket] = _udp_socket,
    ) -> None:
        self.server = server
        self.port = port
        self.timeout = timeout
        self.tolerance_millis = tolerance_millis
        self._clock = clock
        self._socket_factory = socket_factory

    def check_time_sync(self) -> ClockOffset | None:
        """Query the server once.

        Returns
        -------
        ClockOffset | None
            The measured offset, or ``None`` when the server could not be
            reached in time or answered with garbage.
        """
        try:
            with contextlib.closing(self._socket_factory()) as sock:
                sock.settimeout(self.timeout)
                request = build_request(self._clock())
                sock.sendto(request, (self.server, self.port))
                _LOG.debug("NTP request sent to %s, waiting for response...", self.server)
                data, _ = sock.recvfrom(1024)
                destination = self._clock() + NTP_EPOCH_OFFSET
        except OSError as exc:  # includes timeouts and DNS failures
            _LOG.warning("NTP query to %s failed: %s", self.server, exc)
            return None

        try:
            reply = NtpReply.parse(data)
        except MalformedPacketError as exc:
            _LOG.warning("Discarding NTP reply from %s: %s", self.server, exc)
            return None
        if reply.originate_raw != request[_TRANSMIT_AT : _TRANSMIT_AT + 8]:
            _LOG.warning("Discarding NTP reply from %s: originate mismatch", self.server)
            return None
        if reply.stratum == 0:
            # kiss-o'-death: the server refused to serve time
            _LOG.warning("Discarding NTP reply from %s: kiss-o'-death", self.server)
            return None

        offset = compute_offset(reply, destination)
        _LOG.debug(
            "NTP server=%s stratum=%s round-trip=%sms offset=%sms",
            self.server,
            reply.stratum,
            offset.round_trip_millis,
            offset.delta_millis,
        )
        return offset

    def is_within_acceptable_offset(self, offset: ClockOffset) -> bool:
        return offset.is_within(self.tolerance_millis)

    def check_ntp_time(self) -> bool:
        """Return True unless a successful check found the clock out of bounds."""
        offset = self.check_time_sync()
        if offset is None:
            _LOG.warning("Unable to query NTP server; letting the login proceed anyway.")
            return True
        if self.is_within_acceptable_offset(offset):
            _LOG.debug("Device time is within the acceptable window.")
            return True
        _LOG.warning(
            "Device time is off by %sms, outside the acceptable window.", offset.delta_millis
        )
        return False
