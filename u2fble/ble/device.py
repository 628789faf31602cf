# Copyright (c) 2020 Yubico AB
# All rights reserved.
#
#   Redistribution and use in source and binary forms, with or
#   without modification, are permitted provided that the following
#   conditions are met:
#
#    1. Redistributions of source code must retain the above copyright
#       notice, this list of conditions and the following disclaimer.
#    2. Redistributions in binary form must reproduce the above
#       copyright notice, this list of conditions and the following
#       disclaimer in the documentation and/or other materials provided
#       with the distribution.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS
# "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT
# LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS
# FOR A PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE
# COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT,
# INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING,
# BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES;
# LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER
# CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT
# LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN
# ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.

from __future__ import annotations

from .base import (
    GATT_SUCCESS,
    CharacteristicChanged,
    CharacteristicRead,
    CharacteristicWritten,
    ConnectionStateChanged,
    DescriptorWritten,
    GattCharacteristic,
    GattTransport,
    Scheduler,
    ServicesDiscovered,
    ThreadingScheduler,
    TimerHandle,
)
from .framing import BLECMD, CHUNK, MIN_CHUNK_SIZE, classify, join, split
from ..errors import (
    BleTimeout,
    Cancelled,
    ProtocolViolation,
    RemoteStatusError,
    TransportRejected,
    U2fBleError,
)
from ..utils import LOG_LEVEL_TRAFFIC
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum, unique
from threading import RLock
from typing import Deque, List, Optional
from uuid import UUID
import itertools
import logging
import struct

logger = logging.getLogger(__name__)


U2F_SERVICE_UUID = UUID("0000FFFD-0000-1000-8000-00805F9B34FB")
U2F_WRITE_CHARACTERISTIC_UUID = UUID("F1D0FFF1-DEAA-ECEE-B42F-C9BA7ED623BB")
U2F_NOTIFY_CHARACTERISTIC_UUID = UUID("F1D0FFF2-DEAA-ECEE-B42F-C9BA7ED623BB")
U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID = UUID(
    "F1D0FFF3-DEAA-ECEE-B42F-C9BA7ED623BB"
)
CLIENT_CHARACTERISTIC_CONFIG_UUID = UUID("00002902-0000-1000-8000-00805F9B34FB")

ENABLE_NOTIFICATION_VALUE = b"\x01\x00"


@unique
class STATE(Enum):
    DISCONNECTED = 0
    CONNECTING = 1
    AWAITING_DISCOVERY_SETTLE = 2
    DISCOVERING_SERVICES = 3
    AWAITING_READ_SETTLE = 4
    READING_CHUNK_SIZE = 5
    ENABLING_NOTIFICATIONS = 6
    READY = 7
    EXCHANGING = 8
    FAILED = 9
    DISCARDED = 10


_SETUP_STATES = frozenset(
    [
        STATE.CONNECTING,
        STATE.AWAITING_DISCOVERY_SETTLE,
        STATE.DISCOVERING_SERVICES,
        STATE.AWAITING_READ_SETTLE,
        STATE.READING_CHUNK_SIZE,
        STATE.ENABLING_NOTIFICATIONS,
    ]
)

_IDLE_STATES = frozenset([STATE.DISCONNECTED, STATE.FAILED])


@dataclass(frozen=True)
class _TimeoutExpired:
    token: int


@dataclass(frozen=True)
class _SettleElapsed:
    token: int


class DeviceListener:
    """Receives the outcome of everything a U2fBleDevice does.

    Methods are called with the session lock held, from whichever thread
    delivered the triggering event. The default implementations do nothing.
    """

    def on_connection_state_changed(self, device: U2fBleDevice, connected: bool):
        """Called when the link state changes, or connect() finds it up."""

    def on_initialized(self, device: U2fBleDevice):
        """Called once GATT setup has completed."""

    def on_response(self, device: U2fBleDevice, data: bytes):
        """Called with a complete reassembled response."""

    def on_keepalive(self, device: U2fBleDevice, status: int):
        """Called for each keepalive notification."""

    def on_error(self, device: U2fBleDevice, error: U2fBleError):
        """Called once for each failure."""


@dataclass
class _Session:
    state: STATE = STATE.DISCONNECTED
    connected: bool = False
    initialized: bool = False
    discarded: bool = False
    chunk_size: int = 0
    characteristic_write: Optional[GattCharacteristic] = None
    characteristic_notify: Optional[GattCharacteristic] = None
    characteristic_control_point_length: Optional[GattCharacteristic] = None
    received: List[bytes] = field(default_factory=list)
    to_send: Deque[bytes] = field(default_factory=deque)
    pending_write: bool = False
    response: Optional[bytes] = None
    timer: Optional[TimerHandle] = None
    timer_token: int = 0
    connect_future: Optional[Future] = None
    exchange_future: Optional[Future] = None


def _new_future() -> Future:
    future: Future = Future()
    future.set_running_or_notify_cancel()
    return future


def _failed_future(error: Exception) -> Future:
    future = _new_future()
    future.set_exception(error)
    return future


class U2fBleDevice:
    """A session with a U2F authenticator over BLE.

    All transport events and timer expiries are funneled through dispatch(),
    which serializes every change of session state under a single lock.

    :param address: The address of the peripheral.
    :param transport: The GATT transport to use.
    :param listener: Optional DeviceListener to report to.
    :param name: Optional human readable name of the peripheral.
    :param scheduler: Optional Scheduler for timeouts and settle delays.
    :cvar CONNECT_TIMEOUT: Default timeout, in seconds, for each step.
    :cvar DISCOVER_SETTLE_DELAY: Delay between connection and service discovery.
    :cvar READ_SETTLE_DELAY: Delay between service discovery and reading the
        control point length.
    """

    CONNECT_TIMEOUT = 5.0
    # Some BLE controllers fail GATT encryption setup when discovery or reads
    # are started right after connecting.
    DISCOVER_SETTLE_DELAY = 0.5
    READ_SETTLE_DELAY = 0.5

    def __init__(
        self,
        address: str,
        transport: GattTransport,
        listener: Optional[DeviceListener] = None,
        name: Optional[str] = None,
        scheduler: Optional[Scheduler] = None,
        discover_settle_delay: Optional[float] = None,
        read_settle_delay: Optional[float] = None,
    ):
        self._address = address
        self._name = name
        self._transport = transport
        self._listener = listener or DeviceListener()
        self._scheduler = scheduler or ThreadingScheduler()
        self.timeout = self.CONNECT_TIMEOUT
        if discover_settle_delay is not None:
            self.discover_settle_delay = discover_settle_delay
        else:
            self.discover_settle_delay = self.DISCOVER_SETTLE_DELAY
        if read_settle_delay is not None:
            self.read_settle_delay = read_settle_delay
        else:
            self.read_settle_delay = self.READ_SETTLE_DELAY

        self._lock = RLock()
        self._tokens = itertools.count(1)
        self._session = _Session()
        self._transport_open = False
        self._report_final_state = False
        self._handlers = {
            ConnectionStateChanged: self._on_connection_state_changed,
            ServicesDiscovered: self._on_services_discovered,
            CharacteristicRead: self._on_characteristic_read,
            CharacteristicWritten: self._on_characteristic_written,
            DescriptorWritten: self._on_descriptor_written,
            CharacteristicChanged: self._on_characteristic_changed,
            _TimeoutExpired: self._on_timeout_expired,
            _SettleElapsed: self._on_settle_elapsed,
        }

    def __repr__(self):
        return f"U2fBleDevice({self._address!r})"

    def __enter__(self):
        return self

    def __exit__(self, typ, value, traceback):
        self.close()

    @property
    def address(self) -> str:
        """Address of the peripheral."""
        return self._address

    @property
    def name(self) -> Optional[str]:
        """Name of the peripheral, if known."""
        return self._name

    @property
    def chunk_size(self) -> int:
        """Maximum fragment size negotiated with the device, 0 until read."""
        return self._session.chunk_size

    @property
    def state(self) -> STATE:
        return self._session.state

    @property
    def initialized(self) -> bool:
        return self._session.initialized

    @property
    def discarded(self) -> bool:
        return self._session.discarded

    @property
    def is_connected(self) -> bool:
        """True if the link is up and the session has not been discarded."""
        s = self._session
        return s.connected and not s.discarded

    def connect(self, timeout: Optional[float] = None) -> Future:
        """Connects to the device and sets up the U2F GATT service.

        :param timeout: Optional timeout in seconds for each setup step, and for
            later exchanges.
        :return: A Future which completes once the session is initialized.
        """
        with self._lock:
            s = self._session
            if s.discarded:
                return _failed_future(Cancelled("Session discarded"))
            if s.connected and s.state not in (STATE.FAILED, STATE.DISCONNECTED):
                self._listener.on_connection_state_changed(self, True)
                return s.connect_future or _new_future()

            if timeout is not None:
                self.timeout = timeout
            if self._transport_open:
                logger.debug("Closing previous GATT connection")
            self._close_transport()
            self._cancel_timer()
            self._abandon(Cancelled("Superseded by a new connection"))

            self._session = s = _Session(state=STATE.CONNECTING)
            future = s.connect_future = _new_future()
            logger.debug("Connecting to %s", self._address)
            if not self._transport.connect(self._address, self.dispatch):
                self._fail(TransportRejected("Failed to open GATT connection"))
                return future
            self._transport_open = True
            self._arm_timeout()
            return future

    def disconnect(self) -> None:
        """Permanently discards the session, and disconnects the device.

        Once called, no further events are processed. The resulting disconnection
        is reported once to the listener.
        """
        with self._lock:
            s = self._session
            if s.discarded:
                return
            s.discarded = True
            s.state = STATE.DISCARDED
            self._cancel_timer()
            self._abandon(Cancelled("Session discarded"))

            if not s.connected:
                self._release_transport()
                self._listener.on_connection_state_changed(self, False)
            else:
                logger.debug("Disconnecting from %s", self._address)
                self._report_final_state = True
                self._transport.disconnect()

    def close(self) -> None:
        """Alias of disconnect()."""
        self.disconnect()

    def exchange_apdu(self, apdu: bytes) -> Future:
        """Sends a request APDU and collects the response.

        :param apdu: The serialized request.
        :return: A Future resolving to the raw response, including status word.
        """
        with self._lock:
            s = self._session
            if s.discarded:
                return _failed_future(Cancelled("Session discarded"))
            if s.state != STATE.READY:
                return _failed_future(
                    TransportRejected(f"Device not ready ({s.state.name})")
                )

            fragments = split(BLECMD.MSG, apdu, s.chunk_size)
            future = s.exchange_future = _new_future()
            s.state = STATE.EXCHANGING
            s.received = []
            s.response = None
            s.to_send = deque(fragments)
            self._arm_timeout()
            self._write_next_fragment()
            return future

    def dispatch(self, event) -> None:
        """Processes a transport event or timer expiry.

        This is the callback given to the transport, and is safe to call from
        any thread.
        """
        with self._lock:
            s = self._session
            if s.discarded:
                if (
                    isinstance(event, ConnectionStateChanged)
                    and self._report_final_state
                ):
                    self._report_final_state = False
                    s.connected = event.connected
                    if not event.connected:
                        self._release_transport()
                    self._listener.on_connection_state_changed(self, event.connected)
                else:
                    logger.debug("Ignoring %s for discarded session", event)
                return
            self._handlers[type(event)](event)

    def _close_transport(self) -> None:
        if self._transport_open:
            self._transport.close()
            self._transport_open = False

    def _release_transport(self) -> None:
        self._close_transport()
        self._transport.shutdown()

    def _arm(self, delay: float, event_type) -> None:
        s = self._session
        self._cancel_timer()
        token = s.timer_token = next(self._tokens)
        s.timer = self._scheduler.schedule(
            delay, lambda: self.dispatch(event_type(token))
        )

    def _arm_timeout(self) -> None:
        self._arm(self.timeout, _TimeoutExpired)

    def _cancel_timer(self) -> None:
        s = self._session
        if s.timer is not None:
            s.timer.cancel()
            s.timer = None
        s.timer_token = 0

    def _expire(self, token: int) -> bool:
        s = self._session
        if token != s.timer_token:
            logger.debug("Ignoring stale timer")
            return False
        s.timer = None
        s.timer_token = 0
        return True

    def _abandon(self, error: U2fBleError) -> None:
        # Fails outstanding futures without reporting to the listener
        s = self._session
        for future in (s.connect_future, s.exchange_future):
            if future is not None and not future.done():
                future.set_exception(error)

    def _fail(self, error: U2fBleError) -> None:
        s = self._session
        logger.debug("%s failed: %s", self, error.message)
        self._cancel_timer()
        s.state = STATE.FAILED
        s.initialized = False
        s.received = []
        s.to_send.clear()
        s.pending_write = False
        s.response = None
        self._abandon(error)
        s.exchange_future = None
        self._listener.on_error(self, error)

    def _on_timeout_expired(self, event: _TimeoutExpired) -> None:
        if not self._expire(event.token):
            return
        logger.debug("Connection timeout")
        s = self._session
        if s.state in _SETUP_STATES:
            # Drops the link, including a connection attempt still in progress
            self._close_transport()
            if s.connected:
                s.connected = False
                self._listener.on_connection_state_changed(self, False)
        self._fail(BleTimeout("Connection timeout"))

    def _on_settle_elapsed(self, event: _SettleElapsed) -> None:
        if not self._expire(event.token):
            return
        s = self._session
        if s.state == STATE.AWAITING_DISCOVERY_SETTLE:
            if not self._transport.discover_services():
                self._fail(TransportRejected("Failed to start service discovery"))
                return
            logger.debug("Starting service discovery")
            s.state = STATE.DISCOVERING_SERVICES
            self._arm_timeout()
        elif s.state == STATE.AWAITING_READ_SETTLE:
            logger.debug("Reading control point length")
            assert s.characteristic_control_point_length is not None  # nosec
            if not self._transport.read_characteristic(
                s.characteristic_control_point_length
            ):
                self._fail(TransportRejected("Failed to read control point length"))
                return
            s.state = STATE.READING_CHUNK_SIZE
            self._arm_timeout()

    def _on_connection_state_changed(self, event: ConnectionStateChanged) -> None:
        s = self._session
        logger.debug(
            "Connection state connected=%s status=%d", event.connected, event.status
        )
        s.connected = event.connected
        self._listener.on_connection_state_changed(self, event.connected)

        if event.connected:
            if s.state != STATE.CONNECTING:
                logger.debug("Ignoring connection in state %s", s.state.name)
                return
            self._cancel_timer()
            s.state = STATE.AWAITING_DISCOVERY_SETTLE
            self._arm(self.discover_settle_delay, _SettleElapsed)
        elif s.state in _SETUP_STATES or s.state == STATE.EXCHANGING:
            self._fail(RemoteStatusError("Device disconnected", event.status))
        elif s.state == STATE.READY:
            self._cancel_timer()
            s.initialized = False
            s.state = STATE.DISCONNECTED

    def _on_services_discovered(self, event: ServicesDiscovered) -> None:
        s = self._session
        if s.state != STATE.DISCOVERING_SERVICES:
            logger.debug("Ignoring service discovery in state %s", s.state.name)
            return
        logger.debug("Services discovered")
        self._cancel_timer()
        if event.status != GATT_SUCCESS:
            self._fail(RemoteStatusError("Service discovery failed", event.status))
            return

        for service in event.services:
            logger.debug("Service: %s", service.uuid)
            if service.uuid != U2F_SERVICE_UUID:
                continue
            for characteristic in service.characteristics:
                logger.debug("Characteristic: %s", characteristic.uuid)
                if characteristic.uuid == U2F_NOTIFY_CHARACTERISTIC_UUID:
                    s.characteristic_notify = characteristic
                elif characteristic.uuid == U2F_WRITE_CHARACTERISTIC_UUID:
                    s.characteristic_write = characteristic
                elif (
                    characteristic.uuid == U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID
                ):
                    s.characteristic_control_point_length = characteristic

        if (
            s.characteristic_notify is None
            or s.characteristic_write is None
            or s.characteristic_control_point_length is None
        ):
            self._fail(
                ProtocolViolation("Could not find mandatory characteristic or service")
            )
            return
        s.state = STATE.AWAITING_READ_SETTLE
        self._arm(self.read_settle_delay, _SettleElapsed)

    def _on_characteristic_read(self, event: CharacteristicRead) -> None:
        s = self._session
        if (
            s.state != STATE.READING_CHUNK_SIZE
            or event.characteristic.uuid != U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID
        ):
            logger.debug("Ignoring read of %s", event.characteristic.uuid)
            return
        if event.status != GATT_SUCCESS:
            self._fail(RemoteStatusError("Read failed remotely", event.status))
            return

        value = bytes(event.value)
        logger.debug("Read %s", value.hex())
        self._cancel_timer()
        if len(value) < 2:
            self._fail(ProtocolViolation("Invalid control point length"))
            return
        chunk_size = struct.unpack_from(">H", value)[0]
        if chunk_size < MIN_CHUNK_SIZE:
            self._fail(ProtocolViolation(f"Invalid chunk size {chunk_size}"))
            return
        s.chunk_size = chunk_size
        logger.debug("Using chunk size %d", chunk_size)

        assert s.characteristic_notify is not None  # nosec
        if not self._transport.enable_notifications(s.characteristic_notify):
            self._fail(TransportRejected("Failed to enable local notifications"))
            return
        if not self._transport.write_descriptor(
            s.characteristic_notify,
            CLIENT_CHARACTERISTIC_CONFIG_UUID,
            ENABLE_NOTIFICATION_VALUE,
        ):
            self._fail(TransportRejected("Failed to enable remote notifications"))
            return
        s.state = STATE.ENABLING_NOTIFICATIONS
        self._arm_timeout()

    def _on_descriptor_written(self, event: DescriptorWritten) -> None:
        s = self._session
        if s.state != STATE.ENABLING_NOTIFICATIONS:
            logger.debug("Ignoring descriptor write in state %s", s.state.name)
            return
        if event.status != GATT_SUCCESS:
            self._fail(
                RemoteStatusError("Invalid status writing descriptor", event.status)
            )
            return

        logger.debug("Descriptor written")
        self._cancel_timer()
        s.initialized = True
        s.state = STATE.READY
        if s.connect_future is not None and not s.connect_future.done():
            s.connect_future.set_result(None)
        self._listener.on_initialized(self)

    def _write_next_fragment(self) -> None:
        s = self._session
        fragment = s.to_send.popleft()
        logger.log(LOG_LEVEL_TRAFFIC, "SEND: %s", fragment.hex())
        s.pending_write = True
        assert s.characteristic_write is not None  # nosec
        if not self._transport.write_characteristic(s.characteristic_write, fragment):
            s.pending_write = False
            self._fail(TransportRejected("Writing failed locally"))

    def _on_characteristic_written(self, event: CharacteristicWritten) -> None:
        s = self._session
        if not s.pending_write:
            logger.debug("Unexpected characteristic write received %d", event.status)
            return
        if event.status != GATT_SUCCESS:
            self._fail(RemoteStatusError("Write failed remotely", event.status))
            return

        logger.debug("Write acknowledged")
        s.pending_write = False
        if s.to_send:
            self._write_next_fragment()
        elif s.response is not None:
            self._deliver()

    def _on_characteristic_changed(self, event: CharacteristicChanged) -> None:
        s = self._session
        if event.characteristic.uuid != U2F_NOTIFY_CHARACTERISTIC_UUID:
            logger.debug("Ignoring notification from %s", event.characteristic.uuid)
            return

        data = bytes(event.value)
        logger.log(LOG_LEVEL_TRAFFIC, "RECV: %s", data.hex())
        chunk_type = classify(data)

        if chunk_type == CHUNK.KEEPALIVE:
            status = data[3] if len(data) > 3 else 0
            logger.debug("Got keepalive status: %02x", status)
            if s.state == STATE.EXCHANGING:
                self._arm_timeout()
            self._listener.on_keepalive(self, status)
            return

        if chunk_type == CHUNK.ERROR and s.state not in _IDLE_STATES:
            code = data[3] if len(data) > 3 else None
            self._fail(RemoteStatusError(f"Error reported {code}", code))
            return

        if s.state != STATE.EXCHANGING:
            logger.debug("Ignoring unsolicited %s fragment", chunk_type.value)
            return

        if chunk_type not in (CHUNK.MSG, CHUNK.CONTINUATION) or s.response is not None:
            self._fail(ProtocolViolation(f"Unexpected data received {data.hex()}"))
            return

        s.received.append(data)
        try:
            response = join(BLECMD.MSG, s.received)
        except ProtocolViolation as e:
            self._fail(ProtocolViolation(f"Invalid fragmented response: {e}"))
            return
        if response is None:
            return

        s.received = []
        s.response = response
        logger.debug("Got APDU response of %d bytes", len(response))
        if s.pending_write:
            logger.debug("Wait for pending write confirmation")
        else:
            self._deliver()

    def _deliver(self) -> None:
        s = self._session
        response, s.response = s.response, None
        assert response is not None  # nosec
        self._cancel_timer()
        s.state = STATE.READY
        future, s.exchange_future = s.exchange_future, None
        self._listener.on_response(self, response)
        if future is not None and not future.done():
            future.set_result(response)
