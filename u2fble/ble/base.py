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

from dataclasses import dataclass, field
from threading import Timer
from typing import Callable, Optional, Sequence, Union
from uuid import UUID
import abc


GATT_SUCCESS = 0
GATT_FAILURE = 0x101


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: UUID
    handle: Optional[int] = None


@dataclass(frozen=True)
class GattService:
    uuid: UUID
    characteristics: Sequence[GattCharacteristic] = field(default_factory=tuple)


@dataclass(frozen=True)
class ConnectionStateChanged:
    connected: bool
    status: int = GATT_SUCCESS


@dataclass(frozen=True)
class ServicesDiscovered:
    services: Sequence[GattService]
    status: int = GATT_SUCCESS


@dataclass(frozen=True)
class CharacteristicRead:
    characteristic: GattCharacteristic
    value: bytes
    status: int = GATT_SUCCESS


@dataclass(frozen=True)
class CharacteristicWritten:
    characteristic: GattCharacteristic
    status: int = GATT_SUCCESS


@dataclass(frozen=True)
class DescriptorWritten:
    characteristic: GattCharacteristic
    descriptor: UUID
    status: int = GATT_SUCCESS


@dataclass(frozen=True)
class CharacteristicChanged:
    characteristic: GattCharacteristic
    value: bytes


GattEvent = Union[
    ConnectionStateChanged,
    ServicesDiscovered,
    CharacteristicRead,
    CharacteristicWritten,
    DescriptorWritten,
    CharacteristicChanged,
]


class GattTransport(abc.ABC):
    """A GATT client connection to a single peripheral.

    Requests are fire-and-forget: the request methods return False if the
    request could not be issued, and otherwise deliver their outcome later as a
    GattEvent to the callback given to connect. Events may be delivered from
    any thread.
    """

    @abc.abstractmethod
    def connect(self, address: str, callback: Callable[[GattEvent], None]) -> bool:
        """Opens a connection, reported by ConnectionStateChanged"""

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Requests disconnection, reported by ConnectionStateChanged"""

    @abc.abstractmethod
    def close(self) -> None:
        """Releases the connection handle. No events follow."""

    def shutdown(self) -> None:
        """Releases any resources held by the transport itself.

        Called once the owner is done with the transport; it is not used again
        afterwards.
        """

    @abc.abstractmethod
    def discover_services(self) -> bool:
        """Starts service discovery, reported by ServicesDiscovered"""

    @abc.abstractmethod
    def read_characteristic(self, characteristic: GattCharacteristic) -> bool:
        """Starts a read, reported by CharacteristicRead"""

    @abc.abstractmethod
    def write_characteristic(
        self, characteristic: GattCharacteristic, data: bytes
    ) -> bool:
        """Starts a write with response, reported by CharacteristicWritten"""

    @abc.abstractmethod
    def enable_notifications(self, characteristic: GattCharacteristic) -> bool:
        """Enables local delivery of CharacteristicChanged events"""

    @abc.abstractmethod
    def write_descriptor(
        self, characteristic: GattCharacteristic, descriptor: UUID, value: bytes
    ) -> bool:
        """Starts a descriptor write, reported by DescriptorWritten"""


class TimerHandle(abc.ABC):
    @abc.abstractmethod
    def cancel(self) -> None:
        """Cancels the timer, if it has not fired yet"""


class Scheduler(abc.ABC):
    @abc.abstractmethod
    def schedule(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        """Runs fn once, delay seconds from now, on some other thread."""


class _ThreadingTimerHandle(TimerHandle):
    def __init__(self, timer: Timer):
        self._timer = timer

    def cancel(self):
        self._timer.cancel()


class ThreadingScheduler(Scheduler):
    """Scheduler running each callback on its own threading.Timer."""

    def schedule(self, delay, fn):
        timer = Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return _ThreadingTimerHandle(timer)
