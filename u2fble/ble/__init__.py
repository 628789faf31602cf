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

"""U2F over Bluetooth Low Energy.

The authenticator exposes a GATT service with a write characteristic for
requests, a notify characteristic for responses and a characteristic holding
the maximum fragment size. Messages are fragmented as described in
:mod:`u2fble.ble.framing`.
"""

from __future__ import annotations

from .base import (  # noqa: F401
    GATT_SUCCESS,
    GATT_FAILURE,
    GattCharacteristic,
    GattService,
    GattTransport,
    Scheduler,
    ThreadingScheduler,
    ConnectionStateChanged,
    ServicesDiscovered,
    CharacteristicRead,
    CharacteristicWritten,
    DescriptorWritten,
    CharacteristicChanged,
)
from .framing import BLECMD, CHUNK, classify, split, join  # noqa: F401
from .device import (  # noqa: F401
    STATE,
    DeviceListener,
    U2fBleDevice,
    U2F_SERVICE_UUID,
    U2F_WRITE_CHARACTERISTIC_UUID,
    U2F_NOTIFY_CHARACTERISTIC_UUID,
    U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
)
from typing import Optional


def open_device(
    address: str, name: Optional[str] = None, **kwargs
) -> U2fBleDevice:
    """Creates a U2fBleDevice using the bleak backend.

    Extra kwargs are passed to the U2fBleDevice constructor. The returned device
    is not yet connected.

    :param address: The address of the peripheral.
    :param name: Optional name of the peripheral.
    :return: A U2fBleDevice.
    """
    from .gatt import BleakGattTransport

    return U2fBleDevice(address, BleakGattTransport(), name=name, **kwargs)
