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

"""GattTransport implementation using bleak."""

from __future__ import annotations

from .base import (
    GATT_FAILURE,
    CharacteristicChanged,
    CharacteristicRead,
    CharacteristicWritten,
    ConnectionStateChanged,
    DescriptorWritten,
    GattCharacteristic,
    GattService,
    GattTransport,
    ServicesDiscovered,
)
from .device import CLIENT_CHARACTERISTIC_CONFIG_UUID, U2fBleDevice
from bleak import BleakClient
from bleak.exc import BleakError
from concurrent.futures import Future
from threading import Thread, current_thread
from typing import Callable, Optional
from uuid import UUID
import asyncio
import logging

logger = logging.getLogger(__name__)


_BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class BleakGattTransport(GattTransport):
    """GATT transport backed by bleak.

    bleak is asyncio based, so each transport runs a private event loop on a
    daemon thread until shutdown() is called. Requests are scheduled onto that
    loop and their results are delivered to the callback from the loop thread.

    :param timeout: Timeout in seconds for bleak to establish the connection.
    """

    def __init__(self, timeout: float = U2fBleDevice.CONNECT_TIMEOUT):
        self._timeout = timeout
        self._loop = asyncio.new_event_loop()
        self._thread = Thread(target=self._run, name="u2fble-gatt", daemon=True)
        self._thread.start()
        self._client: Optional[BleakClient] = None
        self._callback: Optional[Callable] = None
        self._generation = 0

    def __repr__(self):
        return f"BleakGattTransport({self._client!r})"

    def _run(self) -> None:
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def _submit(self, coro) -> bool:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(self._log_failure)
        return True

    @staticmethod
    def _log_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("GATT request failed", exc_info=future.exception())

    def _emit(self, generation: int, event) -> None:
        callback = self._callback
        if generation == self._generation and callback is not None:
            callback(event)

    def _connected_client(self) -> Optional[BleakClient]:
        client = self._client
        if client is None or not client.is_connected:
            return None
        return client

    def connect(self, address, callback):
        self._generation += 1
        self._callback = callback
        return self._submit(self._connect(address, self._generation))

    async def _connect(self, address: str, generation: int) -> None:
        def on_disconnected(_client):
            logger.debug("Disconnected from %s", address)
            self._emit(generation, ConnectionStateChanged(False))

        client = BleakClient(
            address, disconnected_callback=on_disconnected, timeout=self._timeout
        )
        try:
            await client.connect()
        except _BLE_ERRORS as e:
            logger.warning("Connection to %s failed: %s", address, e)
            self._emit(generation, ConnectionStateChanged(False, GATT_FAILURE))
            return

        if generation != self._generation:
            logger.debug("Connection to %s superseded", address)
            await client.disconnect()
            return
        self._client = client
        self._emit(generation, ConnectionStateChanged(True))

    def disconnect(self):
        client = self._client
        if client is not None:
            self._submit(client.disconnect())
        else:
            # Still connecting: the attempt is superseded and dropped once done
            self._generation += 1
            self._emit(self._generation, ConnectionStateChanged(False))

    def close(self):
        self._generation += 1
        self._callback = None
        client, self._client = self._client, None
        if client is not None:
            self._submit(client.disconnect())

    def shutdown(self, timeout: Optional[float] = None):
        """Closes the transport and stops its event loop thread.

        Pending requests, such as a disconnection issued by close(), are allowed
        to finish first. The transport cannot be used afterwards.

        :param timeout: Optional limit, in seconds, to wait for the thread.
        """
        self.close()
        if not self._thread.is_alive():
            return
        self._submit(self._drain())
        if current_thread() is not self._thread:
            self._thread.join(timeout)

    async def _drain(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks() if t is not current]
        await asyncio.gather(*pending, return_exceptions=True)
        self._loop.stop()

    def discover_services(self):
        client = self._connected_client()
        if client is None:
            return False
        return self._submit(self._discover_services(client, self._generation))

    async def _discover_services(self, client: BleakClient, generation: int) -> None:
        services = [
            GattService(
                UUID(service.uuid),
                tuple(
                    GattCharacteristic(UUID(c.uuid), c.handle)
                    for c in service.characteristics
                ),
            )
            for service in client.services
        ]
        self._emit(generation, ServicesDiscovered(services))

    def read_characteristic(self, characteristic):
        client = self._connected_client()
        if client is None:
            return False
        return self._submit(self._read(client, self._generation, characteristic))

    async def _read(
        self, client: BleakClient, generation: int, characteristic: GattCharacteristic
    ) -> None:
        try:
            value = await client.read_gatt_char(characteristic.handle)
        except _BLE_ERRORS as e:
            logger.warning("Read of %s failed: %s", characteristic.uuid, e)
            self._emit(
                generation, CharacteristicRead(characteristic, b"", GATT_FAILURE)
            )
            return
        self._emit(generation, CharacteristicRead(characteristic, bytes(value)))

    def write_characteristic(self, characteristic, data):
        client = self._connected_client()
        if client is None:
            return False
        return self._submit(
            self._write(client, self._generation, characteristic, bytes(data))
        )

    async def _write(
        self,
        client: BleakClient,
        generation: int,
        characteristic: GattCharacteristic,
        data: bytes,
    ) -> None:
        try:
            await client.write_gatt_char(characteristic.handle, data, response=True)
        except _BLE_ERRORS as e:
            logger.warning("Write to %s failed: %s", characteristic.uuid, e)
            self._emit(generation, CharacteristicWritten(characteristic, GATT_FAILURE))
            return
        self._emit(generation, CharacteristicWritten(characteristic))

    def enable_notifications(self, characteristic):
        # bleak subscribes locally as part of start_notify
        return self._connected_client() is not None

    def write_descriptor(self, characteristic, descriptor, value):
        client = self._connected_client()
        if client is None or descriptor != CLIENT_CHARACTERISTIC_CONFIG_UUID:
            return False
        enable = value[:1] != b"\0"
        return self._submit(
            self._subscribe(client, self._generation, characteristic, enable)
        )

    async def _subscribe(
        self,
        client: BleakClient,
        generation: int,
        characteristic: GattCharacteristic,
        enable: bool,
    ) -> None:
        def on_notify(_sender, data: bytearray):
            self._emit(generation, CharacteristicChanged(characteristic, bytes(data)))

        try:
            if enable:
                await client.start_notify(characteristic.handle, on_notify)
            else:
                await client.stop_notify(characteristic.handle)
        except _BLE_ERRORS as e:
            logger.warning("Subscription to %s failed: %s", characteristic.uuid, e)
            self._emit(
                generation,
                DescriptorWritten(
                    characteristic, CLIENT_CHARACTERISTIC_CONFIG_UUID, GATT_FAILURE
                ),
            )
            return
        self._emit(
            generation,
            DescriptorWritten(characteristic, CLIENT_CHARACTERISTIC_CONFIG_UUID),
        )
