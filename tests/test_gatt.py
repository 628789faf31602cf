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

import asyncio
import queue
import threading
import unittest
from unittest import mock
from uuid import UUID

from bleak.exc import BleakError

from u2fble.ble import (
    GATT_FAILURE,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    CharacteristicChanged,
    CharacteristicRead,
    CharacteristicWritten,
    ConnectionStateChanged,
    DescriptorWritten,
    DeviceListener,
    GattCharacteristic,
    GattService,
    STATE,
    ServicesDiscovered,
    U2F_SERVICE_UUID,
    U2fBleDevice,
)
from u2fble.ble.gatt import BleakGattTransport
from u2fble.errors import BleTimeout

from .utils import CONTROL_POINT_LENGTH, NOTIFY, WRITE


ADDRESS = "C0:FF:EE:00:00:01"


def _bleak_client():
    client = mock.MagicMock()
    client.is_connected = True
    client.connect = mock.AsyncMock(return_value=True)
    client.disconnect = mock.AsyncMock(return_value=True)
    client.read_gatt_char = mock.AsyncMock(return_value=bytearray(b"\x00\xf4"))
    client.write_gatt_char = mock.AsyncMock(return_value=None)
    client.start_notify = mock.AsyncMock(return_value=None)
    client.stop_notify = mock.AsyncMock(return_value=None)
    return client


class TestBleakGattTransport(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("u2fble.ble.gatt.BleakClient")
        self.client_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = _bleak_client()
        self.client_class.return_value = self.client

        self.events = queue.Queue()
        self.transport = BleakGattTransport(timeout=3.0)
        self.addCleanup(self.transport.shutdown, 5)

    def next_event(self):
        return self.events.get(timeout=5)

    def connect(self):
        self.assertTrue(self.transport.connect(ADDRESS, self.events.put))
        self.assertEqual(self.next_event(), ConnectionStateChanged(True))

    def test_connect(self):
        self.connect()
        self.client_class.assert_called_once_with(
            ADDRESS, disconnected_callback=mock.ANY, timeout=3.0
        )
        self.client.connect.assert_awaited_once()

    def test_connect_failed(self):
        self.client.connect.side_effect = BleakError("Device not found")
        self.transport.connect(ADDRESS, self.events.put)
        self.assertEqual(
            self.next_event(), ConnectionStateChanged(False, GATT_FAILURE)
        )

    def test_disconnected_callback(self):
        self.connect()
        on_disconnected = self.client_class.call_args[1]["disconnected_callback"]
        on_disconnected(self.client)
        self.assertEqual(self.next_event(), ConnectionStateChanged(False))

    def test_requests_before_connect(self):
        self.assertFalse(self.transport.discover_services())
        self.assertFalse(self.transport.read_characteristic(CONTROL_POINT_LENGTH))
        self.assertFalse(self.transport.write_characteristic(WRITE, b"\x83"))
        self.assertFalse(self.transport.enable_notifications(NOTIFY))

    def test_discover_services(self):
        characteristic = mock.Mock(uuid=str(NOTIFY.uuid).lower(), handle=0x12)
        service = mock.Mock(
            uuid=str(U2F_SERVICE_UUID).lower(), characteristics=[characteristic]
        )
        self.client.services = [service]
        self.connect()

        self.assertTrue(self.transport.discover_services())
        self.assertEqual(
            self.next_event(),
            ServicesDiscovered(
                [
                    GattService(
                        U2F_SERVICE_UUID, (GattCharacteristic(NOTIFY.uuid, 0x12),)
                    )
                ]
            ),
        )

    def test_read(self):
        self.connect()
        self.assertTrue(self.transport.read_characteristic(CONTROL_POINT_LENGTH))
        self.assertEqual(
            self.next_event(), CharacteristicRead(CONTROL_POINT_LENGTH, b"\x00\xf4")
        )
        self.client.read_gatt_char.assert_awaited_once_with(0x15)

    def test_read_failed(self):
        self.client.read_gatt_char.side_effect = BleakError("Read failed")
        self.connect()
        self.transport.read_characteristic(CONTROL_POINT_LENGTH)
        self.assertEqual(
            self.next_event(),
            CharacteristicRead(CONTROL_POINT_LENGTH, b"", GATT_FAILURE),
        )

    def test_write(self):
        self.connect()
        self.assertTrue(self.transport.write_characteristic(WRITE, b"\x83\x00\x00"))
        self.assertEqual(self.next_event(), CharacteristicWritten(WRITE))
        self.client.write_gatt_char.assert_awaited_once_with(
            0x10, b"\x83\x00\x00", response=True
        )

    def test_write_failed(self):
        self.client.write_gatt_char.side_effect = BleakError("Write failed")
        self.connect()
        self.transport.write_characteristic(WRITE, b"\x83\x00\x00")
        self.assertEqual(
            self.next_event(), CharacteristicWritten(WRITE, GATT_FAILURE)
        )

    def test_enable_notifications(self):
        self.connect()
        self.assertTrue(self.transport.enable_notifications(NOTIFY))
        self.assertTrue(
            self.transport.write_descriptor(
                NOTIFY, CLIENT_CHARACTERISTIC_CONFIG_UUID, b"\x01\x00"
            )
        )
        self.assertEqual(
            self.next_event(),
            DescriptorWritten(NOTIFY, CLIENT_CHARACTERISTIC_CONFIG_UUID),
        )

        handle, on_notify = self.client.start_notify.call_args[0]
        self.assertEqual(handle, 0x12)
        on_notify(None, bytearray(b"\x82\x00\x01\x01"))
        self.assertEqual(
            self.next_event(), CharacteristicChanged(NOTIFY, b"\x82\x00\x01\x01")
        )

    def test_disable_notifications(self):
        self.connect()
        self.transport.write_descriptor(
            NOTIFY, CLIENT_CHARACTERISTIC_CONFIG_UUID, b"\x00\x00"
        )
        self.next_event()
        self.client.stop_notify.assert_awaited_once_with(0x12)
        self.client.start_notify.assert_not_called()

    def test_other_descriptor_rejected(self):
        self.connect()
        self.assertFalse(
            self.transport.write_descriptor(
                NOTIFY, UUID("00002901-0000-1000-8000-00805F9B34FB"), b"\x01\x00"
            )
        )

    def test_no_events_after_close(self):
        self.connect()
        on_disconnected = self.client_class.call_args[1]["disconnected_callback"]
        self.transport.close()
        on_disconnected(self.client)
        self.assertTrue(self.events.empty())
        self.assertFalse(self.transport.discover_services())

    def slow_connect(self):
        released = threading.Event()
        disconnected = threading.Event()

        async def connect():
            while not released.is_set():
                await asyncio.sleep(0.01)
            return True

        self.client.connect.side_effect = connect
        self.client.disconnect.side_effect = lambda: disconnected.set()
        self.transport.connect(ADDRESS, self.events.put)
        return released, disconnected

    def test_close_while_connecting(self):
        released, disconnected = self.slow_connect()
        self.transport.close()
        released.set()

        self.assertTrue(disconnected.wait(5))
        self.assertTrue(self.events.empty())
        self.assertFalse(self.transport.discover_services())

    def test_disconnect_while_connecting(self):
        released, disconnected = self.slow_connect()
        self.transport.disconnect()
        self.assertEqual(self.next_event(), ConnectionStateChanged(False))
        released.set()

        self.assertTrue(disconnected.wait(5))
        self.assertTrue(self.events.empty())

    def test_shutdown(self):
        self.connect()
        self.transport.shutdown(5)
        self.client.disconnect.assert_awaited_once()
        self.assertFalse(self.transport._thread.is_alive())
        self.assertTrue(self.transport._loop.is_closed())

    def test_shutdown_waits_for_connection_attempt(self):
        released, disconnected = self.slow_connect()
        threading.Timer(0.1, released.set).start()
        self.transport.shutdown(5)

        self.assertTrue(disconnected.is_set())
        self.assertFalse(self.transport._thread.is_alive())
        self.assertTrue(self.events.empty())


class TestDeviceOverBleak(unittest.TestCase):
    def test_connect_timeout_drops_late_connection(self):
        released = threading.Event()
        disconnected = threading.Event()

        async def connect():
            while not released.is_set():
                await asyncio.sleep(0.01)
            return True

        with mock.patch("u2fble.ble.gatt.BleakClient") as client_class:
            client = _bleak_client()
            client.connect.side_effect = connect
            client.disconnect.side_effect = lambda: disconnected.set()
            client_class.return_value = client

            listener = mock.MagicMock(spec=DeviceListener)
            transport = BleakGattTransport()
            device = U2fBleDevice(ADDRESS, transport, listener)
            self.addCleanup(device.close)

            future = device.connect(timeout=0.1)
            self.assertIsInstance(future.exception(5), BleTimeout)
            released.set()

            self.assertTrue(disconnected.wait(5))
            listener.on_connection_state_changed.assert_not_called()
            self.assertFalse(device.is_connected)
            self.assertEqual(device.state, STATE.FAILED)
