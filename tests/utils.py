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

from u2fble.ble import (
    GattCharacteristic,
    GattService,
    GattTransport,
    Scheduler,
    U2F_SERVICE_UUID,
    U2F_WRITE_CHARACTERISTIC_UUID,
    U2F_NOTIFY_CHARACTERISTIC_UUID,
    U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID,
)
from u2fble.ble.base import TimerHandle


WRITE = GattCharacteristic(U2F_WRITE_CHARACTERISTIC_UUID, 0x10)
NOTIFY = GattCharacteristic(U2F_NOTIFY_CHARACTERISTIC_UUID, 0x12)
CONTROL_POINT_LENGTH = GattCharacteristic(
    U2F_CONTROL_POINT_LENGTH_CHARACTERISTIC_UUID, 0x15
)


def u2f_services(*characteristics):
    if not characteristics:
        characteristics = (WRITE, NOTIFY, CONTROL_POINT_LENGTH)
    return [GattService(U2F_SERVICE_UUID, tuple(characteristics))]


class _FakeTimer(TimerHandle):
    def __init__(self, when, delay, fn):
        self.when = when
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Scheduler driven manually by advancing a fake clock."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def schedule(self, delay, fn):
        timer = _FakeTimer(self.now + delay, delay, fn)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        self.now += seconds
        while True:
            due = [t for t in self.pending if t.when <= self.now]
            if not due:
                return
            timer = min(due, key=lambda t: t.when)
            timer.fired = True
            timer.fn()


class FakeTransport(GattTransport):
    """Scripted transport recording requests. Events are injected with emit()."""

    def __init__(self):
        self.calls = []
        self.callback = None
        self.accept = {}

    def _request(self, name, *args):
        self.calls.append((name,) + args)
        return self.accept.get(name, True)

    def names(self):
        return [c[0] for c in self.calls]

    def emit(self, event):
        # A closed transport delivers no further events
        if self.callback is not None:
            self.callback(event)

    def connect(self, address, callback):
        self.callback = callback
        return self._request("connect", address)

    def disconnect(self):
        self.calls.append(("disconnect",))

    def close(self):
        self.calls.append(("close",))
        self.callback = None

    def shutdown(self):
        self.calls.append(("shutdown",))

    def discover_services(self):
        return self._request("discover_services")

    def read_characteristic(self, characteristic):
        return self._request("read_characteristic", characteristic)

    def write_characteristic(self, characteristic, data):
        return self._request("write_characteristic", characteristic, data)

    def enable_notifications(self, characteristic):
        return self._request("enable_notifications", characteristic)

    def write_descriptor(self, characteristic, descriptor, value):
        return self._request("write_descriptor", characteristic, descriptor, value)

    def written(self):
        return [c[2] for c in self.calls if c[0] == "write_characteristic"]
