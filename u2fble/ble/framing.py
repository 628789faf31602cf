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

"""Fragmentation of U2F messages into BLE characteristic sized chunks.

A message is sent as an initialization fragment carrying a command byte and
the total payload length, followed by continuation fragments each carrying a
sequence number::

    INIT: CMD(1) | LEN(2, big endian) | DATA(chunk_size - 3)
    CONT: SEQ(1) | DATA(chunk_size - 1)
"""

from __future__ import annotations

from ..errors import ProtocolViolation
from enum import Enum, IntEnum, unique
from typing import List, Optional, Sequence
import struct


TYPE_INIT = 0x80
MIN_CHUNK_SIZE = 8


@unique
class BLECMD(IntEnum):
    PING = 0x81
    KEEPALIVE = 0x82
    MSG = 0x83
    ERROR = 0xBF


@unique
class CHUNK(Enum):
    PING = "ping"
    KEEPALIVE = "keepalive"
    MSG = "msg"
    ERROR = "error"
    CONTINUATION = "continuation"
    UNKNOWN = "unknown"


_CHUNK_BY_CMD = {
    BLECMD.PING: CHUNK.PING,
    BLECMD.KEEPALIVE: CHUNK.KEEPALIVE,
    BLECMD.MSG: CHUNK.MSG,
    BLECMD.ERROR: CHUNK.ERROR,
}


def classify(fragment: bytes) -> CHUNK:
    """Determines the type of a received fragment from its first byte.

    :param fragment: A fragment, as received in a single notification.
    :return: The type of the fragment.
    """
    if not fragment:
        return CHUNK.UNKNOWN
    if not fragment[0] & TYPE_INIT:
        return CHUNK.CONTINUATION
    try:
        return _CHUNK_BY_CMD[BLECMD(fragment[0])]
    except ValueError:
        return CHUNK.UNKNOWN


def split(cmd: int, data: bytes, chunk_size: int) -> List[bytes]:
    """Splits a message into fragments of at most chunk_size bytes.

    :param cmd: The command byte of the initialization fragment.
    :param data: The message payload.
    :param chunk_size: The maximum size of a single fragment.
    :return: The fragments, in transmission order.
    """
    if chunk_size < MIN_CHUNK_SIZE:
        raise ValueError(f"Invalid chunk size: {chunk_size}")
    if len(data) > 0xFFFF:
        raise ValueError(f"Message too long: {len(data)} bytes")

    header = struct.pack(">BH", cmd, len(data))
    fragments = []
    remaining = data
    seq = 0
    while remaining or not fragments:
        size = chunk_size - len(header)
        body, remaining = remaining[:size], remaining[size:]
        fragments.append(header + body)
        header = struct.pack(">B", seq & 0xFF)
        seq += 1
    return fragments


def join(cmd: int, fragments: Sequence[bytes]) -> Optional[bytes]:
    """Reassembles a message from the fragments received so far.

    :param cmd: The command byte expected in the initialization fragment.
    :param fragments: The fragments received, in order.
    :return: The message payload, or None if more fragments are needed.
    """
    body_parts = []
    remaining = 0
    seq = 0
    for i, fragment in enumerate(fragments):
        if i == 0:
            if len(fragment) < 3:
                raise ProtocolViolation("Fragment too short")
            r_cmd, remaining = struct.unpack_from(">BH", fragment)
            if r_cmd != cmd:
                raise ProtocolViolation("Unexpected command")
            body = fragment[3:]
        else:
            if not fragment:
                raise ProtocolViolation("Fragment too short")
            if fragment[0] != seq & 0xFF:
                raise ProtocolViolation("Unexpected sequence")
            seq += 1
            body = fragment[1:]
        remaining -= len(body)
        if remaining < 0:
            raise ProtocolViolation("Invalid data length")
        body_parts.append(body)

    if not fragments or remaining > 0:
        return None
    return b"".join(body_parts)
