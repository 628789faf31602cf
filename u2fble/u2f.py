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

from .utils import ByteBuffer
from dataclasses import dataclass
from enum import IntEnum, unique
from typing import Optional, Tuple, TYPE_CHECKING
import struct
import logging

if TYPE_CHECKING:
    from .ble import U2fBleDevice

logger = logging.getLogger(__name__)


RESERVED_REGISTER = 0x05
DER_SEQUENCE = 0x30
DER_LENGTH_1 = 0x81
DER_LENGTH_2 = 0x82


@unique
class APDU(IntEnum):
    """APDU response codes."""

    OK = 0x9000
    USE_NOT_SATISFIED = 0x6985
    WRONG_DATA = 0x6A80


@unique
class INS(IntEnum):
    REGISTER = 0x01
    AUTHENTICATE = 0x02
    VERSION = 0x03


P1_ENFORCE_USER_PRESENCE = 0x03
P1_CHECK_ONLY = 0x07


class ApduError(Exception):
    """An Exception thrown when a response APDU doesn't have an OK (0x9000)
    status.

    :param code: APDU response code.
    :param data: APDU response body.

    """

    def __init__(self, code: int, data: bytes = b""):
        super().__init__(f"APDU error: 0x{code:04X}")
        self.code = code
        self.data = data

    def __repr__(self):
        return f"APDU error: 0x{self.code:04X} {len(self.data):d} bytes of data"


def pack_apdu(cla: int = 0, ins: int = 0, p1: int = 0, p2: int = 0, data: bytes = b""):
    return struct.pack(">BBBBBH", cla, ins, p1, p2, 0, len(data)) + data + b"\0\0"


def _check_param(name: str, value: bytes) -> None:
    if len(value) != 32:
        raise ValueError(f"Invalid {name} length: {len(value)}")


def _read_der_sequence(reader: ByteBuffer, long_form: bool) -> bytes:
    header = reader.read(2)
    if header[0] != DER_SEQUENCE:
        raise ValueError("Invalid DER sequence")
    length = header[1]
    if length >= 0x80:
        if not long_form:
            raise ValueError("Unsupported DER length")
        if length == DER_LENGTH_1:
            len_bytes = reader.read(1)
            length = len_bytes[0]
        elif length == DER_LENGTH_2:
            len_bytes = reader.read(2)
            length = struct.unpack(">H", len_bytes)[0]
        else:
            raise ValueError("Invalid DER length")
        header += len_bytes
    return header + reader.read(length)


@dataclass(frozen=True)
class Register:
    """A U2F registration request.

    :ivar challenge: SHA256 hash of the client data.
    :ivar application_parameter: SHA256 hash of the application identity.
    """

    challenge: bytes
    application_parameter: bytes

    def __post_init__(self):
        _check_param("challenge", self.challenge)
        _check_param("application parameter", self.application_parameter)

    def __bytes__(self):
        return pack_apdu(
            ins=INS.REGISTER, data=self.challenge + self.application_parameter
        )


@dataclass(frozen=True)
class Authenticate:
    """A U2F authentication request.

    :ivar challenge: SHA256 hash of the client data.
    :ivar application_parameter: SHA256 hash of the application identity.
    :ivar key_handle: Key handle returned at registration.
    :ivar check_only: Only check whether the key handle is valid.
    """

    challenge: bytes
    application_parameter: bytes
    key_handle: bytes
    check_only: bool = False

    def __post_init__(self):
        _check_param("challenge", self.challenge)
        _check_param("application parameter", self.application_parameter)
        if len(self.key_handle) > 0xFF:
            raise ValueError(f"Invalid key handle length: {len(self.key_handle)}")

    def __bytes__(self):
        p1 = P1_CHECK_ONLY if self.check_only else P1_ENFORCE_USER_PRESENCE
        data = (
            self.challenge
            + self.application_parameter
            + struct.pack(">B", len(self.key_handle))
            + self.key_handle
        )
        return pack_apdu(ins=INS.AUTHENTICATE, p1=p1, data=data)


@dataclass(frozen=True)
class RegisterResponse:
    """Response data of a U2F registration.

    :ivar public_key: 65 byte uncompressed P-256 point of the new credential.
    :ivar key_handle: Binary key handle of the credential.
    :ivar certificate: Attestation certificate, DER encoded.
    :ivar signature: DER encoded ECDSA attestation signature.
    """

    public_key: bytes
    key_handle: bytes
    certificate: bytes
    signature: bytes

    @classmethod
    def parse(cls, data: bytes) -> RegisterResponse:
        """Parses a registration response.

        Any data following the signature, such as a status word, is ignored.

        :param data: The binary response.
        :return: The parsed response.
        """
        reader = ByteBuffer(data)
        if reader.unpack("B") != RESERVED_REGISTER:
            raise ValueError("Invalid reserved byte")
        public_key = reader.read(65)
        key_handle = reader.read(reader.unpack("B"))
        certificate = _read_der_sequence(reader, long_form=True)
        signature = _read_der_sequence(reader, long_form=False)
        return cls(public_key, key_handle, certificate, signature)

    def __bytes__(self):
        return (
            struct.pack(">B", RESERVED_REGISTER)
            + self.public_key
            + struct.pack(">B", len(self.key_handle))
            + self.key_handle
            + self.certificate
            + self.signature
        )


@dataclass(frozen=True)
class AuthenticateResponse:
    """Response data of a U2F authentication.

    :ivar user_presence: User presence byte.
    :ivar counter: Signature counter.
    :ivar signature: DER encoded ECDSA signature.
    """

    user_presence: int
    counter: int
    signature: bytes

    @classmethod
    def parse(cls, data: bytes) -> AuthenticateResponse:
        """Parses an authentication response.

        :param data: The binary response.
        :return: The parsed response.
        """
        reader = ByteBuffer(data)
        user_presence = reader.unpack("B")
        counter = reader.unpack(">I")
        signature = _read_der_sequence(reader, long_form=False)
        return cls(user_presence, counter, signature)

    def __bytes__(self):
        return struct.pack(">BI", self.user_presence, self.counter) + self.signature


def split_status(response: bytes) -> Tuple[bytes, int]:
    """Splits the trailing status word from a response APDU."""
    if len(response) < 2:
        raise ValueError("Response too short")
    return response[:-2], struct.unpack(">H", response[-2:])[0]


class U2fClient:
    """Blocking U2F client for a BLE authenticator.

    :param device: An initialized U2fBleDevice.
    :param timeout: Optional limit, in seconds, to wait for each exchange. The
        device enforces its own timeout regardless.
    """

    def __init__(self, device: U2fBleDevice, timeout: Optional[float] = None):
        self.device = device
        self.timeout = timeout

    def send_apdu(self, apdu: bytes) -> bytes:
        """Sends a request APDU and checks the status of the response.

        :param apdu: The serialized request.
        :return: The response data of a successful request.
        :raise: ApduError
        """
        response = self.device.exchange_apdu(apdu).result(self.timeout)
        data, status = split_status(response)
        if status != APDU.OK:
            raise ApduError(status, data)
        return data

    def get_version(self) -> str:
        """Get the U2F version implemented by the authenticator.

        :return: A U2F version string.
        """
        return self.send_apdu(pack_apdu(ins=INS.VERSION)).decode()

    def register(self, challenge: bytes, app_param: bytes) -> RegisterResponse:
        """Register a new U2F credential.

        :param challenge: SHA256 hash of the ClientData used for the request.
        :param app_param: SHA256 hash of the app ID used for the request.
        :return: The registration response from the authenticator.
        """
        request = Register(challenge, app_param)
        logger.debug("Sending %s", request)
        return RegisterResponse.parse(self.send_apdu(bytes(request)))

    def authenticate(
        self,
        challenge: bytes,
        app_param: bytes,
        key_handle: bytes,
        check_only: bool = False,
    ) -> AuthenticateResponse:
        """Authenticate a previously registered credential.

        :param challenge: SHA256 hash of the ClientData used for the request.
        :param app_param: SHA256 hash of the app ID used for the request.
        :param key_handle: The binary key handle of the credential.
        :param check_only: True to send a "check-only" request, which is used to
            determine if a key handle is known.
        :return: The authentication response from the authenticator.
        """
        request = Authenticate(challenge, app_param, key_handle, check_only)
        logger.debug("Sending %s", request)
        return AuthenticateResponse.parse(self.send_apdu(bytes(request)))
