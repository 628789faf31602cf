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

"""Verification of U2F response signatures."""

from __future__ import annotations

from .u2f import Authenticate, AuthenticateResponse, Register, RegisterResponse
from .utils import sha256
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from typing import Optional, Tuple, Union
import struct
import logging

logger = logging.getLogger(__name__)


# SubjectPublicKeyInfo header for an uncompressed point on P-256
P256_SPKI_PREFIX = bytes.fromhex(
    "3059301306072a8648ce3d020106082a8648ce3d030107034200"
)


def extract_public_key(certificate: bytes) -> bytes:
    """Extracts the P-256 public key point from a DER encoded certificate.

    :param certificate: The DER encoded X.509 certificate.
    :return: The 65 byte uncompressed public key point.
    """
    cert = x509.load_der_x509_certificate(certificate, default_backend())
    spki = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if not spki.startswith(P256_SPKI_PREFIX):
        raise ValueError("Certificate key is not a P-256 uncompressed point")
    point = spki[len(P256_SPKI_PREFIX) : len(P256_SPKI_PREFIX) + 65]
    if len(point) != 65:
        raise ValueError("Truncated public key")
    return point


def decode_signature(signature: bytes) -> Tuple[int, int]:
    """Decodes a DER encoded ECDSA signature into its (r, s) components."""
    return decode_dss_signature(signature)


def register_digest(register: Register, response: RegisterResponse) -> bytes:
    return sha256(
        b"\0"
        + register.application_parameter
        + register.challenge
        + response.key_handle
        + response.public_key
    )


def authenticate_digest(
    authenticate: Authenticate, response: AuthenticateResponse
) -> bytes:
    return sha256(
        authenticate.application_parameter
        + struct.pack(">BI", response.user_presence, response.counter)
        + authenticate.challenge
    )


def _verify(public_key: bytes, digest: bytes, signature: bytes) -> bool:
    try:
        r, s = decode_signature(signature)
        key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), public_key)
        key.verify(
            encode_dss_signature(r, s), digest, ec.ECDSA(Prehashed(hashes.SHA256()))
        )
        return True
    except InvalidSignature:
        logger.debug("Signature mismatch")
    except (ValueError, TypeError) as e:
        logger.debug("Unable to verify signature: %s", e)
    return False


def check_register_signature(
    register: Register,
    response: RegisterResponse,
    public_key: Optional[bytes] = None,
) -> bool:
    """Checks the attestation signature of a registration response.

    :param register: The request the response was given for.
    :param response: The parsed registration response.
    :param public_key: Optional attestation public key point. If omitted, the
        key is taken from the attestation certificate in the response.
    :return: True if the signature is valid.
    """
    if public_key is None:
        try:
            public_key = extract_public_key(response.certificate)
        except (ValueError, UnsupportedAlgorithm) as e:
            logger.debug("Cannot verify signature, certificate not handled: %s", e)
            return False
    return _verify(public_key, register_digest(register, response), response.signature)


def check_authenticate_signature(
    authenticate: Authenticate,
    response: AuthenticateResponse,
    registration: Union[RegisterResponse, bytes],
) -> bool:
    """Checks the signature of an authentication response.

    :param authenticate: The request the response was given for.
    :param response: The parsed authentication response.
    :param registration: The registration response of the credential, or its
        65 byte public key point.
    :return: True if the signature is valid.
    """
    if isinstance(registration, RegisterResponse):
        public_key = registration.public_key
    else:
        public_key = registration
    return _verify(
        public_key, authenticate_digest(authenticate, response), response.signature
    )
