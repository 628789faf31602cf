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

"""
Connects to a U2F authenticator over BLE, registers a credential and then
authenticates with it, verifying the signatures of both responses.

Usage: u2f_ble.py <address>
"""
from u2fble.ble import open_device
from u2fble.crypto import check_authenticate_signature, check_register_signature
from u2fble.u2f import Authenticate, Register, U2fClient
from u2fble.utils import sha256
import logging
import sys


logging.basicConfig(level=logging.DEBUG)

if len(sys.argv) < 2:
    print(__doc__)
    sys.exit(1)

chal = sha256(b"AAA")
appid = sha256(b"BBB")

with open_device(sys.argv[1]) as dev:
    dev.connect().result()
    print("chunk size:", dev.chunk_size)

    client = U2fClient(dev)
    print("version:", client.get_version())

    print("Touch your authenticator to register...")
    reg = client.register(chal, appid)
    print("register:", reg)

    if not check_register_signature(Register(chal, appid), reg):
        print("Register message verify FAILED")
        sys.exit(1)
    print("Register message verify OK")

    print("Touch your authenticator to authenticate...")
    auth = client.authenticate(chal, appid, reg.key_handle)
    print("authenticate result: ", auth)

    if not check_authenticate_signature(
        Authenticate(chal, appid, reg.key_handle), auth, reg
    ):
        print("Authenticate message verify FAILED")
        sys.exit(1)
    print("Authenticate message verify OK")
