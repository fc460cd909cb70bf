# SPDX-License-Identifier: Apache-2.0
#
# Copyright (C) 2024, ARM Limited and contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may
# not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""
32-bit checksum used to check the integrity of packaged kernel modules.

This is the big-endian (non-reflected) CRC-32 with the 0x04C11DB7 polynomial,
an initial value of all ones and no final inversion. It is not the same value
as :func:`zlib.crc32`, and bundles written by other tools rely on that exact
flavor.

:func:`zlib.crc32` implements the reflected variant of the same polynomial.
Feeding it bit-reversed bytes yields the bit-reversed register of the
non-reflected variant, so modules of tens of megabytes are not checksummed
one byte at a time in Python.
"""

import zlib

CRC_POLYNOMIAL = 0x04C11DB7
CRC_INIT = 0xFFFFFFFF

_CHUNK_SIZE = 1024 * 1024


def _reverse_bits(x, width):
    return int(f'{x:0{width}b}'[::-1], 2)


_REVERSED_BYTES = bytes(
    _reverse_bits(byte, 8)
    for byte in range(256)
)


def compute_crc_from_buffer(buf, crc=CRC_INIT):
    """
    Compute the checksum of a bytes-like object.

    :param buf: Data to checksum.
    :type buf: bytes or bytearray or memoryview

    :param crc: Running value, to compute a checksum over several buffers.
        Leave to default to start a new computation.
    :type crc: int
    """
    # zlib inverts the register on the way in and on the way out
    reflected = zlib.crc32(
        bytes(buf).translate(_REVERSED_BYTES),
        _reverse_bits(crc, 32) ^ 0xFFFFFFFF,
    )
    return _reverse_bits(reflected ^ 0xFFFFFFFF, 32)


def compute_crc(path):
    """
    Compute the checksum of a file.

    An empty file has a checksum of ``0``, so that it can never be mistaken
    for a valid module.
    """
    crc = CRC_INIT
    size = 0
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            crc = compute_crc_from_buffer(chunk, crc)

    return crc if size else 0

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
