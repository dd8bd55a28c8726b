"""Store-only ZIP writer.

Produces a standard archive (local headers, central directory, end record)
with no compression so exports need nothing beyond the standard library.
"""

from __future__ import annotations

import struct
from datetime import datetime
from typing import Iterable, Mapping, Union

Content = Union[str, bytes]

ZIP_VERSION = 20
UTF8_FLAG = 0x0800
LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06054B50


def _build_crc_table() -> tuple[int, ...]:
    table = []
    for index in range(256):
        value = index
        for _ in range(8):
            value = (0xEDB88320 ^ (value >> 1)) if value & 1 else value >> 1
        table.append(value)
    return tuple(table)


CRC_TABLE = _build_crc_table()


def crc32(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def dos_date_time(moment: datetime) -> tuple[int, int]:
    year = min(2107, max(1980, moment.year))
    date = ((year - 1980) << 9) | (moment.month << 5) | moment.day
    time = (moment.hour << 11) | (moment.minute << 5) | (moment.second // 2)
    return date, time


def build_zip_archive(
    files: Mapping[str, Content] | Iterable[tuple[str, Content]],
    now: datetime | None = None,
) -> bytes:
    """Pack ``(name, content)`` pairs into ZIP bytes. Text content is UTF-8 encoded."""
    entries = files.items() if isinstance(files, Mapping) else files
    date, time = dos_date_time(now or datetime.now())

    body = bytearray()
    central = bytearray()
    count = 0
    for name, content in entries:
        name_bytes = name.encode("utf-8")
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        checksum = crc32(data)
        offset = len(body)

        body += struct.pack(
            "<IHHHHHIIIHH",
            LOCAL_HEADER_SIGNATURE,
            ZIP_VERSION,
            UTF8_FLAG,
            0,
            time,
            date,
            checksum,
            len(data),
            len(data),
            len(name_bytes),
            0,
        )
        body += name_bytes
        body += data

        central += struct.pack(
            "<IHHHHHHIIIHHHHHII",
            CENTRAL_HEADER_SIGNATURE,
            ZIP_VERSION,
            ZIP_VERSION,
            UTF8_FLAG,
            0,
            time,
            date,
            checksum,
            len(data),
            len(data),
            len(name_bytes),
            0,
            0,
            0,
            0,
            0,
            offset,
        )
        central += name_bytes
        count += 1

    end_record = struct.pack(
        "<IHHHHIIH",
        END_OF_CENTRAL_DIRECTORY_SIGNATURE,
        0,
        0,
        count,
        count,
        len(central),
        len(body),
        0,
    )
    return bytes(body + central + end_record)
