"""Deflate and inflate helpers for whole in-memory buffers."""

from __future__ import annotations

import zlib
from typing import Union

CHUNK = 16384
WINDOW_BITS = 15
GZIP_ENCODING = 16


def deflate_write(data: Union[bytes, bytearray], gzip: bool = False) -> bytes:
    """Compress ``data`` as a zlib stream, or a gzip stream when ``gzip``."""
    wbits = WINDOW_BITS | GZIP_ENCODING if gzip else WINDOW_BITS
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, wbits, 8)
    return compressor.compress(bytes(data)) + compressor.flush(zlib.Z_FINISH)


def inflate_read(data: Union[bytes, bytearray], gzip: bool = False) -> bytes:
    """Decompress a zlib stream, or a raw deflate stream when ``gzip``.

    Raises ``zlib.error`` for corrupt data or a stream that does not end.
    """
    wbits = -zlib.MAX_WBITS if gzip else zlib.MAX_WBITS
    decompressor = zlib.decompressobj(wbits)
    out = decompressor.decompress(bytes(data))
    if not decompressor.eof:
        raise zlib.error("incomplete or truncated compressed stream")
    return out