from __future__ import annotations

import base64
import binascii
import logging
from enum import IntEnum
from typing import TYPE_CHECKING

from .exceptions import DecodeError, MalformedFraming

if TYPE_CHECKING:  # pragma: no cover
    from typing import Protocol

    class SupportsWrite(Protocol):
        def write(self, __b: bytes) -> object: ...


class ChunkedState(IntEnum):
    """States of the chunked transfer-coding decoder."""

    CHUNK_HEADER = 0
    CHUNK_DATA = 1
    CHUNK_DATA_END = 2
    DONE = 3


HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")

# A chunk size with more hex digits than this can't be a real chunk.
MAX_CHUNK_SIZE_DIGITS = 16


class ChunkedDecoder:
    """This decoder removes ``Transfer-Encoding: chunked`` framing from a body.

    Raw bytes are given to :meth:`write` in whatever sizes they were read;
    they don't need to line up with chunk boundaries.  Every complete chunk
    payload is passed on to ``underlying.write()``, and the decoder stops
    consuming data as soon as it sees the last (zero-sized) chunk.  Trailers
    after the last chunk are never required and are ignored.

    A chunk payload is only passed on once the whole payload and the CRLF
    that follows it have arrived, so the pending buffer never holds a
    complete chunk.

    :param underlying: object with a ``write(bytes)`` method that receives the
                       decoded payloads.
    :param max_header_size: longest chunk-size line (including any chunk
                            extensions) we are willing to buffer while
                            waiting for its CRLF.
    """

    def __init__(self, underlying: SupportsWrite, max_header_size: int = 4096) -> None:
        self.logger = logging.getLogger(__name__)
        self.underlying = underlying
        self.max_header_size = max_header_size

        self.state = ChunkedState.CHUNK_HEADER
        self.buffer = bytearray()
        self.chunk_size = 0

        # Sum of all payload sizes emitted so far.
        self.total_length = 0

    @property
    def done(self) -> bool:
        """Whether the last chunk has been seen."""
        return self.state == ChunkedState.DONE

    def _error(self, msg: str, offset: int) -> MalformedFraming:
        self.logger.warning(msg)
        e = MalformedFraming(msg)
        e.offset = offset
        return e

    def write(self, data: bytes) -> int:
        if self.state == ChunkedState.DONE:
            self.logger.debug("Ignoring %d bytes after the last chunk", len(data))
            return 0

        buffer = self.buffer
        buffer += data
        state = self.state
        pos = 0

        while state != ChunkedState.DONE:
            if state == ChunkedState.CHUNK_HEADER:
                eol = buffer.find(b"\r\n", pos)
                if eol == -1:
                    if len(buffer) - pos > self.max_header_size:
                        raise self._error("Chunk header exceeds %d bytes" % self.max_header_size, pos)
                    break
                if eol - pos > self.max_header_size:
                    raise self._error("Chunk header exceeds %d bytes" % self.max_header_size, pos)

                line = bytes(buffer[pos:eol])
                digits = 0
                while digits < len(line) and line[digits] in HEX_DIGITS:
                    digits += 1

                if digits == 0:
                    raise self._error("Invalid chunk header %r" % line[:32], pos)
                if digits > MAX_CHUNK_SIZE_DIGITS:
                    raise self._error("Chunk size %r is too large" % line[:digits], pos)
                if b"\n" in line:
                    raise self._error("Found bare LF in chunk header %r" % line[:32], pos)

                self.chunk_size = int(line[:digits], 16)
                pos = eol + 2

                if self.chunk_size == 0:
                    self.logger.debug("Found last chunk, %d bytes decoded", self.total_length)
                    state = ChunkedState.DONE
                else:
                    self.logger.debug("Found chunk of %d bytes", self.chunk_size)
                    state = ChunkedState.CHUNK_DATA

            elif state == ChunkedState.CHUNK_DATA:
                # Wait for the payload and its terminating CRLF.
                if len(buffer) - pos < self.chunk_size + 2:
                    break

                end = pos + self.chunk_size
                self.underlying.write(bytes(buffer[pos:end]))
                self.total_length += self.chunk_size
                pos = end
                state = ChunkedState.CHUNK_DATA_END

            elif state == ChunkedState.CHUNK_DATA_END:
                if buffer[pos : pos + 2] != b"\r\n":
                    raise self._error("Did not find CRLF at end of chunk (found %r)" % bytes(buffer[pos : pos + 2]), pos)
                pos += 2
                state = ChunkedState.CHUNK_HEADER

            else:  # pragma: no cover (error case)
                raise self._error("Reached an unknown state %d" % state, pos)

        if state == ChunkedState.DONE:
            del buffer[:]
        else:
            del buffer[:pos]

        self.state = state
        return len(data)

    def finalize(self) -> None:
        if self.state != ChunkedState.DONE:
            raise self._error(
                "Chunked body ended before the last chunk (%d bytes pending)" % len(self.buffer), len(self.buffer)
            )

    def __repr__(self) -> str:
        return "{}(state={!r}, total_length={!r})".format(self.__class__.__name__, self.state, self.total_length)


class Base64Decoder:
    """This object provides an interface to decode a stream of Base64 data.  It
    is instantiated with an "underlying object", and whenever a write()
    operation is performed, it will decode the incoming data as Base64, and
    call write() on the underlying object.  This is primarily used for decoding
    form data encoded as Base64, but can be used for other purposes::

        from entity_parser.decoders import Base64Decoder
        fd = open("notb64.txt", "wb")
        decoder = Base64Decoder(fd)
        try:
            decoder.write("Zm9vYmFy")       # "foobar" in Base64
            decoder.finalize()
        finally:
            decoder.close()

        # The contents of "notb64.txt" should be "foobar".

    :param underlying: the underlying object to pass writes to
    """

    def __init__(self, underlying: SupportsWrite) -> None:
        self.cache = bytearray()
        self.underlying = underlying

    def write(self, data: bytes) -> int:
        length = len(data)

        # Line breaks are allowed between base64 lines; they'd break our
        # multiple-of-4 slicing, so drop them up front.
        data = data.translate(None, b"\r\n")

        # Prepend any cache info to our data.
        if len(self.cache) > 0:
            data = bytes(self.cache) + data

        # Slice off a string that's a multiple of 4.
        decode_len = (len(data) // 4) * 4
        val = data[:decode_len]

        # Decode and write, if we have any.
        if len(val) > 0:
            try:
                decoded = base64.b64decode(val)
            except binascii.Error:
                raise DecodeError("There was an error raised while decoding base64-encoded data.")

            self.underlying.write(decoded)

        # Get the remaining bytes and save in our cache.
        remaining_len = len(data) % 4
        if remaining_len > 0:
            self.cache[:] = data[-remaining_len:]
        else:
            self.cache[:] = b""

        # Return the length of the data to indicate no error.
        return length

    def close(self) -> None:
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        if len(self.cache) > 0:
            raise DecodeError(
                "There are %d bytes remaining in the Base64Decoder cache when finalize() is called" % len(self.cache)
            )

        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(underlying={self.underlying!r})"


class QuotedPrintableDecoder:
    """This object provides an interface to decode a stream of quoted-printable
    data.  It is instantiated with an "underlying object", in the same manner
    as the :class:`Base64Decoder` above.

    :param underlying: the underlying object to pass writes to
    """

    def __init__(self, underlying: SupportsWrite) -> None:
        self.cache = b""
        self.underlying = underlying

    def write(self, data: bytes) -> int:
        # Prepend any cache info to our data.
        if len(self.cache) > 0:
            data = self.cache + data

        # If the last 2 characters have an '=' sign in it, then we won't be
        # able to decode the encoded value and we'll need to save it for the
        # next decoding step.
        if data[-2:].find(b"=") != -1:
            enc, rest = data[:-2], data[-2:]
        else:
            enc = data
            rest = b""

        # Encode and write, if we have data.
        if len(enc) > 0:
            self.underlying.write(binascii.a2b_qp(enc))

        # Save remaining in cache.
        self.cache = rest
        return len(data)

    def close(self) -> None:
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        # If we have a cache, write and then remove it.
        if len(self.cache) > 0:
            self.underlying.write(binascii.a2b_qp(self.cache))
            self.cache = b""

        # Finalize our underlying stream.
        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(underlying={self.underlying!r})"
