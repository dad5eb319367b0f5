from __future__ import annotations

import logging
import os
import re
from email.message import Message
from email.utils import collapse_rfc2231_value
from enum import IntEnum
from numbers import Number
from typing import TYPE_CHECKING, NamedTuple
from urllib.parse import unquote_to_bytes

import orjson

from .buffer import SpooledBuffer
from .decoders import Base64Decoder, QuotedPrintableDecoder
from .exceptions import JSONParseError, MultipartParseError, ParseError, QuerystringParseError

if TYPE_CHECKING:  # pragma: no cover
    from io import BufferedRandom, BytesIO
    from typing import Any, Protocol, TypedDict

    from .entity import RequestContext

    class ParserConfig(TypedDict, total=False):
        CHARSET: str
        MAX_BODY_SIZE: float
        MAX_MEMORY_FILE_SIZE: int
        MAX_HEADER_SIZE: int
        UPLOAD_DIR: str | bytes | None
        UPLOAD_KEEP_EXTENSIONS: bool
        UPLOAD_DELETE_TMP: bool
        UPLOAD_ERROR_ON_BAD_CTE: bool
        STRICT_PARSING: bool

    class ParserProtocol(Protocol):
        def add(self, data: bytes) -> object: ...

        def finalize(self) -> tuple[list[tuple[str, str]], list[Any]]: ...

    class PartWriter(Protocol):
        def write(self, data: bytes) -> int: ...

        def finalize(self) -> None: ...


class MultipartState(IntEnum):
    """States of the multipart/form-data parser."""

    PREAMBLE = 0
    HEADERS = 1
    PART_DATA = 2
    END = 3


# fmt: off
# Characters allowed in a header name, per RFC7230 3.2.6.
TOKEN_CHARS_SET = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
    b"0123456789"
    b"!#$%&'*+-.^_`|~")
# fmt: on


def parse_options_header(value: str | bytes | None) -> tuple[str, dict[str, str]]:
    """
    Parses a Content-Type header into a value in the following format:
        (content_type, {parameters})
    """
    # Uses email.message.Message to parse the header as described in PEP 594.
    # Ref: https://peps.python.org/pep-0594/#cgi
    if not value:
        return ("", {})

    # If we are passed bytes, we assume that it conforms to WSGI, encoding in latin-1.
    if isinstance(value, bytes):  # pragma: no cover
        value = value.decode("latin-1")

    # If we have no options, return the string as-is.
    if ";" not in value:
        return (value.lower().strip(), {})

    message = Message()
    message["content-type"] = value
    params = message.get_params()
    # If there were no parameters, this would have already returned above
    assert params, "At least the content type value should be present"
    ctype = params.pop(0)[0].lower()
    options: dict[str, str] = {}
    for key, param in params:
        # RFC 2231 values come back as (charset, language, value).
        if isinstance(param, tuple):
            param = collapse_rfc2231_value(param)

        # If the value is a filename, we need to fix a bug on IE6 that sends
        # the full file path instead of the filename.
        if key == "filename":
            if param[1:3] == ":\\" or param[:2] == "\\\\":
                param = param.split("\\")[-1]
        options[key] = param
    return ctype, options


class ParseResult(NamedTuple):
    """What a parser returns from ``finalize()``: the form parameters as an
    ordered list of ``(name, value)`` pairs (duplicates kept), and the list of
    :class:`Upload` objects.
    """

    params: list[tuple[str, str]]
    uploads: list[Upload]


class Field:
    """
    Collects the value of a multipart field that isn't a file.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._value: list[bytes] = []

    def write(self, data: bytes) -> int:
        self._value.append(data)
        return len(data)

    def finalize(self) -> None:
        pass

    @property
    def field_name(self) -> str:
        return self._name

    @property
    def value(self) -> bytes:
        return b"".join(self._value)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(field_name={self.field_name!r})"


class Upload:
    """
    This class represents an uploaded file.  The file's content lives in a
    :class:`SpooledBuffer`, so small uploads stay in memory and larger ones
    are moved to a temporary file on disk.

    Uploads are owned by whoever receives the :class:`ParseResult`; call
    :meth:`close` once you're done with one.
    """

    def __init__(self, field_name: str, filename: str, headers: list[tuple[str, str]], storage: SpooledBuffer) -> None:
        self._field_name = field_name
        self._filename = filename
        self._headers = headers
        self._storage = storage

    @property
    def field_name(self) -> str:
        """
        The form field associated with this upload.
        """
        return self._field_name

    @property
    def filename(self) -> str:
        """
        The file name given by the client.
        """
        return self._filename

    @property
    def headers(self) -> list[tuple[str, str]]:
        """
        The headers of this upload's part, in the order they were sent.
        """
        return self._headers

    @property
    def content_type(self) -> str | None:
        return _get_header(self._headers, "Content-Type")

    @property
    def size(self) -> int:
        return self._storage.size

    @property
    def file(self) -> BytesIO | BufferedRandom:
        """
        The file object holding the upload's content.
        """
        return self._storage.file_object

    @property
    def tempname(self) -> str | None:
        """
        Path of the temporary file holding the content, or None while the
        upload is still in memory.
        """
        return self._storage.actual_file_name

    def write(self, data: bytes) -> int:
        return self._storage.write(data)

    def finalize(self) -> None:
        self._storage.rewind()

    def close(self) -> None:
        self._storage.close()

    def __repr__(self) -> str:
        return "{}(field_name={!r}, filename={!r}, size={!r})".format(
            self.__class__.__name__, self.field_name, self.filename, self.size
        )


def _get_header(headers: list[tuple[str, str]], name: str) -> str | None:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


class BaseParser:
    """
    This class implements the parts shared by all body parsers: merging the
    registration options over :attr:`DEFAULT_CONFIG`, enforcing
    ``MAX_BODY_SIZE``, and decoding bytes with the configured charset.

    A parser is constructed with the request context and the options given at
    registration time.  Body bytes are then fed to :meth:`add` in arbitrarily
    sized pieces, and :meth:`finalize` is called once at the end to obtain the
    :class:`ParseResult`.  Subclasses implement :meth:`_internal_add` and
    :meth:`finalize`.
    """

    DEFAULT_CONFIG: ParserConfig = {
        "CHARSET": "utf-8",
        "MAX_BODY_SIZE": float("inf"),
        "MAX_MEMORY_FILE_SIZE": 1 * 1024 * 1024,
        "MAX_HEADER_SIZE": 8192,
        "UPLOAD_DIR": None,
        "UPLOAD_KEEP_EXTENSIONS": False,
        "UPLOAD_DELETE_TMP": True,
        "UPLOAD_ERROR_ON_BAD_CTE": False,
        "STRICT_PARSING": False,
    }

    def __init__(self, context: RequestContext | None = None, options: ParserConfig | None = None) -> None:
        self.logger = logging.getLogger(__name__)
        self.context = context

        self.config: ParserConfig = self.DEFAULT_CONFIG.copy()
        if options:
            self.config.update(options)

        max_size = self.config["MAX_BODY_SIZE"]
        if not isinstance(max_size, Number) or max_size < 1:
            raise ValueError("MAX_BODY_SIZE must be a positive number, not %r" % max_size)
        self.max_size: int | float = max_size
        self._current_size = 0

    def add(self, data: bytes) -> int:
        """Feed body bytes to the parser.  Returns the number of bytes used,
        which is less than ``len(data)`` once ``MAX_BODY_SIZE`` is reached.
        """
        data_len = len(data)
        if (self._current_size + data_len) > self.max_size:
            # We truncate the length of data that we are to process.
            new_size = max(int(self.max_size - self._current_size), 0)
            self.logger.warning(
                "Current size is %d (max %d), so truncating data length from %d to %d",
                self._current_size,
                self.max_size,
                data_len,
                new_size,
            )
            data = data[:new_size]
            data_len = new_size

        self._current_size += data_len
        if data_len:
            self._internal_add(data)
        return data_len

    def _internal_add(self, data: bytes) -> None:
        pass  # pragma: no cover

    def finalize(self) -> ParseResult:
        return ParseResult([], [])

    def close(self) -> None:
        pass

    def _decode(self, value: bytes) -> str:
        return value.decode(self.config["CHARSET"], "replace")

    def _error(self, cls: type[ParseError], msg: str, offset: int) -> ParseError:
        self.logger.warning(msg)
        e = cls(msg)
        e.offset = offset
        return e

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


class OctetStreamParser(BaseParser):
    """
    The fallback parser, used when a request's content type doesn't match
    any registration.  The body is read (so it can be replayed) but its
    content is discarded, and the result is always empty.
    """

    def _internal_add(self, data: bytes) -> None:
        self.logger.debug("Discarding %d bytes", len(data))


class UrlEncodedParser(BaseParser):
    """
    This is a streaming parser for ``application/x-www-form-urlencoded``
    bodies.  Complete fields are decoded as soon as their separator arrives;
    only the trailing, possibly incomplete, field is kept in memory.

    Some details on how fields are treated:
        - Fields are separated by ``&`` or ``;``, and empty fields (e.g. from
          "foo=bar&&baz=asdf") are skipped.
        - ``+`` becomes a space, then percent-escapes are decoded, then the
          bytes are decoded with the ``CHARSET`` option.
        - A field without an equals sign (e.g. "...&name&...") gives a value
          of "", or raises a QuerystringParseError if ``STRICT_PARSING`` is
          set.
    """

    SPLIT_RE = re.compile(b"[&;]")

    def __init__(self, context: RequestContext | None = None, options: ParserConfig | None = None) -> None:
        super().__init__(context, options)
        self.strict_parsing = self.config["STRICT_PARSING"]

        self._buffer = bytearray()
        # Stream offset of the first byte in _buffer.
        self._offset = 0
        self._params: list[tuple[str, str]] = []

    def _internal_add(self, data: bytes) -> None:
        buffer = self._buffer
        buffer += data

        sep_pos = max(buffer.rfind(b"&"), buffer.rfind(b";"))
        if sep_pos == -1:
            return

        self._parse_fields(bytes(buffer[:sep_pos]))
        self._offset += sep_pos + 1
        del buffer[: sep_pos + 1]

    def _parse_fields(self, data: bytes) -> None:
        offset = self._offset
        for chunk in self.SPLIT_RE.split(data):
            if chunk:
                self._parse_field(chunk, offset)
            offset += len(chunk) + 1

    def _parse_field(self, chunk: bytes, offset: int) -> None:
        name, equals, value = chunk.partition(b"=")
        if not equals and self.strict_parsing:
            raise self._error(
                QuerystringParseError,
                "When strict_parsing is True, we require an equals sign in all field chunks. "
                "Did not find one in the chunk that starts at %d" % (offset,),
                offset,
            )
        self._params.append((self._unquote(name), self._unquote(value)))

    def _unquote(self, value: bytes) -> str:
        return self._decode(unquote_to_bytes(value.replace(b"+", b" ")))

    def finalize(self) -> ParseResult:
        if self._buffer:
            self._parse_fields(bytes(self._buffer))
            self._offset += len(self._buffer)
            del self._buffer[:]
        return ParseResult(self._params, [])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(strict_parsing={self.strict_parsing!r}, max_size={self.max_size!r})"


class MultiPartParser(BaseParser):
    """
    This class is a streaming ``multipart/form-data`` parser.  The boundary
    is taken from the ``boundary`` parameter of the request's content type
    unless one is passed explicitly.

    Each part's headers are collected in order.  Parts whose
    Content-Disposition has a ``filename`` become :class:`Upload` objects;
    all other parts become ``(name, value)`` params.  Part data encoded with
    a ``base64`` or ``quoted-printable`` Content-Transfer-Encoding is decoded
    on the fly.
    """

    def __init__(
        self,
        context: RequestContext | None = None,
        options: ParserConfig | None = None,
        boundary: bytes | str | None = None,
    ) -> None:
        super().__init__(context, options)

        if boundary is None and context is not None:
            _, params = parse_options_header(context.content_type)
            boundary = params.get("boundary")
        if not boundary:
            self.logger.warning("No boundary given")
            raise MultipartParseError("No boundary given")

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        self.boundary = boundary
        self.dash_boundary = b"--" + boundary
        self.delimiter = b"\r\n--" + boundary

        self.state = MultipartState.PREAMBLE
        self._buffer = bytearray()
        self._received = 0

        self._params: list[tuple[str, str]] = []
        self._uploads: list[Upload] = []
        self._part: Field | Upload | None = None
        self._writer: PartWriter | None = None

    def _internal_add(self, data: bytes) -> None:
        self._received += len(data)
        buffer = self._buffer
        buffer += data
        state = self.state
        pos = 0

        while pos < len(buffer):
            if state == MultipartState.PREAMBLE:
                i = buffer.find(self.dash_boundary, pos)
                if i == -1:
                    # Keep what could be the start of the boundary.
                    pos = max(pos, len(buffer) - len(self.dash_boundary) + 1)
                    break

                end = i + len(self.dash_boundary)
                if len(buffer) < end + 2:
                    pos = i
                    break

                if i > pos:
                    self.logger.debug("Skipping %d bytes of preamble", i - pos)

                tail = bytes(buffer[end : end + 2])
                if tail == b"\r\n":
                    state = MultipartState.HEADERS
                elif tail == b"--":
                    self.logger.debug("Found closing boundary before any part")
                    state = MultipartState.END
                else:
                    raise self._error(MultipartParseError, "Did not find CRLF at end of boundary (%d)" % (end,), end)
                pos = end + 2

            elif state == MultipartState.HEADERS:
                max_header_size = self.config["MAX_HEADER_SIZE"]
                if buffer.startswith(b"\r\n", pos):
                    block = b""
                    end = pos + 2
                else:
                    i = buffer.find(b"\r\n\r\n", pos)
                    if i == -1:
                        if len(buffer) - pos > max_header_size:
                            raise self._error(
                                MultipartParseError, "Part headers exceed %d bytes" % max_header_size, pos
                            )
                        break
                    if i - pos > max_header_size:
                        raise self._error(MultipartParseError, "Part headers exceed %d bytes" % max_header_size, pos)
                    block = bytes(buffer[pos:i])
                    end = i + 4

                self._begin_part(self._parse_headers(block, pos))
                state = MultipartState.PART_DATA
                pos = end

            elif state == MultipartState.PART_DATA:
                assert self._writer is not None
                i = buffer.find(self.delimiter, pos)
                if i == -1:
                    # Everything except a possible partial delimiter is data.
                    safe = len(buffer) - len(self.delimiter) + 1
                    if safe > pos:
                        self._writer.write(bytes(buffer[pos:safe]))
                        pos = safe
                    break

                end = i + len(self.delimiter)
                if len(buffer) < end + 2:
                    if i > pos:
                        self._writer.write(bytes(buffer[pos:i]))
                        pos = i
                    break

                tail = bytes(buffer[end : end + 2])
                if tail == b"\r\n" or tail == b"--":
                    if i > pos:
                        self._writer.write(bytes(buffer[pos:i]))
                    self._end_part()
                    state = MultipartState.HEADERS if tail == b"\r\n" else MultipartState.END
                    pos = end + 2
                else:
                    # Just looks like a boundary; it's part of the data.
                    self._writer.write(bytes(buffer[pos : i + 1]))
                    pos = i + 1

            elif state == MultipartState.END:
                if buffer[pos:].strip():
                    self.logger.warning("Skipping data after last boundary")
                pos = len(buffer)

            else:  # pragma: no cover (error case)
                raise self._error(MultipartParseError, "Reached an unknown state %d at %d" % (state, pos), pos)

        del buffer[:pos]
        self.state = state

    def _parse_headers(self, block: bytes, offset: int) -> list[tuple[str, str]]:
        headers: list[tuple[str, str]] = []
        if not block:
            return headers

        for line in block.split(b"\r\n"):
            name, colon, value = line.partition(b":")
            if not colon or not name:
                raise self._error(MultipartParseError, "Found invalid header line %r" % line[:64], offset)
            for c in name:
                if c not in TOKEN_CHARS_SET:
                    raise self._error(MultipartParseError, "Found invalid character %r in header" % (c,), offset)
            headers.append((name.decode("latin-1"), self._decode(value.strip())))
            offset += len(line) + 2
        return headers

    def _begin_part(self, headers: list[tuple[str, str]]) -> None:
        _, options = parse_options_header(_get_header(headers, "Content-Disposition"))
        field_name = options.get("name", "")
        filename = options.get("filename")

        part: Field | Upload
        if filename is None:
            part = Field(field_name)
        else:
            suffix = None
            if self.config["UPLOAD_KEEP_EXTENSIONS"]:
                suffix = os.path.splitext(filename)[1] or None
            storage = SpooledBuffer(
                max_memory_size=self.config["MAX_MEMORY_FILE_SIZE"],
                tmp_dir=self.config["UPLOAD_DIR"],
                suffix=suffix,
                delete=self.config["UPLOAD_DELETE_TMP"],
            )
            part = Upload(field_name, filename, headers, storage)
        self._part = part

        transfer_encoding = (_get_header(headers, "Content-Transfer-Encoding") or "7bit").strip().lower()
        if transfer_encoding in ("binary", "8bit", "7bit"):
            self._writer = part
        elif transfer_encoding == "base64":
            self._writer = Base64Decoder(part)
        elif transfer_encoding == "quoted-printable":
            self._writer = QuotedPrintableDecoder(part)
        else:
            self.logger.warning("Unknown Content-Transfer-Encoding: %r", transfer_encoding)
            if self.config["UPLOAD_ERROR_ON_BAD_CTE"]:
                raise MultipartParseError(f'Unknown Content-Transfer-Encoding "{transfer_encoding}"')
            self._writer = part

    def _end_part(self) -> None:
        assert self._writer is not None and self._part is not None
        self._writer.finalize()

        part = self._part
        if isinstance(part, Upload):
            self._uploads.append(part)
        else:
            self._params.append((part.field_name, self._decode(part.value)))

        self._part = None
        self._writer = None

    def finalize(self) -> ParseResult:
        if self._received == 0:
            return ParseResult([], [])

        if self.state != MultipartState.END:
            raise self._error(
                MultipartParseError,
                "Multipart body ended unexpectedly (state %s)" % self.state.name,
                len(self._buffer),
            )
        return ParseResult(self._params, self._uploads)

    def close(self) -> None:
        for upload in self._uploads:
            upload.close()
        if isinstance(self._part, Upload):
            self._part.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"


class JSONParser(BaseParser):
    """
    This parser buffers an ``application/json`` body and decodes it when
    finalized.  A top-level object is flattened into params: an array value
    gives one param per element, strings are kept as they are, ``null``
    becomes "", and any other value is JSON-encoded.  Other top-level values
    give no params.
    """

    def __init__(self, context: RequestContext | None = None, options: ParserConfig | None = None) -> None:
        super().__init__(context, options)
        self._buffer = bytearray()

    def _internal_add(self, data: bytes) -> None:
        self._buffer += data

    def finalize(self) -> ParseResult:
        if not self._buffer:
            return ParseResult([], [])

        try:
            value = orjson.loads(self._buffer)
        except orjson.JSONDecodeError as err:
            raise self._error(JSONParseError, f"Invalid JSON body: {err}", err.pos) from err

        params: list[tuple[str, str]] = []
        if isinstance(value, dict):
            for key, item in value.items():
                if isinstance(item, list):
                    params.extend((key, self._stringify(element)) for element in item)
                else:
                    params.append((key, self._stringify(item)))
        else:
            self.logger.info("JSON body is %s, not an object; no params", type(value).__name__)
        return ParseResult(params, [])

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return orjson.dumps(value).decode("utf-8")
