from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple

from .buffer import SpooledBuffer
from .decoders import ChunkedDecoder
from .exceptions import ClientDisconnect, EntityParserError
from .parsers import JSONParser, MultiPartParser, OctetStreamParser, ParseResult, UrlEncodedParser

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterator, MutableMapping
    from typing import Any, Protocol, TypedDict

    from .parsers import ParserProtocol

    class SupportsReadSeek(Protocol):
        def read(self, __n: int) -> bytes: ...

        def seek(self, __offset: int, __whence: int = ...) -> int: ...

    ParserFactory = Callable[["RequestContext", Any], ParserProtocol]

    class EntityParserConfig(TypedDict):
        READ_CHUNK_SIZE: int
        MAX_STALLED_READS: int
        MAX_CHUNK_HEADER_SIZE: int
        MAX_MEMORY_BUFFER_SIZE: int | None
        BUFFER_DIR: str | bytes | None


logger = logging.getLogger(__name__)

# WSGI counterpart of PSGI's psgix.input.buffered: set once wsgi.input has
# been replaced by a seekable copy of the body.
BUFFERED_KEY = "wsgix.input.buffered"


class RequestContext:
    """
    The parts of a request the entity parser needs.  Parsing a body updates
    the context in place:

        - ``chunked`` is cleared once the framing has been decided;
        - ``content_length`` is set to the decoded size of a chunked body;
        - ``input`` is replaced by a rewound copy of the body and
          ``buffered`` is set, unless the input was buffered already.

    :param input: the request body stream; needs ``read(n)`` and ``seek()``.
    :param content_type: the declared Content-Type, or None.
    :param content_length: the declared Content-Length, or None.
    :param chunked: whether the body uses ``Transfer-Encoding: chunked``.
    :param buffered: whether ``input`` already holds the whole body and can
                     be re-read from the start.
    """

    def __init__(
        self,
        input: SupportsReadSeek,
        content_type: str | None = None,
        content_length: int | None = None,
        chunked: bool = False,
        buffered: bool = False,
    ) -> None:
        self.input = input
        self.content_type = content_type
        self.content_length = content_length
        self.chunked = chunked
        self.buffered = buffered

    @classmethod
    def from_environ(cls, environ: MutableMapping[str, Any]) -> RequestContext:
        """Build a context from a WSGI environ."""
        content_length: int | None = None
        raw_length = environ.get("CONTENT_LENGTH")
        if raw_length is not None and raw_length != "":
            try:
                content_length = int(raw_length)
            except ValueError:
                raise EntityParserError("Invalid Content-Length: %r" % (raw_length,)) from None
            if content_length < 0:
                raise EntityParserError("Invalid Content-Length: %r" % (raw_length,))

        transfer_encoding = environ.get("HTTP_TRANSFER_ENCODING") or ""

        return cls(
            environ["wsgi.input"],
            content_type=environ.get("CONTENT_TYPE"),
            content_length=content_length,
            chunked=transfer_encoding.lower() == "chunked",
            buffered=bool(environ.get(BUFFERED_KEY)),
        )

    def update_environ(self, environ: MutableMapping[str, Any]) -> None:
        """Write this context's post-parse state back into a WSGI environ."""
        environ["wsgi.input"] = self.input
        if self.buffered:
            environ[BUFFERED_KEY] = True
        if self.content_length is not None:
            environ["CONTENT_LENGTH"] = str(self.content_length)
        if not self.chunked and (environ.get("HTTP_TRANSFER_ENCODING") or "").lower() == "chunked":
            del environ["HTTP_TRANSFER_ENCODING"]

    def __repr__(self) -> str:
        return "{}(content_type={!r}, content_length={!r}, chunked={!r}, buffered={!r})".format(
            self.__class__.__name__, self.content_type, self.content_length, self.chunked, self.buffered
        )


class Registration(NamedTuple):
    """A parser registered for every content type starting with ``prefix``."""

    prefix: str
    factory: ParserFactory
    options: Any = None

    def matches(self, content_type: str) -> bool:
        return content_type.startswith(self.prefix)


class ParserRegistry:
    """
    An ordered list of registrations.  The first registration whose prefix
    matches the start of the request's content type wins; registrations are
    never re-ordered, so a more specific prefix must be registered before a
    more general one.  Requests that match nothing get an
    :class:`OctetStreamParser`, which discards the body.
    """

    def __init__(self) -> None:
        self._registrations: list[Registration] = []

    def register(self, prefix: str, factory: ParserFactory, options: Any = None) -> None:
        logger.debug("Registering %r for %r", factory, prefix)
        self._registrations.append(Registration(prefix, factory, options))

    def resolve(self, context: RequestContext) -> ParserProtocol:
        content_type = context.content_type
        if content_type is not None:
            for registration in self._registrations:
                if registration.matches(content_type):
                    return registration.factory(context, registration.options)

        logger.info("No parser registered for Content-Type %r, falling back to OctetStreamParser", content_type)
        return OctetStreamParser(context)

    def __iter__(self) -> Iterator[Registration]:
        return iter(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)

    def __repr__(self) -> str:
        return "{}({!r})".format(self.__class__.__name__, [r.prefix for r in self._registrations])


class _BodyWriter:
    """Passes every body chunk to the parser and, if there is one, to the
    replay buffer.
    """

    def __init__(self, parser: ParserProtocol, buffer: SpooledBuffer | None) -> None:
        self.parser = parser
        self.buffer = buffer

    def write(self, data: bytes) -> int:
        self.parser.add(data)
        if self.buffer is not None:
            self.buffer.write(data)
        return len(data)


class EntityParser:
    """
    This class reads a request body, removing chunked framing if needed,
    feeds it to the parser registered for the request's content type, and
    returns that parser's :class:`ParseResult`.

    While the body is read a copy of it is kept, so later consumers can read
    it again from ``context.input``.  If the input was already buffered it is
    rewound instead.

    :param registry: the :class:`ParserRegistry` to pick parsers from.  A new,
                     empty one is created if not given.
    :param config: overrides for :attr:`DEFAULT_CONFIG`.
    """

    DEFAULT_CONFIG: EntityParserConfig = {
        "READ_CHUNK_SIZE": 8192,
        "MAX_STALLED_READS": 2000,
        "MAX_CHUNK_HEADER_SIZE": 4096,
        "MAX_MEMORY_BUFFER_SIZE": 1 * 1024 * 1024,
        "BUFFER_DIR": None,
    }

    def __init__(self, registry: ParserRegistry | None = None, config: dict[str, Any] = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self.registry = registry if registry is not None else ParserRegistry()

        self.config: EntityParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]

    def register(self, prefix: str, factory: ParserFactory, options: Any = None) -> None:
        """Register a parser factory for content types starting with ``prefix``.

        The factory is called as ``factory(context, options)`` and must return
        an object with ``add(bytes)`` and ``finalize()`` methods.
        """
        self.registry.register(prefix, factory, options)

    def parse(self, context: RequestContext) -> ParseResult:
        parser = self.registry.resolve(context)

        if not context.content_type:
            self.logger.debug("No Content-Type, not reading the body")
            return ParseResult([], [])

        input = context.input
        buffer: SpooledBuffer | None = None
        if context.buffered:
            # Someone else has read the body already.
            input.seek(0)
        else:
            buffer = SpooledBuffer(
                max_memory_size=self.config["MAX_MEMORY_BUFFER_SIZE"], tmp_dir=self.config["BUFFER_DIR"]
            )

        chunked = context.chunked
        context.chunked = False
        writer = _BodyWriter(parser, buffer)

        try:
            if chunked:
                context.content_length = self._read_chunked(input, writer)
            elif context.content_length:
                self._read_fixed(input, context.content_length, writer)
            else:
                self.logger.debug("No Content-Length and not chunked, not reading the body")

            if buffer is not None:
                context.input = buffer.rewind()
                context.buffered = True
                buffer = None
            else:
                input.seek(0)

            return parser.finalize()
        except BaseException:
            if buffer is not None:
                buffer.close()
            close = getattr(parser, "close", None)
            if close is not None:
                close()
            raise

    def parse_environ(self, environ: MutableMapping[str, Any]) -> ParseResult:
        """Parse the body of a WSGI request and update the environ to match."""
        context = RequestContext.from_environ(environ)
        result = self.parse(context)
        context.update_environ(environ)
        return result

    def _read_fixed(self, input: SupportsReadSeek, remaining: int, writer: _BodyWriter) -> None:
        chunk_size = self.config["READ_CHUNK_SIZE"]
        max_stalled = self.config["MAX_STALLED_READS"]
        stalled = 0

        self.logger.debug("Reading %d bytes", remaining)
        while remaining > 0:
            chunk = input.read(min(remaining, chunk_size))
            if not chunk:
                stalled += 1
                if stalled > max_stalled:
                    msg = "Bad Content-Length: maybe client disconnect? (%d bytes remaining)" % remaining
                    self.logger.warning(msg)
                    raise ClientDisconnect(msg, remaining)
                continue

            stalled = 0
            remaining -= len(chunk)
            writer.write(chunk)

    def _read_chunked(self, input: SupportsReadSeek, writer: _BodyWriter) -> int:
        chunk_size = self.config["READ_CHUNK_SIZE"]
        max_stalled = self.config["MAX_STALLED_READS"]
        stalled = 0

        decoder = ChunkedDecoder(writer, max_header_size=self.config["MAX_CHUNK_HEADER_SIZE"])
        while not decoder.done:
            chunk = input.read(chunk_size)
            if not chunk:
                stalled += 1
                if stalled > max_stalled:
                    msg = "Chunked body ended before the last chunk: maybe client disconnect?"
                    self.logger.warning(msg)
                    raise ClientDisconnect(msg)
                continue

            stalled = 0
            decoder.write(chunk)

        self.logger.debug("Decoded %d bytes of chunked body", decoder.total_length)
        return decoder.total_length

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(registry={self.registry!r})"


def create_entity_parser(config: dict[str, Any] = {}, options: dict[str, Any] | None = None) -> EntityParser:
    """
    This function is a helper function to aid in creating an EntityParser
    with the bundled parsers registered::

        application/x-www-form-urlencoded   UrlEncodedParser
        multipart/form-data                 MultiPartParser
        application/json                    JSONParser

    :param config: overrides for :attr:`EntityParser.DEFAULT_CONFIG`.
    :param options: options given to every bundled parser; see
                    :attr:`BaseParser.DEFAULT_CONFIG`.
    """
    entity_parser = EntityParser(config=config)
    entity_parser.register("application/x-www-form-urlencoded", UrlEncodedParser, options)
    entity_parser.register("multipart/form-data", MultiPartParser, options)
    entity_parser.register("application/json", JSONParser, options)
    return entity_parser


def parse_environ(environ: MutableMapping[str, Any], entity_parser: EntityParser | None = None) -> ParseResult:
    """
    This function is useful if you just want to parse a WSGI request body and
    get the params and uploads back.  Without an ``entity_parser`` one with
    the bundled parsers is created.
    """
    if entity_parser is None:
        entity_parser = create_entity_parser()
    return entity_parser.parse_environ(environ)
