class EntityParserError(ValueError):
    """Base error class for our entity parser."""


class ParseError(EntityParserError):
    """This exception (or a subclass) is raised when there is an error while
    parsing something.
    """

    #: This is the offset at which the parse error occurred: into the parser's
    #: pending buffer for the chunked and multipart parsers, into the whole
    #: body for the others.  It will be -1 if not specified.
    offset = -1


class MalformedFraming(ParseError):
    """Raised by the ChunkedDecoder when a chunked body cannot be de-chunked,
    for example because a chunk-size line is not hexadecimal or never ends.
    """


class MultipartParseError(ParseError):
    """This is a specific error that is raised when the MultiPartParser detects
    an error while parsing.
    """


class QuerystringParseError(ParseError):
    """This is a specific error that is raised when the UrlEncodedParser
    detects an error while parsing.
    """


class JSONParseError(ParseError):
    """Raised when a JSON body cannot be decoded."""


class DecodeError(ParseError):
    """This exception is raised when there is a decoding error - for example
    with the Base64Decoder or QuotedPrintableDecoder.
    """


class ClientDisconnect(EntityParserError):
    """Raised when the input keeps returning no data while part of the body is
    still outstanding - most likely the client went away.
    """

    #: Number of body bytes that were never received, or -1 when the total is
    #: not known (chunked bodies).
    remaining = -1

    def __init__(self, message: str, remaining: int = -1) -> None:
        super().__init__(message)
        self.remaining = remaining


class FileError(EntityParserError, OSError):
    """Exception class for problems with the SpooledBuffer class."""
