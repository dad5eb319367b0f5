__license__ = "Apache"

from ._version import __version__
from .entity import (
    EntityParser,
    ParserRegistry,
    Registration,
    RequestContext,
    create_entity_parser,
    parse_environ,
)
from .parsers import (
    BaseParser,
    JSONParser,
    MultiPartParser,
    OctetStreamParser,
    ParseResult,
    Upload,
    UrlEncodedParser,
)

__all__ = (
    "__version__",
    "BaseParser",
    "EntityParser",
    "JSONParser",
    "MultiPartParser",
    "OctetStreamParser",
    "ParseResult",
    "ParserRegistry",
    "Registration",
    "RequestContext",
    "Upload",
    "UrlEncodedParser",
    "create_entity_parser",
    "parse_environ",
)
