import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from entity_parser import RequestContext, create_entity_parser
    from entity_parser.exceptions import EntityParserError

entity_parser = create_entity_parser(config={"MAX_STALLED_READS": 4})


class FuzzedInput:
    def __init__(self, data: bytes, sizes: list[int]) -> None:
        self.f = io.BytesIO(data)
        self.sizes = sizes
        self.calls = 0

    def read(self, n: int) -> bytes:
        size = self.sizes[self.calls % len(self.sizes)]
        self.calls += 1
        return self.f.read(min(n, size))

    def seek(self, offset: int, whence: int = 0) -> int:
        return self.f.seek(offset, whence)


def make_context(fdp: EnhancedDataProvider, content_type: str) -> RequestContext:
    sizes = fdp.ConsumeReadSizes()
    chunked = fdp.ConsumeBool()
    body = fdp.ConsumeRandomBytes()
    content_length = None if chunked else fdp.ConsumeIntInRange(0, len(body))
    return RequestContext(FuzzedInput(body, sizes), content_type, content_length, chunked=chunked)


def parse_octet_stream(fdp: EnhancedDataProvider) -> None:
    entity_parser.parse(make_context(fdp, "application/octet-stream"))


def parse_form_urlencoded(fdp: EnhancedDataProvider) -> None:
    entity_parser.parse(make_context(fdp, "application/x-www-form-urlencoded"))


def parse_json(fdp: EnhancedDataProvider) -> None:
    entity_parser.parse(make_context(fdp, "application/json"))


def parse_multipart_form_data(fdp: EnhancedDataProvider) -> None:
    _, uploads = entity_parser.parse(make_context(fdp, "multipart/form-data; boundary=boundary"))
    for upload in uploads:
        upload.close()


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_octet_stream, parse_form_urlencoded, parse_json, parse_multipart_form_data]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except EntityParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
