import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from entity_parser.decoders import Base64Decoder, ChunkedDecoder, QuotedPrintableDecoder
    from entity_parser.exceptions import DecodeError, MalformedFraming


def fuzz_chunked_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = ChunkedDecoder(io.BytesIO(), max_header_size=fdp.ConsumeIntInRange(1, 64))
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def fuzz_base64_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = Base64Decoder(io.BytesIO())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def fuzz_quoted_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = QuotedPrintableDecoder(io.BytesIO())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [fuzz_chunked_decoder, fuzz_base64_decoder, fuzz_quoted_decoder]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except (DecodeError, MalformedFraming):
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
