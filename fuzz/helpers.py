import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeReadSizes(self, count: int = 8) -> list[int]:
        """Read sizes for a stream, 0 meaning a read that returned nothing."""
        return [self.ConsumeIntInRange(0, 64) for _ in range(count)]
