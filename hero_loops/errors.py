"""Exceptions raised at the ingestion boundary.

Generation never raises for "no routes": an empty tier or cluster is
reported through GenerationStats instead.
"""


class HeroLoopError(Exception):
    """Base class for every error raised by hero_loops."""


class ParseError(HeroLoopError):
    """Local feature container could not be turned into segments."""


class UnsupportedFormatError(ParseError):
    """The bytes are not a recognised line-feature container."""


class MalformedGeometryError(ParseError):
    """The container parsed, but holds no usable line geometry."""


class FetchError(HeroLoopError):
    """Remote feature service could not be paginated to completion."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FetchUnavailableError(FetchError):
    """Endpoint unreachable or kept returning errors after retries."""


class InvalidPaginationError(FetchError):
    """A page came back in a shape that cannot be paginated."""


class FetchCancelledError(FetchError):
    """Caller cancelled the fetch; pages already downloaded are discarded."""
