"""Exception taxonomy for the fetch, merge and delivery pipeline."""

from __future__ import annotations


class GihFtpError(RuntimeError):
    pass


class ConfigError(GihFtpError):
    pass


class CatalogFetchError(GihFtpError):
    """The log catalog of one source could not be listed for a date range."""

    def __init__(self, host: str, reason: str) -> None:
        super().__init__(f"{host}: {reason}")
        self.host = host
        self.reason = reason


class DownloadError(GihFtpError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class IngestError(GihFtpError):
    """A single payload line that could not be merged."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class NoCredentialsAvailable(GihFtpError):
    pass


class HostVerificationFailure(GihFtpError):
    def __init__(self, host: str, reason: str) -> None:
        super().__init__(f"{host}: {reason}")
        self.host = host
        self.reason = reason


class DeliveryError(GihFtpError):
    pass


class EmptyAggregateError(GihFtpError):
    pass
