from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors raised by the gateway core."""


class ConfigurationError(GatewayError):
    """A provider credential or endpoint is missing or invalid."""


class ValidationError(GatewayError):
    """A chat request reaching the gateway is malformed."""


class UpstreamError(GatewayError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
