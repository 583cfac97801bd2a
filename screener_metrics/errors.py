from __future__ import annotations

"""Exception types shared by the provider, gateway and orchestrator."""

RETRYABLE_STATUS_CODES = frozenset({429})


class ConfigurationError(RuntimeError):
    """Static configuration is unusable; the whole run must abort."""


class ProviderError(RuntimeError):
    """A DataProvider call failed with a classifiable cause."""

    def __init__(self, error_code: str, message: str, http_status: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.http_status = http_status

    @property
    def is_retryable(self) -> bool:
        """Return True for rate limits, server errors and network failures."""
        if self.http_status is None:
            return self.error_code in {"request_error", "timeout"}
        return self.http_status in RETRYABLE_STATUS_CODES or self.http_status >= 500

    def __repr__(self) -> str:
        return (
            f"ProviderError(error_code={self.error_code!r}, "
            f"http_status={self.http_status!r}, message={self.message!r})"
        )
