from __future__ import annotations
from typing import Optional


class ScannerError(Exception):
    """Base class for every error raised by the scanner core."""


class ConfigError(ScannerError):
    pass


class RetryCategory:
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class FetchError(ScannerError):
    def __init__(self, message: str, category: str = RetryCategory.UNKNOWN, status: Optional[int] = None):
        super().__init__(message)
        self.category = category
        self.status = status


class CircuitOpenError(FetchError):
    def __init__(self, message: str):
        super().__init__(message, category=RetryCategory.API_ERROR)


class StateStoreError(ScannerError):
    pass
