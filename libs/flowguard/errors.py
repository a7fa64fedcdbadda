from __future__ import annotations


class EngineError(Exception):
    """Base class for errors surfaced to the request layer."""
    code = "engine_error"


class ValidationError(EngineError, ValueError):
    code = "validation_error"


class InvalidRisk(ValidationError):
    code = "invalid_risk"


class NotFound(EngineError, LookupError):
    code = "not_found"


class AlreadyClosed(EngineError):
    code = "already_closed"


class RateLimitExceeded(EngineError):
    code = "rate_limited"

    def __init__(self, identifier: str, max_requests: int, window_ms: int):
        super().__init__(f"{identifier}: more than {max_requests} requests in {window_ms}ms")
        self.identifier = identifier
        self.max_requests = max_requests
        self.window_ms = window_ms


# absorbed inside loops, never returned to callers
class TransientFeedError(EngineError):
    code = "transient_feed_error"


class ConnectionExhausted(EngineError):
    code = "connection_exhausted"

    def __init__(self, url: str, attempts: int):
        super().__init__(f"stream {url}: gave up after {attempts} failed connections")
        self.url = url
        self.attempts = attempts
