"""Error taxonomy shared by the session manager, cache and summary queue."""

from typing import Optional
from urllib.parse import urlparse


def remediation_for(endpoint: str) -> str:
    """Instructions for starting a browser the service can attach to."""
    port = urlparse(endpoint).port or 9222
    return (
        f"Start Chrome with remote debugging enabled so it listens on {endpoint}:\n"
        f"  google-chrome --remote-debugging-port={port} "
        f"--user-data-dir=\"$HOME/chrome-debug-profile\"\n"
        f"On macOS:\n"
        f"  /Applications/Google\\ Chrome.app/Contents/MacOS/Google\\ Chrome "
        f"--remote-debugging-port={port} --user-data-dir=\"$HOME/chrome-debug-profile\""
    )


class TubePoolError(Exception):
    """Base class for errors reported to callers as structured responses."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ConnectionUnavailable(TubePoolError):
    """The remote browser endpoint did not answer the reachability probe."""

    code = "connection_unavailable"

    def __init__(self, endpoint: str, reason: Optional[str] = None):
        self.endpoint = endpoint
        self.reason = reason
        self.remediation = remediation_for(endpoint)
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Cannot connect to Chrome browser at {endpoint}{detail}. {self.remediation}"
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["endpoint"] = self.endpoint
        d["remediation"] = self.remediation
        return d


class SessionEstablishFailed(TubePoolError):
    """The endpoint is reachable but attaching to the browser failed."""

    code = "session_establish_failed"

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Failed to attach to Chrome browser at {endpoint}: {reason}")


class FetchFailed(TubePoolError):
    """Scraping a listing failed."""

    code = "fetch_failed"

    def __init__(self, tab: str, page: int, reason: str):
        self.tab = tab
        self.page = page
        self.reason = reason
        super().__init__(f"Failed to fetch '{tab}' page {page}: {reason}")


class SummarizeFailed(TubePoolError):
    """Producing a summary for a video failed."""

    code = "summarize_failed"

    def __init__(self, video_url: str, reason: str):
        self.video_url = video_url
        self.reason = reason
        super().__init__(f"Failed to summarize {video_url}: {reason}")


class AccountLookupFailed(TubePoolError):
    """Reading the signed-in account from the browser failed."""

    code = "account_lookup_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to read account info: {reason}")


class OperationTimeout(TubePoolError):
    """A bounded browser operation ran past its deadline."""

    code = "timeout"

    def __init__(self, operation: str, seconds: float):
        self.operation = operation
        self.seconds = seconds
        super().__init__(f"Timeout: {operation} exceeded {seconds:g}s")


class RequestNotFound(TubePoolError):
    """Unknown (or evicted) summary request id."""

    code = "not_found"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Summary request not found: {request_id}")


class InvalidRequest(TubePoolError):
    """Caller supplied arguments that can never succeed."""

    code = "invalid_request"
