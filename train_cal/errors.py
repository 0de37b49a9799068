from typing import Optional


class UpstreamError(Exception):
    """Calendar generation failed: transport, HTTP status or malformed feed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
