"""Failures the mirror turns into terminal responses."""

from __future__ import annotations


class MirrorError(Exception):
    status_code = 500
    public_message = "Internal Server Error"


class InvalidPathError(MirrorError):
    status_code = 400
    public_message = "Invalid path. Usage: /[github.com]/user/repo/path/to/file"


class MethodNotAllowedError(MirrorError):
    status_code = 405
    public_message = "Method Not Allowed"


class UpstreamTransportError(MirrorError):
    """Every attempt to reach the origin timed out or failed at the transport level."""

    status_code = 502
    public_message = "Upstream request failed"

    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"Upstream {url} unreachable after {attempts} attempt(s)")
        self.url = url
        self.attempts = attempts
