"""Domain exceptions mapped to JSON error responses by ``mapedge.main``."""

from __future__ import annotations


class AppBaseException(Exception):
    """Domain-level base exception so we can map to JSON responses easily."""

    status_code: int = 500

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail


class ValidationFailure(AppBaseException):
    status_code = 400


class NotFoundError(AppBaseException):
    status_code = 404


class JobConflictError(AppBaseException):
    """Another step or job already owns the checkpoint or destination."""

    status_code = 409


class ExportJobError(AppBaseException):
    status_code = 500


class UpstreamError(AppBaseException):
    """Non-success response from the upstream table API or an attachment host."""

    status_code = 500

    def __init__(self, table: str, status: int, body: str = "") -> None:
        self.table = table
        self.upstream_status = status
        self.body = body
        message = f"Airtable error {status} for table '{table}'"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(message)


class AttachmentFetchError(AppBaseException):
    """An attachment URL answered with a non-success status or not at all."""

    status_code = 502

    def __init__(self, url: str, status: int | None = None) -> None:
        self.url = url
        self.upstream_status = status
        reason = f"HTTP {status}" if status is not None else "no response"
        super().__init__(f"Attachment fetch failed ({reason})")
