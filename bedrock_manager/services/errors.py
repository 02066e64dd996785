from __future__ import annotations

from typing import Any, Optional


class SupervisorError(Exception):
    """Base class for failures reported back to callers as result dicts."""

    error_code = "supervisor_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_result(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "error_code": self.error_code}


class NotInstalled(SupervisorError):
    error_code = "not_installed"


class AlreadyRunning(SupervisorError):
    error_code = "already_running"


class NotRunning(SupervisorError):
    error_code = "not_running"


class DownloadError(SupervisorError):
    error_code = "download_failed"

    def __init__(self, message: str, status_code: Optional[int] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.status_code = status_code
        self.cause = cause

    def to_result(self) -> dict[str, Any]:
        result = super().to_result()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


class DownloadTimeout(SupervisorError):
    error_code = "download_timeout"


class ExtractionError(SupervisorError):
    error_code = "extraction_failed"


class InstanceMissing(SupervisorError):
    error_code = "instance_missing"


class InstanceRunning(SupervisorError):
    error_code = "instance_running"


class BackupNotFound(SupervisorError):
    error_code = "backup_not_found"


class BackupFailed(SupervisorError):
    error_code = "backup_failed"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code

    def to_result(self) -> dict[str, Any]:
        result = super().to_result()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        return result


class RestoreFailed(SupervisorError):
    error_code = "restore_failed"
