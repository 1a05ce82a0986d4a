from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

# ApplyError reasons that mean "the thing you asked about does not exist".
_NOT_FOUND_REASONS = {"not_initialized"}


@dataclass
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def forbidden(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(403, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def from_apply_error(code: str, reason: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        if code == "forbidden":
            return ApiError.forbidden(code, reason, details)
        if reason in _NOT_FOUND_REASONS:
            return ApiError.not_found(code, reason, details)
        return ApiError.bad_request(code, reason, details)

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "reason": self.message, "details": self.details}}
