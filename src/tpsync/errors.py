"""Error taxonomy shared by the client engines, the transports and the server."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class TechPackError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class ValidationError(TechPackError):
    """Client-side rejection. Never reaches the server."""

    issues: List[Issue] = field(default_factory=list)

    def field_messages(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for item in self.issues:
            path = item.get("path") or "$"
            out.setdefault(path, item.get("message") or "")
        return out

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        if not self.issues:
            return self.message
        parts = [f"{i.get('path')}: {i.get('message')}" if i.get("path") else str(i.get("message")) for i in self.issues]
        return f"{self.message} ({'; '.join(parts)})"


@dataclass
class TransportUnavailableError(TechPackError):
    """Network unreachable or timed out."""

    operation: str | None = None


@dataclass
class ServerError(TechPackError):
    status: int = 500
    code: str | None = None
    field_errors: List[Issue] = field(default_factory=list)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.status} {self.code}: {self.message}" if self.code else f"{self.status}: {self.message}"
        if not self.field_errors:
            return base
        details = "; ".join(
            " - ".join(p for p in (str(e.get("path") or ""), str(e.get("message") or "")) if p) for e in self.field_errors
        )
        return f"{base}: {details}"


@dataclass
class AuthenticationError(ServerError):
    """401 that survived the single token refresh."""


@dataclass
class ShapeMismatchError(TechPackError):
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})" if self.path else self.message


@dataclass
class RevisionStateError(TechPackError):
    current: str | None = None
    target: str | None = None
