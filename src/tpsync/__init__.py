"""techpack-sync kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_loads
from .content_hash import CONTENT_FIELDS, content_hash
from .errors import (
    AuthenticationError,
    RevisionStateError,
    ServerError,
    ShapeMismatchError,
    TechPackError,
    TransportUnavailableError,
    ValidationError,
    issue,
)

__all__ = [
    "AuthenticationError",
    "CONTENT_FIELDS",
    "CanonicalJsonTypeError",
    "RevisionStateError",
    "ServerError",
    "ShapeMismatchError",
    "TechPackError",
    "TransportUnavailableError",
    "ValidationError",
    "canonical_dumps",
    "canonical_loads",
    "content_hash",
    "issue",
]
