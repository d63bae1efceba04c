"""Transport contract to the tech pack API and its httpx implementation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

import httpx

from tpsync.errors import AuthenticationError, ServerError, TransportUnavailableError, issue


logger = logging.getLogger("tpsync.transport")


class TechPackTransport:
    """Every method returns the decoded response body; engines normalize it."""

    def list_records(self, page: int, limit: int, q: str | None = None, status: str | None = None) -> Any:
        raise NotImplementedError

    def create_record(self, payload: dict) -> Any:
        raise NotImplementedError

    def clone_record(self, source_id: str, identity: dict, sections: List[str]) -> Any:
        raise NotImplementedError

    def get_record(self, record_id: str) -> Any:
        raise NotImplementedError

    def update_record(self, record_id: str, payload: dict) -> Any:
        raise NotImplementedError

    def delete_record(self, record_id: str) -> Any:
        raise NotImplementedError

    def list_revisions(self, record_id: str, page: int = 1, limit: int = 20) -> Any:
        raise NotImplementedError

    def get_revision(self, revision_id: str) -> Any:
        raise NotImplementedError

    def compare_revisions(self, record_id: str, from_id: str, to_id: str) -> Any:
        raise NotImplementedError

    def revert_revision(self, record_id: str, revision_id: str, reason: str | None = None) -> Any:
        raise NotImplementedError

    def approve_revision(self, revision_id: str, reason: str | None = None) -> Any:
        raise NotImplementedError

    def reject_revision(self, revision_id: str, reason: str) -> Any:
        raise NotImplementedError

    def add_comment(self, revision_id: str, text: str) -> Any:
        raise NotImplementedError


class TokenProvider:
    def token(self) -> str | None:
        raise NotImplementedError

    def refresh(self) -> str | None:
        raise NotImplementedError


class StaticTokenProvider(TokenProvider):
    def __init__(self, token: str | None = None, refresher: Callable[[], str | None] | None = None) -> None:
        self._token = token
        self._refresher = refresher

    def token(self) -> str | None:
        return self._token

    def refresh(self) -> str | None:
        if self._refresher is None:
            return None
        self._token = self._refresher()
        return self._token


def parse_error(resp: httpx.Response) -> ServerError:
    """Build a ServerError from either error envelope the API uses."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    field_errors: List[dict] = []
    message = None
    code = None
    if isinstance(body, dict):
        raw_errors = body.get("errors") if isinstance(body.get("errors"), list) else body.get("details")
        for err in raw_errors if isinstance(raw_errors, list) else []:
            if isinstance(err, dict):
                path = err.get("path") or err.get("field") or err.get("param")
                field_errors.append(issue(err.get("code") or "FIELD_ERROR", str(err.get("message") or err.get("msg") or ""), path))
            elif isinstance(err, str):
                field_errors.append(issue("FIELD_ERROR", err))
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            code = error.get("code")
        elif isinstance(error, str):
            message = error
        message = message or body.get("message")
        code = code or body.get("code")
        if field_errors:
            message = message or field_errors[0]["message"]
            code = code or field_errors[0]["code"]
    message = message or resp.reason_phrase or f"HTTP {resp.status_code}"
    if resp.status_code == 401:
        return AuthenticationError(message, status=401, code=code, field_errors=field_errors)
    return ServerError(message, status=resp.status_code, code=code, field_errors=field_errors)


class HttpTransport(TechPackTransport):
    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._tokens = token_provider
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._tokens.token() if self._tokens is not None else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _send(self, method: str, path: str, operation: str, params: dict | None, body: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            return self._client.request(method, url, params=params, json=body, headers=self._headers())
        except httpx.TransportError as exc:
            logger.warning("transport_unavailable op=%s url=%s error=%s", operation, url, exc)
            raise TransportUnavailableError(f"{operation} failed: {exc}", operation=operation) from exc

    def _request(self, method: str, path: str, operation: str, params: dict | None = None, body: Any = None) -> Any:
        resp = self._send(method, path, operation, params, body)
        if resp.status_code == 401 and self._tokens is not None:
            logger.info("transport_auth_refresh op=%s", operation)
            if self._tokens.refresh():
                resp = self._send(method, path, operation, params, body)
        if resp.status_code >= 400:
            err = parse_error(resp)
            logger.warning("transport_error op=%s status=%s code=%s", operation, resp.status_code, err.code)
            raise err
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ServerError("Response is not JSON", status=resp.status_code, code="INVALID_JSON") from exc

    def list_records(self, page: int, limit: int, q: str | None = None, status: str | None = None) -> Any:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if q:
            params["q"] = q
        if status:
            params["status"] = status
        return self._request("GET", "/techpacks", "list_records", params=params)

    def create_record(self, payload: dict) -> Any:
        return self._request("POST", "/techpacks", "create_record", body=payload)

    def clone_record(self, source_id: str, identity: dict, sections: List[str]) -> Any:
        body = {**identity, "sections": list(sections)}
        return self._request("POST", f"/techpacks/{source_id}/clone", "clone_record", body=body)

    def get_record(self, record_id: str) -> Any:
        return self._request("GET", f"/techpacks/{record_id}", "get_record")

    def update_record(self, record_id: str, payload: dict) -> Any:
        return self._request("PUT", f"/techpacks/{record_id}", "update_record", body=payload)

    def delete_record(self, record_id: str) -> Any:
        return self._request("DELETE", f"/techpacks/{record_id}", "delete_record")

    def list_revisions(self, record_id: str, page: int = 1, limit: int = 20) -> Any:
        params = {"page": page, "limit": limit}
        return self._request("GET", f"/techpacks/{record_id}/revisions", "list_revisions", params=params)

    def get_revision(self, revision_id: str) -> Any:
        return self._request("GET", f"/revisions/{revision_id}", "get_revision")

    def compare_revisions(self, record_id: str, from_id: str, to_id: str) -> Any:
        params = {"from": from_id, "to": to_id}
        return self._request("GET", f"/techpacks/{record_id}/revisions/compare", "compare_revisions", params=params)

    def revert_revision(self, record_id: str, revision_id: str, reason: str | None = None) -> Any:
        path = f"/techpacks/{record_id}/revisions/{revision_id}/revert"
        return self._request("POST", path, "revert_revision", body={"reason": reason})

    def approve_revision(self, revision_id: str, reason: str | None = None) -> Any:
        return self._request("POST", f"/revisions/{revision_id}/approve", "approve_revision", body={"reason": reason})

    def reject_revision(self, revision_id: str, reason: str) -> Any:
        return self._request("POST", f"/revisions/{revision_id}/reject", "reject_revision", body={"reason": reason})

    def add_comment(self, revision_id: str, text: str) -> Any:
        return self._request("POST", f"/revisions/{revision_id}/comments", "add_comment", body={"comment": text})
