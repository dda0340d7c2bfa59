"""
HTTP client for the remote authority (the desktop POS).

Routes, relative to ``<base_url><api_prefix>``:
  GET  /status         public reachability check, sent without credentials
  GET  /sync           full snapshot for the pull path
  POST /sync           {operations: [...]} for the push path
  POST /print-receipt  {transaction}
  POST /print-report   {report}; older desktops lack it, which counts as success

Credentials go out as both ``X-API-KEY`` and ``Authorization: Bearer``.
"""
import logging
from typing import Any, Dict, Iterable, Optional

import requests

from pos_errors import AuthenticationError, EndpointUnavailable, RemoteError, TransientRemoteError
from pos_models import ConnectionConfig, SyncOperation, Transaction

log = logging.getLogger(__name__)

UNAVAILABLE_STATUSES = (404, 405, 501)


class AuthorityClient:
    def __init__(
        self,
        config: ConnectionConfig,
        api_prefix: str = "/api",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        prefix = (api_prefix or "").strip()
        if prefix and not prefix.startswith("/"):
            prefix = f"/{prefix}"
        self.api_prefix = prefix.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        base = (self.config.base_url or "").rstrip("/")
        return f"{base}{self.api_prefix}{path}"

    def _headers(self, auth: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth and self.config.api_key:
            headers["X-API-KEY"] = self.config.api_key
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, auth: bool = True) -> Dict[str, Any]:
        if not self.config.base_url:
            raise TransientRemoteError("No authority URL configured")
        url = self._url(path)
        try:
            resp = self.session.request(
                method, url, json=payload, headers=self._headers(auth), timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise TransientRemoteError(f"{method} {path} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientRemoteError(f"{method} {path} failed: {exc}") from exc

        status = resp.status_code
        if status in (401, 403):
            raise AuthenticationError(f"{method} {path} rejected credentials ({status})", status)
        if status in UNAVAILABLE_STATUSES:
            raise EndpointUnavailable(f"{method} {path} not available ({status})", status)
        if status >= 500:
            raise TransientRemoteError(f"{method} {path} server error {status}: {_snippet(resp)}", status)
        if status >= 400:
            raise RemoteError(f"{method} {path} rejected {status}: {_snippet(resp)}", status)
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientRemoteError(f"{method} {path} returned non-JSON body: {_snippet(resp)}", status) from exc
        return body if isinstance(body, dict) else {"data": body}

    def check_status(self) -> bool:
        body = self._request("GET", "/status", auth=False)
        return body.get("status") == "ok"

    def pull_snapshot(self) -> Dict[str, Any]:
        return self._request("GET", "/sync")

    def push_operations(self, operations: Iterable[SyncOperation]) -> Dict[str, Any]:
        ops = [op.to_wire() for op in operations]
        if not ops:
            return {}
        return self._request("POST", "/sync", {"operations": ops})

    def print_receipt(self, transaction: Transaction) -> Dict[str, Any]:
        return self._request("POST", "/print-receipt", {"transaction": transaction.to_dict()})

    def print_report(self, report: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._request("POST", "/print-report", {"report": report})
        except EndpointUnavailable:
            log.info("Authority has no /print-report endpoint; treating report print as done")
            return {"success": True, "skipped": True}


def _snippet(resp: requests.Response) -> str:
    try:
        return (resp.text or "").strip()[:200]
    except Exception:
        return ""
