"""
HTTP agent: executes one request and returns a normalized response.

The body is JSON-decoded when the response declares ``application/json``.
When JSON was required but not received, a ProtocolError is raised whose
message is the ``detail`` of an RFC 7807 problem body when there is one.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict

from acmeproto.errors import ProtocolError

logger = logging.getLogger(__name__)

JSON_TYPE = "application/json"
PROBLEM_TYPE = "application/problem+json"
USER_AGENT = "acme-route-client/1.0"


@dataclass
class AgentResponse:
    status: int
    message: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: Any = None
    is_json: bool = False
    problem: dict = field(default_factory=dict)

    @property
    def nonce(self) -> Optional[str]:
        return self.headers.get("Replay-Nonce")

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("Location")

    @property
    def link(self) -> str:
        return self.headers.get("Link", "")


class SourceAddressAdapter(HTTPAdapter):
    """Transport adapter that binds outgoing connections to a local source IP."""

    def __init__(self, source_ip: str, **kwargs: Any) -> None:
        self.source_address = (source_ip, 0)
        super().__init__(**kwargs)

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        kwargs["source_address"] = self.source_address
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args: Any, **kwargs: Any):
        kwargs["source_address"] = self.source_address
        return super().proxy_manager_for(*args, **kwargs)


class HttpAgent:
    """Thin wrapper around a requests.Session honouring source IP and timeout."""

    def __init__(
        self,
        source_ip: Optional[str] = None,
        timeout: float = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})

        if source_ip:
            adapter = SourceAddressAdapter(source_ip)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    def request(
        self,
        url: str,
        method: Optional[str] = None,
        payload: Optional[dict] = None,
        expect_json: bool = True,
        headers: Optional[dict[str, str]] = None,
    ) -> AgentResponse:
        """
        Issue one HTTP request.

        A *payload* (an already signed JWS) is POSTed as ``application/jose+json``
        unless *method* says otherwise.  With ``expect_json=True`` a non-JSON answer is
        a ProtocolError.
        """
        request_headers = dict(headers or {})
        data = None
        if payload is not None:
            method = method or "POST"
            request_headers["Content-Type"] = "application/jose+json"
            data = json.dumps(payload)
        method = (method or "GET").upper()

        logger.debug("HTTP %s %s", method, url)
        try:
            resp = self._session.request(
                method, url, data=data, headers=request_headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ProtocolError(f"{method} <{url}> failed: {exc}") from exc

        content_type = resp.headers.get("Content-Type", "").lower().strip()
        is_json = content_type == JSON_TYPE or content_type.startswith(JSON_TYPE + ";")
        body: Any = resp.text if method != "HEAD" else ""
        if is_json:
            try:
                body = resp.json()
            except ValueError as exc:
                raise ProtocolError(
                    f"Invalid JSON from <{url}>: {exc}", resp.status_code
                ) from exc

        if expect_json and not is_json:
            problem = _problem(resp)
            message = problem.get("detail") or f"Invalid server answer <{url}>, expected JSON data"
            raise ProtocolError(message, resp.status_code, problem)

        return AgentResponse(
            status=resp.status_code,
            message=resp.reason or f"Http {resp.status_code}",
            headers=CaseInsensitiveDict(resp.headers),
            body=body,
            is_json=is_json,
            problem=_problem(resp),
        )


def _problem(resp: requests.Response) -> dict:
    """Return the RFC 7807 problem document of *resp*, or {}."""
    content_type = resp.headers.get("Content-Type", "").lower()
    if not content_type.startswith(PROBLEM_TYPE):
        return {}
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
