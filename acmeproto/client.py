"""
ACME directory discovery and signed-request layer (RFC 8555 §6, §7.1, §7.2).

RFC 8555 compliance notes
--------------------------
* Every signed request fetches a fresh anti-replay nonce with HEAD /newNonce
  immediately before signing; nonces are never cached between calls.
* The protected header carries ``jwk`` until the account URL is known and
  ``kid`` afterwards; ``nonce`` and ``url`` are always present.
* badNonce retry: a request rejected with ``badNonce`` is re-signed with a
  fresh nonce, up to ``_NONCE_RETRIES`` submissions in total.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from josepy.jwk import JWKRSA

from acmeproto import jws as jwslib
from acmeproto.agent import AgentResponse, HttpAgent
from acmeproto.errors import ProtocolError

logger = logging.getLogger(__name__)

_NONCE_RETRIES = 3
_TOS_LINK = re.compile(r'<([^>]*)>\s*;\s*rel="?terms-of-service"?')


class AcmeProtocolClient:
    """
    Talks to one CA: caches its directory and signs requests with a caller
    supplied account key.
    """

    def __init__(self, directory_url: str, agent: HttpAgent) -> None:
        self.directory_url = directory_url
        self.agent = agent
        self.directory: dict[str, str] = {}

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict[str, str]:
        """GET /directory — discover ACME endpoint URLs and cache them."""
        resp = self.agent.request(self.directory_url)
        if not isinstance(resp.body, dict):
            raise ProtocolError(f"Malformed directory at <{self.directory_url}>", resp.status)
        self.directory = resp.body
        logger.info("Loaded ACME directory from %s", self.directory_url)
        return self.directory

    def url(self, name: str) -> str:
        """Return the URL of directory entry *name* (e.g. ``newOrder``)."""
        value = self.directory.get(name)
        if not value or not isinstance(value, str):
            raise ProtocolError(f"Invalid directory: {name} not listed")
        return value

    def nonce(self) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self.agent.request(self.url("newNonce"), method="HEAD", expect_json=False)
        if not resp.nonce:
            raise ProtocolError("Error getting nonce: no Replay-Nonce header", resp.status)
        return resp.nonce

    # ── Requests ──────────────────────────────────────────────────────────

    def request(self, url: str, expect_json: bool = True) -> AgentResponse:
        """Plain unsigned GET (directory, local HTTP-01 self-check)."""
        return self.agent.request(url, expect_json=expect_json)

    def signed_request(
        self,
        url: str,
        payload: Optional[dict],
        account_key: JWKRSA,
        account_url: Optional[str] = None,
        expect_json: bool = True,
        accept: Optional[str] = None,
    ) -> AgentResponse:
        """
        Sign *payload* (None means POST-as-GET) and POST it to *url*.

        Raises ProtocolError for any CA-side problem; the problem ``detail``
        becomes the error message.
        """
        headers = {"Accept": accept} if accept else None
        for attempt in range(1, _NONCE_RETRIES + 1):
            body = jwslib.sign_request(payload, account_key, self.nonce(), url, account_url)
            try:
                resp = self.agent.request(
                    url, payload=body, expect_json=expect_json, headers=headers
                )
                if resp.status >= 400:
                    problem = resp.problem or (resp.body if isinstance(resp.body, dict) else {})
                    raise ProtocolError(
                        problem.get("detail") or f"ACME {resp.status} from <{url}>",
                        resp.status,
                        problem,
                    )
                return resp
            except ProtocolError as exc:
                if exc.is_bad_nonce and attempt < _NONCE_RETRIES:
                    logger.warning("badNonce from %s — retrying with a fresh nonce", url)
                    continue
                raise

        raise ProtocolError("Exceeded nonce retry limit")


def parse_agreement(link_header: str) -> Optional[str]:
    """Return the terms-of-service URL advertised in a ``Link`` header, if any."""
    match = _TOS_LINK.search(link_header or "")
    return match.group(1) if match else None
