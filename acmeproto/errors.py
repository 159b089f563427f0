"""
Error taxonomy shared by the protocol layer, the store and the issuer.

Every error raised on purpose by this project derives from AcmeClientError so
the batch runner can isolate one failing certificate label from the rest.
"""
from __future__ import annotations

from typing import Any, Optional


class AcmeClientError(Exception):
    """Base class for all errors raised by the ACME client."""


class ConfigurationError(AcmeClientError):
    """Missing/invalid base path, missing username or unsupported store format."""


class NotInitializedError(AcmeClientError):
    """A certificate operation was attempted before Client.init()."""


class ProtocolError(AcmeClientError):
    """
    Raised when the CA (or the transport) returns something unexpected.

    When the CA answered with an RFC 7807 problem document, ``problem_type``
    and ``detail`` carry its ``type`` and ``detail`` members.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        body: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body or {}
        self.problem_type = self.body.get("type", "")
        self.detail = self.body.get("detail", message)
        super().__init__(message)

    @property
    def is_bad_nonce(self) -> bool:
        return self.problem_type.endswith(":badNonce")


class LocalValidationError(AcmeClientError):
    """The operator's own HTTP-01 endpoint is unreachable or serves the wrong body."""


class ValidationTimeoutError(AcmeClientError):
    """The CA did not report the challenge (or order) valid within the attempt budget."""


class PersistenceError(AcmeClientError):
    """Reading or writing state on disk failed."""
