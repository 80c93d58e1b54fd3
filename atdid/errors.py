"""
Error taxonomy for atdid.

Every failure an operator can hit is one of these. None of them are retried;
the CLI prints the message and exits non-zero.
"""

import json

import httpx


class AtDidError(Exception):
    """Base class for all atdid errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(AtDidError):
    """Bad credentials, or a call that needs a session made without one."""


class ProviderError(AtDidError):
    """The PDS rejected a request (rate limit, disabled account, ...)."""


class ResolutionError(AtDidError):
    """A handle, DID document or audit log could not be fetched."""


class UnsupportedMethod(AtDidError):
    """DID method other than did:plc or did:web."""


class UnsupportedOperation(AtDidError):
    """Operation not available for this DID method."""


class InvalidKeyFormat(AtDidError):
    """Malformed or out-of-range private key."""


class InvalidPublicKey(AtDidError):
    """Bytes that are not a point on secp256k1."""


class SubmissionError(AtDidError):
    """The signed PLC operation was refused."""


def xrpc_error_message(response: httpx.Response) -> str:
    """Pull the provider's message out of an XRPC error response.

    XRPC errors look like {"error": "InvalidToken", "message": "Token is expired"}.
    Falls back to the raw body, then to the status line.
    """
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        message = data.get("message")
        if error and message:
            return f"{error}: {message}"
        if message or error:
            return message or error

    text = response.text.strip()
    if text:
        return text
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


def json_body(response: httpx.Response, error: type[AtDidError], what: str):
    """Decode a successful response, raising `error` if the body is not JSON."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise error(
            f"{what} returned a non-JSON response", status_code=response.status_code
        ) from e
