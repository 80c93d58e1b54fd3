"""
Authenticated PDS session for PLC operations.

The PDS holds the account's signing rotation key, so every identity change
goes through it:

    createSession -> requestPlcOperationSignature (emails a code)
                  -> signPlcOperation (code + desired end state)
                  -> submitPlcOperation

PLC operations need the full account password; app passwords are refused.
"""

import logging

import httpx

from .config import DEFAULT_PDS
from .errors import (
    AtDidError,
    AuthenticationError,
    ProviderError,
    SubmissionError,
    json_body,
    xrpc_error_message,
)

logger = logging.getLogger(__name__)


class PdsSession:
    """A logged-in account on one PDS."""

    def __init__(self, client: httpx.AsyncClient, pds: str = DEFAULT_PDS):
        self.client = client
        self.pds = pds.rstrip("/")
        self.did: str | None = None
        self.handle: str | None = None
        self._access_jwt: str | None = None

    @property
    def authenticated(self) -> bool:
        return self._access_jwt is not None

    def _url(self, method: str) -> str:
        return f"{self.pds}/xrpc/{method}"

    def _headers(self) -> dict:
        if not self._access_jwt:
            raise AuthenticationError("Not logged in")
        return {"Authorization": f"Bearer {self._access_jwt}"}

    async def _call(
        self,
        http_method: str,
        method: str,
        error: type[AtDidError],
        json: dict | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        headers = self._headers() if auth else {}
        logger.debug("%s %s", http_method, method)
        try:
            response = await self.client.request(
                http_method, self._url(method), json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise error(f"{method} failed: {e}") from e

        if response.status_code != 200:
            raise error(
                f"{method} failed: {xrpc_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def login(self, identifier: str, password: str) -> dict:
        """Exchange a handle/DID and password for an access token."""
        try:
            response = await self._call(
                "POST",
                "com.atproto.server.createSession",
                AuthenticationError,
                json={"identifier": identifier, "password": password},
                auth=False,
            )
        except AuthenticationError as e:
            # Only 400/401 mean bad credentials; rate limits and outages are the PDS's
            if e.status_code in (400, 401):
                raise
            raise ProviderError(e.message, status_code=e.status_code) from e
        data = json_body(response, ProviderError, "createSession")
        if not isinstance(data, dict) or "accessJwt" not in data or "did" not in data:
            raise ProviderError("createSession returned no session")
        self._access_jwt = data["accessJwt"]
        self.did = data["did"]
        self.handle = data.get("handle", identifier)
        logger.debug("Logged in as %s (%s)", self.handle, self.did)
        return data

    async def request_plc_signature(self) -> None:
        """Ask the PDS to email a one-time code for a PLC operation."""
        await self._call(
            "POST", "com.atproto.identity.requestPlcOperationSignature", ProviderError
        )

    async def get_recommended_credentials(self) -> dict:
        """Rotation keys, alsoKnownAs, verification methods and services the PDS expects."""
        response = await self._call(
            "GET", "com.atproto.identity.getRecommendedDidCredentials", ProviderError
        )
        credentials = json_body(response, ProviderError, "getRecommendedDidCredentials")
        if not isinstance(credentials, dict):
            raise ProviderError("getRecommendedDidCredentials returned no credentials")
        return credentials

    async def sign_plc_operation(self, token: str, params: dict) -> dict:
        """Have the PDS sign an operation for the given end state. Returns the operation."""
        response = await self._call(
            "POST",
            "com.atproto.identity.signPlcOperation",
            SubmissionError,
            json={"token": token, **params},
        )
        data = json_body(response, SubmissionError, "signPlcOperation")
        operation = data.get("operation") if isinstance(data, dict) else None
        if not operation:
            raise SubmissionError("signPlcOperation returned no operation")
        return operation

    async def submit_plc_operation(self, operation: dict) -> None:
        await self._call(
            "POST",
            "com.atproto.identity.submitPlcOperation",
            SubmissionError,
            json={"operation": operation},
        )
