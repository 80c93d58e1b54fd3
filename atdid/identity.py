"""
ATProtocol Identity Resolution

Read-only lookups against the identity layer:
- Resolve handles to DIDs (via the PDS)
- Resolve DIDs to DID documents (did:plc via the PLC directory, did:web via HTTPS)
- Fetch the PLC audit log for a did:plc
"""

import logging
from urllib.parse import unquote

import httpx

from .config import DEFAULT_PDS, PLC_DIRECTORY
from .errors import (
    ResolutionError,
    UnsupportedMethod,
    UnsupportedOperation,
    json_body,
    xrpc_error_message,
)

logger = logging.getLogger(__name__)

PLC_PREFIX = "did:plc:"
WEB_PREFIX = "did:web:"


def clean_handle(handle: str) -> str:
    """Strip whitespace and a leading @ (as in @alice.bsky.social)."""
    return handle.strip().lstrip("@")


def did_web_url(did: str) -> str:
    """
    Map a did:web to the URL of its DID document.

    did:web:example.com            -> https://example.com/.well-known/did.json
    did:web:example.com%3A8080     -> https://example.com:8080/.well-known/did.json
    did:web:example.com:user:alice -> https://example.com/user/alice/did.json
    """
    if not did.startswith(WEB_PREFIX):
        raise UnsupportedMethod(f"Not a did:web identifier: {did}")

    parts = [unquote(part) for part in did[len(WEB_PREFIX):].split(":")]
    host, path = parts[0], parts[1:]
    if not host:
        raise ResolutionError(f"did:web has no domain: {did}")
    if path:
        return f"https://{host}/{'/'.join(path)}/did.json"
    return f"https://{host}/.well-known/did.json"


def latest_operation(log: list[dict]) -> dict:
    """Return the operation of the most recent non-nullified audit log entry."""
    for entry in reversed(log):
        if not entry.get("nullified"):
            return entry["operation"]
    raise ResolutionError("Audit log has no active operations")


class IdentityResolver:
    """Handle, DID document and audit log lookups. No login needed."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        pds: str = DEFAULT_PDS,
        plc_directory: str = PLC_DIRECTORY,
    ):
        self.client = client
        self.pds = pds.rstrip("/")
        self.plc_directory = plc_directory.rstrip("/")

    async def _get_json(self, url: str, what: str, params: dict | None = None):
        logger.debug("GET %s", url)
        try:
            response = await self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ResolutionError(f"Error fetching {what}: {e}") from e

        if response.status_code != 200:
            raise ResolutionError(
                f"Failed to fetch {what}: {xrpc_error_message(response)}",
                status_code=response.status_code,
            )
        return json_body(response, ResolutionError, what)

    async def resolve(self, handle_or_did: str) -> str:
        """
        Resolve a handle to a DID. DIDs pass through unchanged.

        Resolution goes through the PDS's resolveHandle endpoint, which
        in turn checks DNS TXT and /.well-known/atproto-did.
        """
        value = clean_handle(handle_or_did)
        if value.startswith("did:"):
            return value

        data = await self._get_json(
            f"{self.pds}/xrpc/com.atproto.identity.resolveHandle",
            f"DID for handle {value}",
            params={"handle": value},
        )
        did = data.get("did") if isinstance(data, dict) else None
        if not did:
            raise ResolutionError(f"Could not resolve handle: {value}")
        logger.debug("Resolved %s to %s", value, did)
        return did

    async def get_did_document(self, did: str) -> dict:
        """
        Fetch the DID document for a DID.

        Supports:
        - did:plc: (PLC directory lookup)
        - did:web: (HTTPS well-known lookup)
        """
        if did.startswith(PLC_PREFIX):
            url = f"{self.plc_directory}/{did}"
        elif did.startswith(WEB_PREFIX):
            url = did_web_url(did)
        else:
            raise UnsupportedMethod(f"Unsupported DID method: {did}")
        return await self._get_json(url, f"DID document for {did}")

    async def get_audit_log(self, did: str) -> list[dict]:
        """
        Fetch the full operation history for a did:plc, oldest first.

        Entries carry did, operation, cid, nullified and createdAt.
        """
        if not did.startswith(PLC_PREFIX):
            raise UnsupportedOperation(
                "Audit log is only available for did:plc: identifiers"
            )
        log = await self._get_json(
            f"{self.plc_directory}/{did}/log/audit", f"audit log for {did}"
        )
        if not isinstance(log, list):
            raise ResolutionError(f"Unexpected audit log format for {did}")
        return log
