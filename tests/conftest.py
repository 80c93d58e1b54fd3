"""Shared fixtures: an in-memory PDS and PLC directory behind httpx.MockTransport."""

import json
from urllib.parse import urlsplit

import httpx
import pytest

from atdid.config import Settings
from atdid.keys import import_key

PDS = "https://pds.test"
PLC = "https://plc.test"

ALICE_DID = "did:plc:s53e6k6sirobjtz5s6vdddwr"
ALICE_HANDLE = "alice.example"
ALICE_PASSWORD = "correct horse"
EMAIL_CODE = "ABCDE-12345"

WEB_DID = "did:web:example.com"
WEB_HANDLE = "example.com"

PDS_ROTATION_KEY = import_key("11" * 32).did
BACKUP_ROTATION_KEY = import_key("22" * 32).did
SIGNING_KEY = import_key("33" * 32).did


def _op(aka, rotation_keys, prev=None):
    return {
        "type": "plc_operation",
        "rotationKeys": list(rotation_keys),
        "alsoKnownAs": list(aka),
        "verificationMethods": {"atproto": SIGNING_KEY},
        "services": {
            "atproto_pds": {
                "type": "AtprotoPersonalDataServer",
                "endpoint": PDS,
            }
        },
        "prev": prev,
        "sig": "c2ln",
    }


class FakeNetwork:
    """A PDS with one account plus the PLC directory it publishes to."""

    def __init__(self):
        self.accounts = {
            ALICE_HANDLE: {"did": ALICE_DID, "password": ALICE_PASSWORD},
            WEB_HANDLE: {"did": WEB_DID, "password": ALICE_PASSWORD},
        }
        self.log = [
            {
                "did": ALICE_DID,
                "operation": _op([f"at://{ALICE_HANDLE}"], [PDS_ROTATION_KEY]),
                "cid": "bafyreigenesis",
                "nullified": False,
                "createdAt": "2024-01-01T00:00:00.000Z",
            },
            {
                "did": ALICE_DID,
                "operation": _op(
                    [f"at://{ALICE_HANDLE}", "https://alice.example.org"],
                    [PDS_ROTATION_KEY, BACKUP_ROTATION_KEY],
                    prev="bafyreigenesis",
                ),
                "cid": "bafyreisecond",
                "nullified": False,
                "createdAt": "2024-02-01T00:00:00.000Z",
            },
        ]
        self.recommended = {
            "rotationKeys": [PDS_ROTATION_KEY],
            "alsoKnownAs": [f"at://{ALICE_HANDLE}"],
            "verificationMethods": {"atproto": SIGNING_KEY},
            "services": {
                "atproto_pds": {"type": "AtprotoPersonalDataServer", "endpoint": PDS}
            },
        }
        self.web_documents = {
            "https://example.com/.well-known/did.json": {
                "id": "did:web:example.com",
                "alsoKnownAs": ["at://example.com"],
            },
        }
        self.requests: list[httpx.Request] = []
        self.codes_sent = 0
        self.signed: list[dict] = []
        self.submitted: list[dict] = []
        self.fail_request_code = False
        self.fail_submit = False

    # -- helpers -------------------------------------------------------------

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(method)]

    def document(self) -> dict:
        op = self.log[-1]["operation"]
        return {
            "@context": ["https://www.w3.org/ns/did/v1"],
            "id": ALICE_DID,
            "alsoKnownAs": op["alsoKnownAs"],
            "verificationMethod": [
                {
                    "id": f"{ALICE_DID}#atproto",
                    "type": "Multikey",
                    "controller": ALICE_DID,
                    "publicKeyMultibase": SIGNING_KEY[len("did:key:"):],
                }
            ],
            "service": [
                {
                    "id": "#atproto_pds",
                    "type": "AtprotoPersonalDataServer",
                    "serviceEndpoint": PDS,
                }
            ],
        }

    @staticmethod
    def _error(status: int, error: str, message: str) -> httpx.Response:
        return httpx.Response(status, json={"error": error, "message": message})

    def _authorized(self, request: httpx.Request) -> bool:
        return request.headers.get("Authorization") == "Bearer access-jwt"

    # -- transport -----------------------------------------------------------

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = urlsplit(str(request.url))
        origin = f"{url.scheme}://{url.netloc}"

        if origin == PDS and url.path.startswith("/xrpc/"):
            return self._xrpc(request, url.path[len("/xrpc/"):])
        if origin == PLC:
            return self._plc(url.path)
        document = self.web_documents.get(f"{origin}{url.path}")
        if document is not None:
            return httpx.Response(200, json=document)
        return httpx.Response(404, text="Not Found")

    def _xrpc(self, request: httpx.Request, method: str) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}

        if method == "com.atproto.identity.resolveHandle":
            account = self.accounts.get(request.url.params.get("handle"))
            if account is None:
                return self._error(400, "InvalidRequest", "Unable to resolve handle")
            return httpx.Response(200, json={"did": account["did"]})

        if method == "com.atproto.server.createSession":
            account = self.accounts.get(body.get("identifier"))
            if account is None or account["password"] != body.get("password"):
                return self._error(
                    401, "AuthenticationRequired", "Invalid identifier or password"
                )
            return httpx.Response(
                200,
                json={
                    "accessJwt": "access-jwt",
                    "refreshJwt": "refresh-jwt",
                    "did": account["did"],
                    "handle": body["identifier"],
                },
            )

        if not self._authorized(request):
            return self._error(401, "AuthenticationRequired", "Authentication Required")

        if method == "com.atproto.identity.requestPlcOperationSignature":
            if self.fail_request_code:
                return self._error(429, "RateLimitExceeded", "Rate Limit Exceeded")
            self.codes_sent += 1
            return httpx.Response(200)

        if method == "com.atproto.identity.getRecommendedDidCredentials":
            return httpx.Response(200, json=self.recommended)

        if method == "com.atproto.identity.signPlcOperation":
            if body.pop("token", None) != EMAIL_CODE:
                return self._error(400, "InvalidToken", "Token is invalid")
            self.signed.append(body)
            operation = {
                "type": "plc_operation",
                **body,
                "prev": self.log[-1]["cid"],
                "sig": "c2lnbmVk",
            }
            return httpx.Response(200, json={"operation": operation})

        if method == "com.atproto.identity.submitPlcOperation":
            if self.fail_submit:
                return self._error(
                    400, "InvalidRequest", "Proposed prev does not match the most recent operation"
                )
            operation = body["operation"]
            self.submitted.append(operation)
            self.log.append(
                {
                    "did": ALICE_DID,
                    "operation": operation,
                    "cid": f"bafyrei{len(self.log)}",
                    "nullified": False,
                    "createdAt": "2024-03-01T00:00:00.000Z",
                }
            )
            return httpx.Response(200)

        return self._error(501, "MethodNotImplemented", f"Method Not Implemented: {method}")

    def _plc(self, path: str) -> httpx.Response:
        if path == f"/{ALICE_DID}":
            return httpx.Response(200, json=self.document())
        if path == f"/{ALICE_DID}/log/audit":
            return httpx.Response(200, json=self.log)
        return httpx.Response(404, json={"message": "DID not registered"})


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def transport(network):
    return httpx.MockTransport(network)


@pytest.fixture
def settings():
    return Settings(pds=PDS, plc_directory=PLC, password=ALICE_PASSWORD)
