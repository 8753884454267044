"""Shared test configuration."""

import datetime
import json
import os

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

# Keep a token exported in the developer's shell out of the tests.
for _key in (
    "SAFEGUARD_ACCESS_TOKEN",
    "SAFEGUARD_ACCESS_TOKEN_EXPIRES",
    "SAFEGUARD_APPLIANCE",
    "SAFEGUARD_API_VERSION",
):
    os.environ.pop(_key, None)


APPLIANCE_URL = "https://appliance.example.com"


class FakeAppliance:
    """
    Canned appliance for httpx.MockTransport.

    Routes are keyed by (method, host, path). Each route holds a list of
    responses served in order; the last one repeats. A response may be an
    httpx.Response, a callable taking the request, or an exception to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple, list] = {}

    def add(self, method: str, path: str, *responses, host: str = "*") -> None:
        self.routes[(method, host, path)] = list(responses)

    def add_json(self, method: str, path: str, data, status: int = 200, host: str = "*") -> None:
        self.add(method, path, httpx.Response(status, json=data), host=host)

    def add_login(self, expires_in: int = 3600, rsts_token: str = "rsts-token",
                  user_token: str = "user-token-0123456789") -> None:
        self.add_json("POST", "/RSTS/oauth2/token", {
            "access_token": rsts_token,
            "token_type": "Bearer",
            "expires_in": expires_in,
        })
        self.add_json("POST", "/service/core/v4/Token/LoginResponse", {
            "UserToken": user_token,
            "Status": "Success",
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = (
            self.routes.get((request.method, request.url.host, request.url.path))
            or self.routes.get((request.method, "*", request.url.path))
        )
        if not route:
            return httpx.Response(404, text=f"no route for {request.method} {request.url.path}")

        response = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        # Routes repeat, so hand out a fresh copy each time
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str = None, path: str = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method)
            and (path is None or r.url.path == path)
        ]


def json_body(request: httpx.Request):
    return json.loads(request.content)


@pytest.fixture
def appliance() -> FakeAppliance:
    return FakeAppliance()


def make_identity(common_name: str = "client.example.com"):
    """Generate an EC key and a self-signed certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return key, cert


def make_pkcs12(password: str = "changeit", common_name: str = "client.example.com") -> bytes:
    key, cert = make_identity(common_name)
    encryption = (
        serialization.BestAvailableEncryption(password.encode())
        if password else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(b"client", key, cert, None, encryption)


@pytest.fixture
def pkcs12_file(tmp_path):
    path = tmp_path / "client.pfx"
    path.write_bytes(make_pkcs12("changeit"))
    return str(path)
