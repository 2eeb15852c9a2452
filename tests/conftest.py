"""Shared fixtures: TLS material, configs and a fake token endpoint."""

from __future__ import annotations

import datetime
import ipaddress
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qsl

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from penningmeester.auth.oauth2 import OAuth2Client
from penningmeester.config import PenningmeesterConfig, ProviderConfig

NOW = 1_700_000_000.0


def make_certificate(
    hostname: str = "localhost",
    *,
    days: int = 30,
    not_before: datetime.datetime | None = None,
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    start = not_before or datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName(hostname),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return cert, key


def write_pem(directory: Path, cert: x509.Certificate, key: ec.EllipticCurvePrivateKey) -> tuple[Path, Path]:
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return cert_path, key_path


@pytest.fixture(scope="session")
def tls_files(tmp_path_factory: pytest.TempPathFactory) -> tuple[Path, Path]:
    cert, key = make_certificate()
    return write_pem(tmp_path_factory.mktemp("tls"), cert, key)


def config_data(tmp_path: Path, tls_files: tuple[Path, Path], **web: Any) -> dict[str, Any]:
    cert_path, key_path = tls_files
    return {
        "log_level": "DEBUG",
        "token_dir": str(tmp_path / "tokens"),
        "expiry_margin": 60,
        "web_server": {
            "hostname": "localhost",
            "bind_address": "127.0.0.1",
            "port": 0,
            "ssl_cert": str(cert_path),
            "ssl_key": str(key_path),
            "callback_timeout": 5,
            "open_browser": False,
            **web,
        },
        "providers": {
            "exact": {
                "client_id": "exact-client",
                "client_secret": "exact-secret",
                "authorize_url": "https://provider.test/authorize",
                "token_url": "https://provider.test/token",
            },
        },
    }


@pytest.fixture
def make_config(tmp_path: Path, tls_files: tuple[Path, Path]) -> Callable[..., PenningmeesterConfig]:
    def _make(**web: Any) -> PenningmeesterConfig:
        return PenningmeesterConfig.model_validate(config_data(tmp_path, tls_files, **web))

    return _make


@dataclass
class FakeTokenEndpoint:
    """Stands in for a provider's token (and verify) endpoint."""

    responses: list[httpx.Response | Exception] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)
    counter: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        self.counter += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.counter}",
            "refresh_token": f"refresh-{self.counter}",
            "expires_in": 600,
            "token_type": "bearer",
        })

    def reply(self, status: int, body: dict[str, Any] | None = None) -> None:
        self.responses.append(httpx.Response(status, json=body or {}))

    def form(self, index: int = -1) -> dict[str, str]:
        return dict(parse_qsl(self.requests[index].content.decode()))

    def client_for(self, provider: ProviderConfig, clock: Callable[[], float] = lambda: NOW) -> OAuth2Client:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return OAuth2Client(provider, http_client=http_client, clock=clock)


@pytest.fixture
def endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


def token_json(access: str = "stored-access", refresh: str = "stored-refresh", expires_at: float = NOW + 3600) -> str:
    return json.dumps({
        "access_token": access,
        "refresh_token": refresh,
        "expires_at": expires_at,
        "scope": "",
    })
