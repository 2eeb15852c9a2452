"""Tests for the callback listener's TLS checks."""

from __future__ import annotations

import datetime
import ssl
from pathlib import Path

import pytest

from conftest import make_certificate, write_pem
from penningmeester.auth.tls import check_certificate, load_server_context
from penningmeester.errors import CertificateError


def test_load_server_context(tls_files: tuple[Path, Path]) -> None:
    context = load_server_context(*tls_files, hostname="localhost")
    assert isinstance(context, ssl.SSLContext)
    assert context.minimum_version is ssl.TLSVersion.TLSv1_2


def test_ip_address_hostname(tls_files: tuple[Path, Path]) -> None:
    load_server_context(*tls_files, hostname="127.0.0.1")


def test_wrong_hostname(tls_files: tuple[Path, Path]) -> None:
    with pytest.raises(CertificateError, match="does not cover penningmeester.local"):
        load_server_context(*tls_files, hostname="penningmeester.local")


def test_expired_certificate(tmp_path: Path) -> None:
    start = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=60)
    cert, key = make_certificate(days=30, not_before=start)
    cert_path, key_path = write_pem(tmp_path, cert, key)

    with pytest.raises(CertificateError, match="expired"):
        load_server_context(cert_path, key_path, "localhost")


def test_not_yet_valid() -> None:
    cert, _ = make_certificate()
    earlier = cert.not_valid_before_utc - datetime.timedelta(hours=1)
    with pytest.raises(CertificateError, match="not valid before"):
        check_certificate(cert, "localhost", now=earlier)


def test_wildcard_certificate() -> None:
    cert, _ = make_certificate("*.vereniging.nl")
    check_certificate(cert, "penningmeester.vereniging.nl")
    with pytest.raises(CertificateError):
        check_certificate(cert, "vereniging.nl")
    with pytest.raises(CertificateError):
        check_certificate(cert, "a.b.vereniging.nl")


def test_key_does_not_match(tmp_path: Path) -> None:
    cert, _ = make_certificate()
    _, other_key = make_certificate()
    cert_path, key_path = write_pem(tmp_path, cert, other_key)

    with pytest.raises(CertificateError, match="key pair"):
        load_server_context(cert_path, key_path, "localhost")


def test_not_a_certificate(tmp_path: Path) -> None:
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_text("hello")
    key_path.write_text("hello")

    with pytest.raises(CertificateError, match="not a PEM certificate"):
        load_server_context(cert_path, key_path, "localhost")
