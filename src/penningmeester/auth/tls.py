"""TLS material for the callback listener."""

from __future__ import annotations

import datetime
import ipaddress
import logging
import ssl
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from penningmeester.errors import CertificateError

logger = logging.getLogger("penningmeester.auth.tls")


def load_server_context(cert_path: Path, key_path: Path, hostname: str) -> ssl.SSLContext:
    """Build a server-side SSL context from PEM files.

    The certificate is checked up front so that an unusable certificate fails
    before the listener binds instead of as a browser warning.

    Raises:
        CertificateError: If a file is missing or unreadable, the key does not
            match, the certificate expired or it does not cover ``hostname``.
    """
    for label, path in (("certificate", cert_path), ("private key", key_path)):
        if not path.is_file():
            raise CertificateError(f"TLS {label} {path} does not exist")

    try:
        pem = cert_path.read_bytes()
    except OSError as e:
        raise CertificateError(f"Cannot read TLS certificate {cert_path}: {e}") from e

    try:
        cert = x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CertificateError(f"{cert_path} is not a PEM certificate: {e}") from e

    check_certificate(cert, hostname)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except (OSError, ssl.SSLError) as e:
        raise CertificateError(f"Cannot load TLS key pair ({cert_path}, {key_path}): {e}") from e

    logger.debug("Loaded TLS certificate for %s from %s", hostname, cert_path)
    return context


def check_certificate(
    cert: x509.Certificate,
    hostname: str,
    now: datetime.datetime | None = None,
) -> None:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if now > cert.not_valid_after_utc:
        raise CertificateError(f"TLS certificate expired on {cert.not_valid_after_utc:%Y-%m-%d}")
    if now < cert.not_valid_before_utc:
        raise CertificateError(f"TLS certificate is not valid before {cert.not_valid_before_utc:%Y-%m-%d}")

    names = _certificate_names(cert)
    if not any(_matches(name, hostname) for name in names):
        raise CertificateError(
            f"TLS certificate does not cover {hostname} (valid for: {', '.join(names) or 'nothing'})"
        )


def _certificate_names(cert: x509.Certificate) -> list[str]:
    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
    except x509.ExtensionNotFound:
        return [attr.value for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    names = list(san.get_values_for_type(x509.DNSName))
    names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return names


def _matches(pattern: str, hostname: str) -> bool:
    pattern = pattern.lower()
    hostname = hostname.lower()
    try:
        return ipaddress.ip_address(pattern) == ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if pattern.startswith("*."):
        head, _, tail = hostname.partition(".")
        return bool(head) and tail == pattern[2:]
    return pattern == hostname
