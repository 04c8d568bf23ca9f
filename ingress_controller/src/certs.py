from __future__ import annotations

import base64
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import ExtensionOID

from ingress_controller.src.errors import CertificateError

LOGGER = logging.getLogger(__name__)

TLS_SECRET_TYPE = "kubernetes.io/tls"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"
CA_CERT_KEY = "ca.crt"

_PEM_BEGIN = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----")


@dataclass(frozen=True)
class Certificate:
    """PEM certificate chain and key as stored in the configuration."""

    cert_bytes: bytes
    key_bytes: bytes
    id: str = ""

    def to_dict(self) -> dict[str, str]:
        out = {
            "cert_bytes": base64.b64encode(self.cert_bytes).decode("ascii"),
            "key_bytes": base64.b64encode(self.key_bytes).decode("ascii"),
        }
        if self.id:
            out["id"] = self.id
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Certificate:
        return cls(
            cert_bytes=base64.b64decode(data.get("cert_bytes", "")),
            key_bytes=base64.b64decode(data.get("key_bytes", "")),
            id=data.get("id", ""),
        )


@dataclass(frozen=True)
class ParsedCertificate:
    certificate: Certificate
    dns_names: tuple[str, ...]
    not_after: datetime


def parse_certificate(certificate: Certificate) -> ParsedCertificate:
    """Decode the leaf certificate and extract its DNS names and expiry.

    The first PEM block must be a ``CERTIFICATE``; a private key or any other
    block type in front of it is rejected.
    """
    match = _PEM_BEGIN.search(certificate.cert_bytes)
    if match is None:
        raise CertificateError("failed to decode PEM block containing certificate")
    block_type = match.group(1).decode("ascii")
    if block_type != "CERTIFICATE":
        raise CertificateError(f"unexpected PEM block type {block_type!r}, want 'CERTIFICATE'")

    try:
        cert = x509.load_pem_x509_certificate(certificate.cert_bytes)
    except ValueError as exc:
        raise CertificateError(f"failed to parse certificate: {exc}") from exc

    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        dns_names = tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        dns_names = ()

    return ParsedCertificate(
        certificate=certificate,
        dns_names=dns_names,
        not_after=cert.not_valid_after_utc,
    )


@dataclass(frozen=True)
class DomainKey:
    """A DNS name split on its first label: ``a.example.com`` -> ``("a", "example.com")``."""

    host: str
    domain: str

    @classmethod
    def parse(cls, name: str) -> DomainKey:
        host, _, domain = name.lower().partition(".")
        return cls(host=host, domain=domain)

    def wildcard(self) -> DomainKey:
        return DomainKey(host="*", domain=self.domain)


@dataclass
class CertRef:
    parsed: ParsedCertificate
    in_use: bool = False


class CertificateIndex:
    """Domain-indexed certificate table with wildcard fallback and in-use tracking.

    When two certificates cover the same ``DomainKey``, the one expiring last
    is kept.  Certificates that fail to parse are logged and left out.
    """

    def __init__(self) -> None:
        self._refs: dict[DomainKey, CertRef] = {}

    @classmethod
    def build(cls, certificates: Iterable[Certificate]) -> CertificateIndex:
        index = cls()
        for certificate in certificates:
            try:
                parsed = parse_certificate(certificate)
            except CertificateError as exc:
                LOGGER.warning("Skipping certificate %s: %s", certificate.id or "<unnamed>", exc)
                continue
            for name in parsed.dns_names:
                index._add_if_newer(DomainKey.parse(name), parsed)
        return index

    def _add_if_newer(self, key: DomainKey, parsed: ParsedCertificate) -> None:
        current = self._refs.get(key)
        if current is None or parsed.not_after > current.parsed.not_after:
            self._refs[key] = CertRef(parsed=parsed)

    def lookup(self, hostname: str) -> Certificate | None:
        ref = self._resolve(hostname)
        return ref.parsed.certificate if ref is not None else None

    def _resolve(self, hostname: str) -> CertRef | None:
        key = DomainKey.parse(hostname)
        ref = self._refs.get(key)
        if ref is None:
            ref = self._refs.get(key.wildcard())
        return ref

    def mark_in_use(self, hostname: str) -> bool:
        ref = self._resolve(hostname)
        if ref is None:
            return False
        ref.in_use = True
        return True

    def in_use(self) -> list[Certificate]:
        """Certificates referenced by at least one in-use key, once each, ordered by bytes."""
        selected = {ref.parsed.certificate for ref in self._refs.values() if ref.in_use}
        return sorted(selected, key=lambda cert: (cert.cert_bytes, cert.key_bytes, cert.id))


def route_hostname(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def select_certificates(
    certificates: Iterable[Certificate], hostnames: Iterable[str]
) -> list[Certificate]:
    """Keep only the certificates that best serve at least one of ``hostnames``."""
    index = CertificateIndex.build(certificates)
    for hostname in hostnames:
        if hostname:
            index.mark_in_use(hostname)
    return index.in_use()


def certificate_from_secret(secret: Any) -> Certificate:
    """Build a certificate from a ``kubernetes.io/tls`` secret.

    ``V1Secret.data`` values are base64 encoded as returned by the API server.
    """
    metadata = secret.metadata
    data = secret.data or {}
    return Certificate(
        cert_bytes=decode_secret_value(data.get(TLS_CERT_KEY)),
        key_bytes=decode_secret_value(data.get(TLS_PRIVATE_KEY_KEY)),
        id=f"{metadata.namespace}/{metadata.name}",
    )


def decode_secret_value(value: str | None) -> bytes:
    if not value:
        return b""
    return base64.b64decode(value)
