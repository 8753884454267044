"""
Client certificate loading for certificate logins.

A client identity is read from a PKCS#12 file or a PEM bundle. Both are
reduced to a list of PEM-style blocks, then scanned for certificates and
exactly one private key.
"""

import base64
import logging
import os
import re
import ssl
import tempfile
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_PEM_BLOCK_RE = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\s*(.*?)\s*-----END \1-----",
    re.DOTALL,
)

# PKCS#1, PKCS#8, SEC1 (EC) and encrypted PKCS#8 private key blocks
_KEY_BLOCK_TYPES = (
    "RSA PRIVATE KEY",
    "PRIVATE KEY",
    "EC PRIVATE KEY",
    "ENCRYPTED PRIVATE KEY",
)


@dataclass(frozen=True)
class ClientIdentity:
    """Certificate chain plus the matching private key."""
    certificates: tuple[x509.Certificate, ...]
    private_key: object

    @property
    def subject(self) -> str:
        return self.certificates[0].subject.rfc4514_string()

    def to_pem(self) -> bytes:
        """Serialize the chain and an unencrypted PKCS#8 key as one PEM bundle."""
        parts = [cert.public_bytes(serialization.Encoding.PEM) for cert in self.certificates]
        parts.append(self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))
        return b"".join(parts)

    def install(self, ssl_ctx: ssl.SSLContext) -> None:
        """Add this identity to the context's client-certificate set."""
        # load_cert_chain only reads from files
        fd, path = tempfile.mkstemp(suffix=".pem")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.to_pem())
            try:
                ssl_ctx.load_cert_chain(certfile=path)
            except ssl.SSLError as e:
                raise ConfigurationError(f"client certificate rejected by TLS context: {e}") from e
        finally:
            os.unlink(path)


def _pkcs12_to_blocks(data: bytes, password: Optional[bytes]) -> list[tuple[str, bytes]]:
    try:
        bundle = pkcs12.load_pkcs12(data, password)
    except ValueError as e:
        raise ConfigurationError(f"failed converting pkcs12 to PEM: {e}") from e

    blocks = []
    if bundle.cert is not None:
        blocks.append(("CERTIFICATE", bundle.cert.certificate.public_bytes(serialization.Encoding.DER)))
    for extra in bundle.additional_certs:
        blocks.append(("CERTIFICATE", extra.certificate.public_bytes(serialization.Encoding.DER)))
    if bundle.key is not None:
        blocks.append(("PRIVATE KEY", bundle.key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )))
    return blocks


def _pem_to_blocks(data: bytes) -> list[tuple[str, bytes]]:
    blocks = []
    for match in _PEM_BLOCK_RE.finditer(data):
        label = match.group(1).decode("ascii")
        try:
            der = base64.b64decode(b"".join(match.group(2).split()))
        except ValueError as e:
            raise ConfigurationError(f"invalid PEM block {label}: {e}") from e
        blocks.append((label, der))
    return blocks


def parse_private_key(der: bytes, password: Optional[bytes] = None):
    """
    Parse a DER private key in PKCS#1, PKCS#8 or SEC1 (EC) form.

    Raises:
        ConfigurationError: If no supported format matches.
    """
    for passphrase in (None, password) if password else (None,):
        try:
            return serialization.load_der_private_key(der, password=passphrase)
        except (ValueError, TypeError):
            continue
    raise ConfigurationError("failed to parse private key in common formats")


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def identity_from_blocks(blocks: list[tuple[str, bytes]], password: Optional[bytes] = None) -> ClientIdentity:
    """Build a ClientIdentity from (label, der) blocks; exactly one key is allowed."""
    certificates = []
    private_key = None

    for label, der in blocks:
        if label == "CERTIFICATE":
            try:
                certificates.append(x509.load_der_x509_certificate(der))
            except ValueError as e:
                raise ConfigurationError(f"invalid certificate in certificate file: {e}") from e
        elif label in _KEY_BLOCK_TYPES:
            if private_key is not None:
                raise ConfigurationError("found multiple private keys in certificate file")
            private_key = parse_private_key(der, password)

    if not certificates:
        raise ConfigurationError("no certificates found in certificate file")
    if private_key is None:
        raise ConfigurationError("no private key found in certificate file")
    if _public_bytes(private_key.public_key()) != _public_bytes(certificates[0].public_key()):
        raise ConfigurationError("private key does not match the client certificate")

    return ClientIdentity(certificates=tuple(certificates), private_key=private_key)


def load_client_identity(data: bytes, password: Optional[str] = None) -> ClientIdentity:
    """Load a client identity from PKCS#12 or PEM bytes."""
    passphrase = password.encode("utf-8") if password else None
    if b"-----BEGIN " in data:
        blocks = _pem_to_blocks(data)
    else:
        blocks = _pkcs12_to_blocks(data, passphrase)
    identity = identity_from_blocks(blocks, passphrase)
    logger.debug(f"Loaded client certificate {identity.subject} ({len(identity.certificates)} in chain)")
    return identity


def load_client_identity_file(path: str, password: Optional[str] = None) -> ClientIdentity:
    """Read and load a client identity file."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ConfigurationError(f"read certificate file failed: {e}") from e
    return load_client_identity(data, password)
