"""Loading of PEM-encoded certificates and private keys."""

from __future__ import annotations

import base64
import binascii
import os
import re
from collections.abc import Iterator
from pathlib import Path

_PEM_SECTION = re.compile(
    r"-----BEGIN ([^\r\n-]+)-----(.*?)-----END \1-----",
    re.DOTALL,
)
_CERTIFICATE_LABELS = frozenset({"CERTIFICATE", "X509 CERTIFICATE", "TRUSTED CERTIFICATE"})
_PKCS8_KEY_LABEL = "PRIVATE KEY"


class CertificateError(Exception):
    """Raised when a certificate or key file cannot be loaded."""


def _read_pem(path: str | os.PathLike[str], kind: str) -> str:
    try:
        return Path(path).read_bytes().decode("latin-1")
    except OSError as exc:
        raise CertificateError(f"failed to load {kind} file '{os.fspath(path)}'") from exc


def _pem_sections(text: str) -> Iterator[tuple[str, bytes]]:
    for match in _PEM_SECTION.finditer(text):
        label, body = match.group(1), match.group(2)
        try:
            der = base64.b64decode("".join(body.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CertificateError(f"invalid base64 in PEM section '{label}'") from exc
        yield label, der


def load_certificates_from_file(path: str | os.PathLike[str]) -> list[bytes]:
    """Return the DER bytes of every certificate in a PEM file."""
    text = _read_pem(path, "certificate")
    return [der for label, der in _pem_sections(text) if label in _CERTIFICATE_LABELS]


def load_private_key_from_file(path: str | os.PathLike[str]) -> bytes:
    """Return the DER bytes of the last PKCS#8 private key in a PEM file."""
    text = _read_pem(path, "private key")
    keys = [der for label, der in _pem_sections(text) if label == _PKCS8_KEY_LABEL]
    if not keys:
        raise CertificateError("No private key found in file")
    return keys[-1]