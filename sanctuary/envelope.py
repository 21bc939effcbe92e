"""
Sanctuary - Envelope Encryption

A backup payload is encrypted under a fresh random DEK with
XSalsa20-Poly1305 (authenticated), and the DEK is sealed separately for the
recovery and recall public keys. The service only ever holds ciphertext and
sealed DEKs.

Also holds the two byte formats around the envelope:
- the file set packed as a deterministic gzip tar
- the archive stored in the blob store: header JSON + ciphertext
"""

import base64
import gzip
import io
import json
import struct
import tarfile
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import nacl.utils
from nacl.exceptions import CryptoError
from nacl.public import PrivateKey, PublicKey, SealedBox
from nacl.secret import SecretBox

from .errors import UnwrapError, ValidationError

RECIPIENTS = ("recovery", "recall")

ARCHIVE_MAGIC = b"SNCT1"
_LENGTH = struct.Struct(">I")


@dataclass
class Envelope:
    """Encrypted payload plus the DEK sealed for each recipient (base64)."""
    ciphertext: bytes
    wrapped_keys: Dict[str, str]


def generate_dek() -> bytes:
    return nacl.utils.random(SecretBox.KEY_SIZE)


def wrap_key(dek: bytes, recipient: PublicKey) -> str:
    """Seal a DEK for one recipient public key. Returns base64."""
    sealed = SealedBox(recipient).encrypt(dek)
    return base64.b64encode(sealed).decode('utf-8')


def unwrap_key(wrapped_b64: str, secret: PrivateKey) -> bytes:
    """
    Open a sealed DEK.

    Raises UnwrapError on a wrong key or any tampering; never returns bytes
    that were not sealed for this secret.
    """
    if secret is None:
        raise UnwrapError("No secret available (key set is locked)")
    try:
        sealed = base64.b64decode(wrapped_b64, validate=True)
    except (ValueError, TypeError):
        raise UnwrapError("Wrapped key is not valid base64")
    try:
        dek = SealedBox(secret).decrypt(sealed)
    except CryptoError:
        raise UnwrapError("Wrapped key could not be opened with this secret")
    if len(dek) != SecretBox.KEY_SIZE:
        raise UnwrapError("Unwrapped key has the wrong length")
    return dek


def encrypt_payload(payload: bytes, dek: bytes) -> bytes:
    """nonce || ciphertext || tag."""
    return bytes(SecretBox(dek).encrypt(payload))


def decrypt_payload(ciphertext: bytes, dek: bytes) -> bytes:
    try:
        return SecretBox(dek).decrypt(ciphertext)
    except CryptoError:
        raise UnwrapError("Backup ciphertext failed authentication")


def seal(payload: bytes, recovery_pub: PublicKey, recall_pub: PublicKey) -> Envelope:
    """Encrypt a payload for both the recovery and recall keys."""
    dek = generate_dek()
    return Envelope(
        ciphertext=encrypt_payload(payload, dek),
        wrapped_keys={
            "recovery": wrap_key(dek, recovery_pub),
            "recall": wrap_key(dek, recall_pub),
        },
    )


def open_envelope(ciphertext: bytes, wrapped_keys: Dict[str, str],
                  secret: PrivateKey, recipient: str = "recovery") -> bytes:
    """Decrypt a payload using one recipient's secret and its wrapped DEK."""
    if recipient not in RECIPIENTS:
        raise ValidationError(f"Unknown recipient {recipient!r}")
    wrapped = wrapped_keys.get(recipient)
    if not wrapped:
        raise UnwrapError(f"No wrapped key for {recipient}")
    dek = unwrap_key(wrapped, secret)
    return decrypt_payload(ciphertext, dek)


# File set packing

def pack_files(files: Dict[str, Union[bytes, str]]) -> bytes:
    """
    Pack named files into a gzip tar.

    Entries are sorted and timestamps zeroed so the same files always
    produce the same bytes.
    """
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for name in sorted(files):
                content = files[name]
                if isinstance(content, str):
                    content = content.encode('utf-8')
                info = tarfile.TarInfo(name=name)
                info.size = len(content)
                info.mtime = 0
                info.mode = 0o600
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def unpack_files(blob: bytes) -> Dict[str, bytes]:
    files = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                if member.name.startswith("/") or ".." in member.name.split("/"):
                    raise ValidationError(f"Unsafe path in backup: {member.name}")
                files[member.name] = tar.extractfile(member).read()
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ValidationError(f"Backup payload is not a valid archive: {e}")
    return files


# Blob-store archive

def pack_archive(header: Dict, ciphertext: bytes) -> bytes:
    """MAGIC || u32 header length || header JSON || ciphertext."""
    header_bytes = json.dumps(header, sort_keys=True, separators=(',', ':')).encode('utf-8')
    return ARCHIVE_MAGIC + _LENGTH.pack(len(header_bytes)) + header_bytes + ciphertext


def unpack_archive(blob: bytes) -> Tuple[Dict, bytes]:
    prefix = len(ARCHIVE_MAGIC)
    if len(blob) < prefix + _LENGTH.size or not blob.startswith(ARCHIVE_MAGIC):
        raise ValidationError("Not a Sanctuary backup archive")
    (length,) = _LENGTH.unpack_from(blob, prefix)
    start = prefix + _LENGTH.size
    if start + length > len(blob):
        raise ValidationError("Backup archive header is truncated")
    try:
        header = json.loads(blob[start:start + length].decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Backup archive header is not valid JSON")
    return header, blob[start + length:]
