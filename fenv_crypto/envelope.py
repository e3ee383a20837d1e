"""Envelope format (version 1) for the `.enc` artifact.

Layout::

    [4-byte ext_len, big-endian][ext, UTF-8, leading dot][16-byte IV][ciphertext]

Ciphertext is AES-256-CBC with PKCS7 padding and runs to the end of the
buffer; there is no length field for it.
"""

import os
import logging
from typing import Callable, Optional, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend

from .errors import CryptoFailure, InvalidInput

FORMAT_VERSION = 1
KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE = 16
EXT_LEN_SIZE = 4
MAX_EXTENSION_LENGTH = 0xFFFFFFFF
DEFAULT_EXTENSION = '.bin'
CIPHER_NAME = 'AES-256-CBC'
PADDING_NAME = 'PKCS7'
_FORBIDDEN_EXTENSION_CHARS = ('/', '\\', '\x00')

RandomSource = Callable[[int], bytes]
BytesLike = Union[bytes, bytearray, memoryview]

log = logging.getLogger(__name__)


# --- Extension policy ---

def extension_from_filename(file_name: Optional[str]) -> str:
    """Return the last-dot extension of `file_name`, including the dot.

    Directory parts are ignored ('/' and '\\'). 'archive.tar.gz' gives '.gz'.
    Names without an extension, dotfiles such as '.bashrc' and names ending
    in a bare dot give DEFAULT_EXTENSION.
    """
    if not file_name:
        return DEFAULT_EXTENSION
    base = file_name.replace('\\', '/').rsplit('/', 1)[-1]
    _, ext = os.path.splitext(base)
    if len(ext) <= 1:
        return DEFAULT_EXTENSION
    return ext


def _check_extension(extension: str) -> None:
    # Decryptors append the extension to an output path.
    if not extension.startswith('.') or len(extension) < 2:
        raise InvalidInput(f"extension must start with '.' and name a type, got {extension!r}")
    if any(c in extension for c in _FORBIDDEN_EXTENSION_CHARS):
        raise InvalidInput(f"extension must not contain path separators or NUL, got {extension!r}")


def _encode_extension(extension: Optional[str]) -> bytes:
    if extension is None or extension == '':
        extension = DEFAULT_EXTENSION
    if not isinstance(extension, str):
        raise InvalidInput("extension must be a string")
    _check_extension(extension)
    try:
        ext_bytes = extension.encode('utf-8')
    except UnicodeEncodeError as e:
        raise InvalidInput("extension is not encodable as UTF-8") from e
    if len(ext_bytes) > MAX_EXTENSION_LENGTH:
        raise InvalidInput("extension too long for the 4-byte length field")
    return ext_bytes


def _as_bytes(data: BytesLike, what: str) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInput(f"{what} must be bytes")
    return bytes(data)


def _draw(random_bytes: RandomSource, size: int) -> bytes:
    try:
        value = random_bytes(size)
    except Exception as e:
        raise CryptoFailure("secure random source failed") from e
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        raise CryptoFailure(f"random source returned wrong amount of data (wanted {size} bytes)")
    return bytes(value)


# --- Framing ---

def pack_envelope(extension: str, iv: bytes, ciphertext: bytes) -> bytes:
    ext_bytes = _encode_extension(extension)
    if len(iv) != IV_SIZE:
        raise InvalidInput(f"IV must be {IV_SIZE} bytes")

    out = bytearray()
    out += len(ext_bytes).to_bytes(EXT_LEN_SIZE, 'big')
    out += ext_bytes
    out += iv
    out += ciphertext
    return bytes(out)


def parse_envelope(envelope: BytesLike) -> Tuple[str, bytes, bytes]:
    """Split an envelope into (extension, iv, ciphertext) without decrypting."""
    blob = _as_bytes(envelope, "envelope")
    if len(blob) < EXT_LEN_SIZE + IV_SIZE + BLOCK_SIZE:
        raise InvalidInput("envelope too small")

    idx = 0
    ext_len = int.from_bytes(blob[idx:idx + EXT_LEN_SIZE], 'big'); idx += EXT_LEN_SIZE
    if len(blob) < EXT_LEN_SIZE + ext_len + IV_SIZE + BLOCK_SIZE:
        raise InvalidInput("envelope corrupted: extension length invalid")
    try:
        extension = blob[idx:idx + ext_len].decode('utf-8')
    except UnicodeDecodeError as e:
        raise InvalidInput("envelope corrupted: extension is not UTF-8") from e
    try:
        _check_extension(extension)
    except InvalidInput as e:
        raise InvalidInput(f"envelope corrupted: {e}") from e
    idx += ext_len
    iv = blob[idx:idx + IV_SIZE]; idx += IV_SIZE
    ciphertext = blob[idx:]

    if len(ciphertext) % BLOCK_SIZE:
        raise InvalidInput("envelope corrupted: ciphertext is not whole blocks")
    return extension, iv, ciphertext


# --- Cipher ---

def _cbc(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend())


def _encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    try:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = _cbc(key, iv).encryptor()
        return encryptor.update(padded) + encryptor.finalize()
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoFailure(f"{CIPHER_NAME} encryption failed") from e


def _decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    try:
        decryptor = _cbc(key, iv).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoFailure("envelope could not be decrypted: wrong key or corrupted data") from e


# --- Builder / opener ---

def build_envelope(
    file_bytes: BytesLike,
    extension: Optional[str],
    *,
    random_bytes: RandomSource = os.urandom,
) -> Tuple[bytes, bytes]:
    """Encrypt `file_bytes` under a fresh AES-256 key.

    Returns (envelope, symmetric_key). The key is only ever handed back to
    the caller for wrapping; it is not stored or logged here.
    `random_bytes(n)` must return n bytes from a secure source; tests may
    inject a deterministic one.
    """
    data = _as_bytes(file_bytes, "file_bytes")
    ext_bytes = _encode_extension(extension)

    key = _draw(random_bytes, KEY_SIZE)
    iv = _draw(random_bytes, IV_SIZE)
    ciphertext = _encrypt(key, iv, data)

    extension = ext_bytes.decode('utf-8')
    envelope = pack_envelope(extension, iv, ciphertext)
    log.debug("Built envelope: %d plaintext bytes, extension %s, %d envelope bytes",
              len(data), extension, len(envelope))
    return envelope, key


def open_envelope(envelope: BytesLike, symmetric_key: bytes) -> Tuple[bytes, str]:
    """Decrypt an envelope. Returns (file_bytes, extension)."""
    key = _as_bytes(symmetric_key, "symmetric_key")
    if len(key) != KEY_SIZE:
        raise InvalidInput(f"symmetric key must be {KEY_SIZE} bytes")
    extension, iv, ciphertext = parse_envelope(envelope)
    return _decrypt(key, iv, ciphertext), extension
