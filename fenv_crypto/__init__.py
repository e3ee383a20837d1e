"""
Hybrid RSA-OAEP + AES-256-CBC file envelope encryption.

High-level API:
- encrypt(file_bytes, file_name, public_key) -> EncryptedFile(enc_file, key_file, extension)
- decrypt(enc_file, key_file, private_key) -> DecryptedFile(data, extension)
- encrypt_file(input_path, output_dir=None, public_key=...) -> (enc_path, key_path)
- decrypt_file(enc_path, key_path=None, output_path=None, private_key=..., use_hardware_key=False, pin=None) -> output_path
- encrypt_batch(items, public_key, max_workers=4) -> BatchResult
- encrypt_folder(folder_path, public_key, output_folder=None, recursive=False) -> BatchResult
- build_envelope(file_bytes, extension) -> (envelope, symmetric_key)
- wrap_key(symmetric_key, public_key) -> wrapped_key
- load_public_key(pem) -> RSAPublicKey
- generate_rsa_keys(output_prefix) -> (private_path, public_path)

Exceptions are raised on errors instead of printing; see fenv_crypto.errors.
"""

from .envelope import (
    FORMAT_VERSION,
    DEFAULT_EXTENSION,
    build_envelope,
    extension_from_filename,
    open_envelope,
    parse_envelope,
)
from .errors import (
    FenvError,
    InvalidKeyError,
    InvalidPublicKey,
    InvalidKeyFormat,
    InvalidPrivateKey,
    InvalidInput,
    CryptoFailure,
)
from .keywrap import (
    DEFAULT_PKCS11_LIB,
    generate_rsa_keys,
    load_public_key,
    load_public_key_file,
    load_private_key,
    load_private_key_file,
    wrap_key,
    unwrap_key,
    export_hardware_public_key,
)
from .file_crypto import (
    EncryptedFile,
    DecryptedFile,
    FileOutcome,
    BatchResult,
    encrypt,
    decrypt,
    encrypt_file,
    decrypt_file,
    encrypt_batch,
    encrypt_folder,
    output_base_name,
    output_paths,
)

__all__ = [
    "FORMAT_VERSION",
    "DEFAULT_EXTENSION",
    "build_envelope",
    "extension_from_filename",
    "open_envelope",
    "parse_envelope",
    "FenvError",
    "InvalidKeyError",
    "InvalidPublicKey",
    "InvalidKeyFormat",
    "InvalidPrivateKey",
    "InvalidInput",
    "CryptoFailure",
    "DEFAULT_PKCS11_LIB",
    "generate_rsa_keys",
    "load_public_key",
    "load_public_key_file",
    "load_private_key",
    "load_private_key_file",
    "wrap_key",
    "unwrap_key",
    "export_hardware_public_key",
    "EncryptedFile",
    "DecryptedFile",
    "FileOutcome",
    "BatchResult",
    "encrypt",
    "decrypt",
    "encrypt_file",
    "decrypt_file",
    "encrypt_batch",
    "encrypt_folder",
    "output_base_name",
    "output_paths",
]
