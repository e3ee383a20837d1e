import os
import stat
import logging
import subprocess
from typing import Optional, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.backends import default_backend

from .envelope import KEY_SIZE
from .errors import CryptoFailure, InvalidInput, InvalidPrivateKey, InvalidPublicKey

PUBLIC_KEY_HEADER = '-----BEGIN PUBLIC KEY-----'
MIN_RSA_KEY_BITS = 2048
OAEP_HASH_NAME = 'SHA-256'

DEFAULT_PKCS11_LIB = '/opt/homebrew/lib/libykcs11.dylib'
DEFAULT_PKCS11_TOOL = '/opt/homebrew/bin/pkcs11-tool'
# PIV slot 9d (key management) on a YubiKey
DEFAULT_KEY_ID = b'\x03'

PemText = Union[str, bytes]

log = logging.getLogger(__name__)


def _oaep() -> padding.OAEP:
    # OAEP and MGF1 hash are both pinned; a decryptor using library defaults
    # (SHA-1) will not recover the key.
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


# --- Key loading ---

def load_public_key(pem: PemText) -> rsa.RSAPublicKey:
    """Parse and validate a recipient public key given as SPKI PEM text.

    Anything not starting with '-----BEGIN PUBLIC KEY-----' is rejected before
    parsing. Non-RSA keys and keys under MIN_RSA_KEY_BITS are rejected too.
    Raises InvalidPublicKey.
    """
    if isinstance(pem, (bytes, bytearray)):
        try:
            pem = bytes(pem).decode('ascii')
        except UnicodeDecodeError as e:
            raise InvalidPublicKey("public key is not PEM text") from e
    if not isinstance(pem, str):
        raise InvalidPublicKey("public key must be PEM text")

    text = pem.lstrip()
    if not text.startswith(PUBLIC_KEY_HEADER):
        raise InvalidPublicKey(f"public key must be SPKI PEM starting with '{PUBLIC_KEY_HEADER}'")

    try:
        key = serialization.load_pem_public_key(text.encode('ascii'), backend=default_backend())
    except (ValueError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise InvalidPublicKey("public key could not be parsed") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidPublicKey("public key is not an RSA key")
    if key.key_size < MIN_RSA_KEY_BITS:
        raise InvalidPublicKey(
            f"RSA key is {key.key_size} bits; at least {MIN_RSA_KEY_BITS} are required"
        )

    log.debug("Loaded RSA public key (%d bits)", key.key_size)
    return key


def load_public_key_file(file_path: str) -> rsa.RSAPublicKey:
    with open(file_path, 'rb') as key_file:
        return load_public_key(key_file.read())


def load_private_key(pem: PemText, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    if isinstance(pem, str):
        pem = pem.encode('utf-8')
    try:
        key = serialization.load_pem_private_key(bytes(pem), password=password, backend=default_backend())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidPrivateKey("private key could not be loaded") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidPrivateKey("private key is not an RSA key")
    return key


def load_private_key_file(file_path: str, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    with open(file_path, 'rb') as key_file:
        return load_private_key(key_file.read(), password=password)


def resolve_public_key(public_key: Union[rsa.RSAPublicKey, PemText]) -> rsa.RSAPublicKey:
    """Accept a loaded key or PEM text; PEM goes through load_public_key."""
    if isinstance(public_key, rsa.RSAPublicKey):
        if public_key.key_size < MIN_RSA_KEY_BITS:
            raise InvalidPublicKey(
                f"RSA key is {public_key.key_size} bits; at least {MIN_RSA_KEY_BITS} are required"
            )
        return public_key
    return load_public_key(public_key)


def resolve_private_key(private_key: Union[rsa.RSAPrivateKey, PemText],
                        password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key
    return load_private_key(private_key, password=password)


def generate_rsa_keys(output_prefix: str, key_size: int = 4096) -> Tuple[str, str]:
    """Generate an RSA keypair and save to '<prefix>_private.pem' & '<prefix>_public.pem'.

    The public half is SPKI PEM, the form load_public_key expects.
    Returns (private_path, public_path). Raises FileExistsError if exists.
    """
    if key_size < MIN_RSA_KEY_BITS:
        raise ValueError(f"key_size must be at least {MIN_RSA_KEY_BITS}")

    private_key_file = f"{output_prefix}_private.pem"
    public_key_file = f"{output_prefix}_public.pem"

    if os.path.exists(private_key_file) or os.path.exists(public_key_file):
        raise FileExistsError(
            f"File '{private_key_file}' or '{public_key_file}' already exists."
        )

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size, backend=default_backend())
    private_key = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_key = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )

    private_fd = os.open(
        private_key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR
    )
    with os.fdopen(private_fd, 'wb') as priv_file:
        priv_file.write(private_key)

    with open(public_key_file, 'wb') as pub_file:
        pub_file.write(public_key)

    log.info("Generated %d-bit RSA key pair at '%s'", key_size, output_prefix)
    return private_key_file, public_key_file


# --- Wrap / unwrap ---

def wrap_key(symmetric_key: bytes, recipient_public_key: Union[rsa.RSAPublicKey, PemText]) -> bytes:
    """RSA-OAEP (SHA-256, MGF1-SHA-256, no label) encrypt a 32-byte key.

    The result is exactly the modulus size in bytes (256 for RSA-2048).
    """
    if not isinstance(symmetric_key, (bytes, bytearray, memoryview)) or len(bytes(symmetric_key)) != KEY_SIZE:
        raise InvalidInput(f"symmetric key must be {KEY_SIZE} bytes")
    public_key = resolve_public_key(recipient_public_key)

    try:
        wrapped = public_key.encrypt(bytes(symmetric_key), _oaep())
    except (ValueError, TypeError) as e:
        raise CryptoFailure(f"RSA-OAEP ({OAEP_HASH_NAME}) key wrapping failed") from e
    return wrapped


def unwrap_key(wrapped_key: bytes, private_key: Union[rsa.RSAPrivateKey, PemText],
               password: Optional[bytes] = None) -> bytes:
    key = resolve_private_key(private_key, password=password)
    modulus_bytes = (key.key_size + 7) // 8
    if len(wrapped_key) != modulus_bytes:
        raise CryptoFailure(
            f"wrapped key is {len(wrapped_key)} bytes; this private key expects {modulus_bytes}"
        )

    try:
        symmetric_key = key.decrypt(bytes(wrapped_key), _oaep())
    except ValueError as e:
        raise CryptoFailure("wrapped key could not be decrypted with this private key") from e
    if len(symmetric_key) != KEY_SIZE:
        raise CryptoFailure("unwrapped key has the wrong size")
    return symmetric_key


# --- Hardware token (PKCS#11) ---

def export_hardware_public_key(pkcs11_lib: Optional[str] = None, key_id: bytes = DEFAULT_KEY_ID) -> str:
    """Read the RSA public key from a PKCS#11 token and return it as SPKI PEM."""
    try:
        import pkcs11  # type: ignore
        from pkcs11 import KeyType, ObjectClass  # type: ignore
        from pkcs11.util.rsa import encode_rsa_public_key  # type: ignore
    except Exception as e:
        raise ImportError("python-pkcs11 is required for hardware key operations. Install it via 'pip install python-pkcs11'.") from e

    lib = pkcs11.lib(pkcs11_lib or DEFAULT_PKCS11_LIB)
    token = lib.get_token()
    with token.open() as session:
        public_key = session.get_key(
            object_class=ObjectClass.PUBLIC_KEY,
            key_type=KeyType.RSA,
            id=key_id,
        )
        der = encode_rsa_public_key(public_key)

    try:
        # PKCS#1 RSAPublicKey DER; cryptography accepts it here
        key = serialization.load_der_public_key(der, backend=default_backend())
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidPublicKey("token returned an unreadable public key") from e
    pem = key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode('ascii')
    load_public_key(pem)
    return pem


def unwrap_key_with_hardware(wrapped_key: bytes, pin: str, pkcs11_lib: Optional[str] = None, *,
                             key_id: bytes = DEFAULT_KEY_ID, tool: str = DEFAULT_PKCS11_TOOL) -> bytes:
    """Unwrap with the token's private key through pkcs11-tool (RSA-PKCS-OAEP, SHA-256)."""
    lib_path = pkcs11_lib or DEFAULT_PKCS11_LIB
    pkcs11_command = [
        tool,
        '--module', lib_path,
        '--id', key_id.hex(),
        '--decrypt',
        '-m', 'RSA-PKCS-OAEP',
        '--hash-algorithm=sha256',
        '--login',
        '--pin', pin,
    ]
    try:
        proc = subprocess.Popen(pkcs11_command, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise CryptoFailure(f"could not run '{tool}'") from e
    out, err = proc.communicate(input=bytes(wrapped_key))
    if proc.returncode != 0:
        raise CryptoFailure(f"pkcs11-tool failed: {err.decode(errors='ignore').strip()}")
    if len(out) != KEY_SIZE:
        raise CryptoFailure("unwrapped key has the wrong size")
    return out
