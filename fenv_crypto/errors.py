"""Exception types raised by fenv_crypto.

Messages never carry key material, IVs or PINs.
"""


class FenvError(Exception):
    """Base class for all fenv_crypto errors."""


class InvalidKeyError(FenvError, ValueError):
    """An RSA key could not be used."""


class InvalidPublicKey(InvalidKeyError):
    """Recipient public key is not SPKI PEM, not RSA, or too small."""


# Name used by the key wrapper contract.
InvalidKeyFormat = InvalidPublicKey


class InvalidPrivateKey(InvalidKeyError):
    """Private key could not be loaded for unwrapping."""


class InvalidInput(FenvError, ValueError):
    """Caller supplied data the envelope format cannot represent or parse."""


class CryptoFailure(FenvError, RuntimeError):
    """A cipher, RSA or random-source primitive failed."""
