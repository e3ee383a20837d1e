import pytest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _pem_pair(key):
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_pem(rsa_key):
    return _pem_pair(rsa_key)[0]


@pytest.fixture(scope="session")
def public_pem(rsa_key):
    return _pem_pair(rsa_key)[1]


@pytest.fixture
def key_files(tmp_path, private_pem, public_pem):
    priv = tmp_path / "recipient_private.pem"
    pub = tmp_path / "recipient_public.pem"
    priv.write_bytes(private_pem)
    pub.write_text(public_pem)
    return str(priv), str(pub)


class CountingRandom:
    """Deterministic stand-in for os.urandom: 0x00, 0x01, ... across calls."""

    def __init__(self):
        self.calls = []
        self._next = 0

    def __call__(self, size):
        self.calls.append(size)
        out = bytes((self._next + i) % 256 for i in range(size))
        self._next += size
        return out


@pytest.fixture
def counting_random():
    return CountingRandom()
