import os
import tempfile
import getpass
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import rsa

from .envelope import (
    DEFAULT_EXTENSION,
    RandomSource,
    BytesLike,
    build_envelope,
    extension_from_filename,
    open_envelope,
)
from .errors import FenvError, InvalidInput
from .keywrap import (
    PemText,
    resolve_public_key,
    unwrap_key,
    unwrap_key_with_hardware,
    wrap_key,
)

ENC_SUFFIX = '.enc'
KEY_SUFFIX = '.key'

log = logging.getLogger(__name__)


class EncryptedFile(NamedTuple):
    enc_file: bytes
    key_file: bytes
    extension: str


class DecryptedFile(NamedTuple):
    data: bytes
    extension: str


@dataclass
class FileOutcome:
    name: str
    ok: bool
    result: Optional[EncryptedFile] = None
    enc_path: Optional[str] = None
    key_path: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class BatchResult:
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def summary(self) -> str:
        return f"{self.succeeded}/{self.total} files encrypted, {self.failed} failed"


# --- Bytes API ---

def encrypt(
    file_bytes: BytesLike,
    file_name: Optional[str],
    public_key: Union[rsa.RSAPublicKey, PemText],
    *,
    random_bytes: RandomSource = os.urandom,
) -> EncryptedFile:
    """Hybrid-encrypt one file for the holder of `public_key`.

    The key is validated before any randomness is drawn or `file_bytes` is
    looked at, so a bad key fails the same way regardless of the file.
    Returns EncryptedFile(enc_file, key_file, extension).
    """
    recipient = resolve_public_key(public_key)
    if file_name is not None and not isinstance(file_name, str):
        raise InvalidInput("file_name must be a string")

    extension = extension_from_filename(file_name)
    envelope, symmetric_key = build_envelope(file_bytes, extension, random_bytes=random_bytes)
    return EncryptedFile(envelope, wrap_key(symmetric_key, recipient), extension)


def decrypt(
    enc_file: BytesLike,
    key_file: bytes,
    private_key: Union[rsa.RSAPrivateKey, PemText],
    *,
    password: Optional[bytes] = None,
) -> DecryptedFile:
    symmetric_key = unwrap_key(key_file, private_key, password=password)
    data, extension = open_envelope(enc_file, symmetric_key)
    return DecryptedFile(data, extension)


# --- Naming ---

def output_base_name(file_name: str, nit: Optional[str] = None, doc_type: Optional[str] = None) -> str:
    """Base name for the artifacts: '<name>' or '<doc_type>_<nit>_<name>'.

    `name` is the original basename unchanged, so distinct sources in one
    directory never share an output name.
    """
    base = file_name.replace('\\', '/').rsplit('/', 1)[-1]
    if nit and doc_type:
        base = f"{doc_type}_{nit}_{base}"
    return base


def output_paths(input_path: str, output_dir: Optional[str] = None,
                 nit: Optional[str] = None, doc_type: Optional[str] = None) -> Tuple[str, str]:
    if output_dir is None:
        output_dir = os.path.dirname(os.path.abspath(input_path))
    base = output_base_name(os.path.basename(input_path), nit=nit, doc_type=doc_type)
    return (os.path.join(output_dir, f"{base}{ENC_SUFFIX}"),
            os.path.join(output_dir, f"{base}{KEY_SUFFIX}"))


def _default_decrypt_output(enc_path: str, extension: str) -> str:
    if enc_path.endswith(ENC_SUFFIX):
        candidate = enc_path[:-len(ENC_SUFFIX)]
    else:
        candidate = f"{enc_path}.dec"
    if not os.path.splitext(os.path.basename(candidate))[1]:
        candidate += extension or DEFAULT_EXTENSION
    return candidate


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Could not remove '%s': %s", path, e)


def _write_files_exclusive(outputs: List[Tuple[str, bytes]]) -> None:
    """Write every (path, data) pair or none of them.

    Each final path is claimed with O_EXCL first, so a path that already
    exists, or is claimed concurrently, raises FileExistsError and nothing
    is left behind. Data goes through a private mkstemp file and os.replace.
    """
    claimed = []
    tmp_paths = []
    try:
        for path, _ in outputs:
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError as e:
                raise FileExistsError(f"Output file '{path}' already exists") from e
            os.close(fd)
            claimed.append(path)

        for path, data in outputs:
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(os.path.abspath(path)),
                prefix=f".{os.path.basename(path)}.",
                suffix='.tmp',
            )
            tmp_paths.append(tmp_path)
            with os.fdopen(fd, 'wb') as f_out:
                f_out.write(data)

        for tmp_path, (path, _) in zip(tmp_paths, outputs):
            os.replace(tmp_path, path)
        claimed = []
    finally:
        for tmp_path in tmp_paths:
            if os.path.exists(tmp_path):
                _remove_quietly(tmp_path)
        for path in claimed:
            _remove_quietly(path)


# --- File & folder API ---

def encrypt_file(
    input_path: str,
    output_dir: Optional[str] = None,
    *,
    public_key: Union[rsa.RSAPublicKey, PemText],
    nit: Optional[str] = None,
    doc_type: Optional[str] = None,
) -> Tuple[str, str]:
    """Encrypt one file on disk into '<base>.enc' and '<base>.key'.

    Returns (enc_path, key_path). Raises FileExistsError if either exists.
    """
    recipient = resolve_public_key(public_key)
    enc_path, key_path = output_paths(input_path, output_dir, nit=nit, doc_type=doc_type)
    for path in (enc_path, key_path):
        if os.path.exists(path):
            raise FileExistsError(f"Output file '{path}' already exists")

    with open(input_path, 'rb') as f_in:
        data = f_in.read()

    result = encrypt(data, os.path.basename(input_path), recipient)
    _write_files_exclusive([(enc_path, result.enc_file), (key_path, result.key_file)])
    log.info("Encrypted '%s' (%d bytes) -> '%s', '%s'", input_path, len(data), enc_path, key_path)
    return enc_path, key_path


def decrypt_file(
    enc_path: str,
    key_path: Optional[str] = None,
    output_path: Optional[str] = None,
    *,
    private_key: Optional[Union[rsa.RSAPrivateKey, PemText]] = None,
    password: Optional[bytes] = None,
    use_hardware_key: bool = False,
    pin: Optional[str] = None,
    pkcs11_lib: Optional[str] = None,
) -> str:
    """Decrypt an '.enc'/'.key' pair. Returns the written path.

    `key_path` defaults to the '.enc' path with '.key' in place of '.enc'.
    The default output drops '.enc' and falls back to the recovered
    extension when what is left has none.
    """
    if key_path is None:
        stem = enc_path[:-len(ENC_SUFFIX)] if enc_path.endswith(ENC_SUFFIX) else enc_path
        key_path = f"{stem}{KEY_SUFFIX}"

    with open(enc_path, 'rb') as f_enc:
        envelope = f_enc.read()
    with open(key_path, 'rb') as f_key:
        wrapped = f_key.read()

    if use_hardware_key:
        if pin is None:
            pin = getpass.getpass("Enter hardware key PIN: ")
        symmetric_key = unwrap_key_with_hardware(wrapped, pin, pkcs11_lib)
        data, extension = open_envelope(envelope, symmetric_key)
    else:
        if private_key is None:
            raise ValueError("private_key is required when not using hardware key")
        data, extension = decrypt(envelope, wrapped, private_key, password=password)

    if output_path is None:
        output_path = _default_decrypt_output(enc_path, extension)
    if os.path.exists(output_path):
        raise FileExistsError(f"Output file '{output_path}' already exists")

    _write_files_exclusive([(output_path, data)])
    log.info("Decrypted '%s' -> '%s' (extension %s)", enc_path, output_path, extension)
    return output_path


def encrypt_batch(
    items: Iterable[Tuple[BytesLike, str]],
    public_key: Union[rsa.RSAPublicKey, PemText],
    *,
    max_workers: int = 4,
) -> BatchResult:
    """Encrypt (file_bytes, file_name) pairs in parallel.

    The key is checked once before anything runs; InvalidPublicKey aborts the
    whole batch. After that each file succeeds or fails on its own and the
    outcomes come back in input order.
    """
    recipient = resolve_public_key(public_key)
    items = list(items)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        tasks = [
            (name, executor.submit(encrypt, data, name, recipient))
            for data, name in items
        ]
        outcomes = []
        for name, task in tasks:
            try:
                outcomes.append(FileOutcome(name=name, ok=True, result=task.result()))
            except FenvError as e:
                log.error("Failed to encrypt '%s': %s", name, e)
                outcomes.append(FileOutcome(name=name, ok=False, error=e))

    result = BatchResult(outcomes)
    log.info("Batch finished: %s", result.summary())
    return result


def encrypt_folder(
    folder_path: str,
    public_key: Union[rsa.RSAPublicKey, PemText],
    output_folder: Optional[str] = None,
    *,
    recursive: bool = False,
    max_workers: int = 4,
    nit: Optional[str] = None,
    doc_type: Optional[str] = None,
) -> BatchResult:
    """Encrypt all files in a folder to a mirror tree of '.enc'/'.key' pairs.

    Sources whose output names would coincide are all reported as failed
    before any work starts; none of them is written.
    """
    recipient = resolve_public_key(public_key)
    if output_folder is None:
        output_folder = f"{folder_path.rstrip(os.sep)}_encrypted"
    os.makedirs(output_folder, exist_ok=True)

    jobs = []
    for root, dirs, files in os.walk(folder_path):
        if recursive:
            dirs.sort()
        else:
            dirs.clear()
        for file in sorted(files):
            file_path = os.path.join(root, file)
            relative_path = os.path.relpath(root, folder_path)
            out_dir = os.path.join(output_folder, relative_path)
            enc_path, _ = output_paths(file_path, out_dir, nit=nit, doc_type=doc_type)
            jobs.append((file_path, out_dir, os.path.normcase(os.path.abspath(enc_path))))

    targets = Counter(target for _, _, target in jobs)

    tasks = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        for file_path, out_dir, target in jobs:
            if targets[target] > 1:
                tasks.append((file_path, FileExistsError(
                    f"Output name '{target}' is shared by {targets[target]} source files")))
                continue
            os.makedirs(out_dir, exist_ok=True)
            tasks.append((file_path, executor.submit(
                encrypt_file, file_path, out_dir,
                public_key=recipient, nit=nit, doc_type=doc_type,
            )))

        outcomes = []
        for file_path, task in tasks:
            if isinstance(task, FileExistsError):
                log.error("Failed to encrypt '%s': %s", file_path, task)
                outcomes.append(FileOutcome(name=file_path, ok=False, error=task))
                continue
            try:
                enc_path, key_path = task.result()
                outcomes.append(FileOutcome(name=file_path, ok=True, enc_path=enc_path, key_path=key_path))
            except (FenvError, OSError) as e:
                log.error("Failed to encrypt '%s': %s", file_path, e)
                outcomes.append(FileOutcome(name=file_path, ok=False, error=e))

    result = BatchResult(outcomes)
    log.info("Folder '%s' finished: %s", folder_path, result.summary())
    return result
