"""Artifact encryption compatible with ``openssl enc -aes-256-cbc -pbkdf2``.

Files are written in OpenSSL's salted format (``Salted__`` + 8-byte salt +
AES-256-CBC ciphertext, PKCS#7 padded).  Key and IV are derived from the
key file's passphrase with PBKDF2-HMAC-SHA256, 10 000 iterations, which is
what ``openssl enc -pbkdf2 -pass file:<key>`` does.  Artifacts therefore
decrypt with either this module or the openssl CLI.

Every encryption writes a sha256 sidecar; decryption verifies it first when
present.  The sidecar detects corruption, it does not authenticate.

Usage:
    from mariadb_backup.backup.encryption import encrypt_file, decrypt_file

    enc_path = encrypt_file(Path("app_db.sql.gz"), Path(".backup_encryption_key"))
    plain_path = decrypt_file(enc_path, Path(".backup_encryption_key"))
"""

import base64
import io
import logging
import os
import secrets
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mariadb_backup.backup.layout import sha256_file, sidecar_candidates, verify_checksum
from mariadb_backup.errors import ConfigError, EncryptionError

logger = logging.getLogger(__name__)

SALT_MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10_000
CHUNK_SIZE = 1024 * 1024


# ============================================================================
# Key material
# ============================================================================


def generate_key(key_file: Path) -> None:
    """Write a new random passphrase to ``key_file`` with mode 600."""
    key_file.parent.mkdir(parents=True, exist_ok=True)
    passphrase = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(passphrase + "\n")
    os.chmod(key_file, 0o600)
    logger.warning(f"Encryption key generated and saved to {key_file}. KEEP THIS SAFE!")


def ensure_key(key_file: Path) -> None:
    """Create ``key_file`` if it does not exist yet."""
    if not key_file.exists():
        logger.info("Generating new encryption key...")
        generate_key(key_file)


def read_passphrase(key_file: Path) -> bytes:
    """First line of the key file, as ``openssl -pass file:`` reads it.

    Raises:
        ConfigError: If the key file is missing or empty.
    """
    if not key_file.is_file():
        raise ConfigError(f"Key file '{key_file}' not found")
    first_line = key_file.read_bytes().split(b"\n", 1)[0].rstrip(b"\r")
    if not first_line:
        raise ConfigError(f"Key file '{key_file}' is empty")
    return first_line


def _derive(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase)
    return material[:KEY_SIZE], material[KEY_SIZE:]


# ============================================================================
# Streaming cipher
# ============================================================================


def _read_chunks(source: BinaryIO) -> Iterator[bytes]:
    return iter(lambda: source.read(CHUNK_SIZE), b"")


def encrypt_stream(source: BinaryIO, target: BinaryIO, passphrase: bytes) -> None:
    salt = secrets.token_bytes(SALT_SIZE)
    key, iv = _derive(passphrase, salt)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()

    target.write(SALT_MAGIC + salt)
    for chunk in _read_chunks(source):
        target.write(encryptor.update(padder.update(chunk)))
    target.write(encryptor.update(padder.finalize()) + encryptor.finalize())


def decrypt_stream(source: BinaryIO, target: BinaryIO, passphrase: bytes) -> None:
    """Decrypt OpenSSL salted format from ``source`` into ``target``.

    Raises:
        EncryptionError: If the header is missing or the key is wrong.
    """
    header = source.read(len(SALT_MAGIC) + SALT_SIZE)
    if len(header) != len(SALT_MAGIC) + SALT_SIZE or not header.startswith(SALT_MAGIC):
        raise EncryptionError("Not an OpenSSL salted file (missing 'Salted__' header)")
    key, iv = _derive(passphrase, header[len(SALT_MAGIC):])
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

    try:
        for chunk in _read_chunks(source):
            target.write(unpadder.update(decryptor.update(chunk)))
        target.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
    except ValueError as e:
        raise EncryptionError("Decryption failed. Is the key correct?") from e


def encrypt_bytes(data: bytes, passphrase: bytes) -> bytes:
    target = io.BytesIO()
    encrypt_stream(io.BytesIO(data), target, passphrase)
    return target.getvalue()


def decrypt_bytes(data: bytes, passphrase: bytes) -> bytes:
    target = io.BytesIO()
    decrypt_stream(io.BytesIO(data), target, passphrase)
    return target.getvalue()


# ============================================================================
# File operations
# ============================================================================


def _write_atomically(target: Path, writer) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as handle:
            writer(handle)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def encrypt_file(
    path: Path,
    key_file: Path,
    checksum_dir: Path | None = None,
    write_checksum: bool = True,
) -> Path:
    """Encrypt ``path`` to ``<path>.enc`` and write its checksum sidecar.

    A missing key file is generated first.

    Args:
        path: Plain file to encrypt.
        key_file: Passphrase file.
        checksum_dir: Directory for the sidecar; beside the output if None.
        write_checksum: Skip the sidecar when False.

    Returns:
        Path of the encrypted file.

    Raises:
        EncryptionError: If the source cannot be read or written.
    """
    if not path.is_file():
        raise EncryptionError(f"File '{path}' not found")
    ensure_key(key_file)
    passphrase = read_passphrase(key_file)
    output = path.with_name(path.name + ".enc")

    logger.info(f"Encrypting file: {path} -> {output}")
    try:
        with path.open("rb") as source:
            _write_atomically(output, lambda target: encrypt_stream(source, target, passphrase))
    except OSError as e:
        raise EncryptionError(f"Encryption failed: {e}") from e

    if write_checksum:
        sidecar = sidecar_candidates(output, checksum_dir)[0]
        sidecar.parent.mkdir(parents=True, exist_ok=True)
        sidecar.write_text(f"{sha256_file(output)}  {output.name}\n")
        logger.info(f"Checksum saved to {sidecar}")
    return output


def decrypt_file(
    path: Path,
    key_file: Path,
    output: Path | None = None,
    checksum_dir: Path | None = None,
) -> Path:
    """Verify and decrypt ``path``.

    The output is only created once decryption completes, so a checksum
    mismatch or a wrong key never leaves a partial file behind.

    Args:
        path: Encrypted file.
        key_file: Passphrase file (must exist).
        output: Destination; defaults to ``path`` without ``.enc`` (or with
            ``.decrypted`` appended).
        checksum_dir: Extra directory to search for the sidecar.

    Returns:
        Path of the decrypted file.

    Raises:
        ConfigError: If the key file is missing.
        ChecksumMismatchError: If the sidecar does not match.
        EncryptionError: If decryption fails.
    """
    if not path.is_file():
        raise EncryptionError(f"File '{path}' not found")
    passphrase = read_passphrase(key_file)
    if output is None:
        output = path.with_suffix("") if path.suffix == ".enc" else path.with_name(path.name + ".decrypted")

    logger.info(f"Decrypting file: {path} -> {output}")
    if verify_checksum(path, checksum_dir):
        logger.info("Checksum verified successfully")

    with path.open("rb") as source:
        _write_atomically(output, lambda target: decrypt_stream(source, target, passphrase))
    logger.info("Decryption completed successfully")
    return output
