"""
Per-file encryption utilities

Each stored file gets its own AES-256 key and CBC initialization vector.
The ciphertext is authenticated with HMAC-SHA256 (encrypt-then-MAC) using a
MAC key derived from the file key, and the file key itself is wrapped with a
service-wide master key before it is persisted (envelope encryption).
"""
import hashlib
import secrets
from collections.abc import Iterable, Iterator

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from core.errors import CryptoError

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE = algorithms.AES.block_size // 8
TAG_SIZE = 32
NONCE_SIZE = 12

_MAC_INFO = b"filevault/ciphertext-mac/v1"


def fingerprint(value: bytes) -> str:
    """Short, non-reversible identifier safe to put in logs"""
    return hashlib.sha256(value).hexdigest()[:8]


def _mac_key(key: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_MAC_INFO,
    ).derive(key)


def validate_key_material(key: bytes, iv: bytes) -> None:
    """
    Check the shape of a key/iv pair

    Raises:
        CryptoError: If key is not 32 bytes or iv is not 16 bytes
    """
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError(f"Encryption key must be {KEY_SIZE} bytes")
    if not isinstance(iv, (bytes, bytearray)) or len(iv) != IV_SIZE:
        raise CryptoError(f"Initialization vector must be {IV_SIZE} bytes")


class Encryption:
    """
    Ciphertext stream produced by FileCipher.encrypt.

    Iterate it once to pull ciphertext chunks; the MAC tag becomes available
    once the stream has been fully consumed.
    """

    def __init__(self, plaintext: Iterable[bytes], key: bytes, iv: bytes):
        self.key = key
        self.iv = iv
        self._plaintext = plaintext
        self._started = False
        self._tag: bytes | None = None

    def __repr__(self) -> str:
        return f"<Encryption iv={fingerprint(self.iv)}>"

    def __iter__(self) -> Iterator[bytes]:
        if self._started:
            raise RuntimeError("Ciphertext stream can only be consumed once")
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[bytes]:
        encryptor = Cipher(algorithms.AES(self.key), modes.CBC(self.iv)).encryptor()
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        mac = hmac.HMAC(_mac_key(self.key), hashes.SHA256())

        for chunk in self._plaintext:
            block = encryptor.update(padder.update(chunk))
            if block:
                mac.update(block)
                yield block

        block = encryptor.update(padder.finalize()) + encryptor.finalize()
        mac.update(block)
        self._tag = mac.finalize()
        yield block

    @property
    def tag(self) -> bytes:
        if self._tag is None:
            raise RuntimeError("Ciphertext stream has not been fully consumed")
        return self._tag


class FileCipher:
    """Streaming AES-256-CBC encryption with HMAC-SHA256 authentication"""

    def encrypt(self, plaintext: Iterable[bytes]) -> Encryption:
        """
        Encrypt a stream of plaintext chunks under a fresh random key and iv

        Args:
            plaintext: Iterable of plaintext chunks

        Returns:
            Encryption exposing key, iv, the ciphertext chunks and the MAC tag
        """
        return Encryption(
            plaintext,
            key=secrets.token_bytes(KEY_SIZE),
            iv=secrets.token_bytes(IV_SIZE),
        )

    def decrypt(
        self,
        ciphertext: Iterable[bytes],
        key: bytes,
        iv: bytes,
        tag: bytes | None = None,
    ) -> Iterator[bytes]:
        """
        Decrypt a stream of ciphertext chunks

        Key material is validated before any ciphertext is read. Plaintext is
        yielded as it is produced; length, MAC and padding failures surface as
        CryptoError once the final block has been seen, so callers that must
        not release unauthenticated data should buffer the output.

        Args:
            ciphertext: Iterable of ciphertext chunks
            key: 32-byte file key
            iv: 16-byte initialization vector
            tag: Expected HMAC-SHA256 tag; authentication is skipped when None

        Raises:
            CryptoError: On bad key material or a failed decryption
        """
        validate_key_material(key, iv)
        if tag is not None and len(tag) != TAG_SIZE:
            raise CryptoError(f"Authentication tag must be {TAG_SIZE} bytes")
        return self._decrypt(ciphertext, bytes(key), bytes(iv), tag)

    @staticmethod
    def _decrypt(
        ciphertext: Iterable[bytes],
        key: bytes,
        iv: bytes,
        tag: bytes | None,
    ) -> Iterator[bytes]:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        mac = hmac.HMAC(_mac_key(key), hashes.SHA256()) if tag is not None else None

        total = 0
        for chunk in ciphertext:
            total += len(chunk)
            if mac is not None:
                mac.update(chunk)
            data = unpadder.update(decryptor.update(chunk))
            if data:
                yield data

        if total == 0 or total % BLOCK_SIZE:
            raise CryptoError("Ciphertext length is not a multiple of the block size")

        if mac is not None:
            try:
                mac.verify(tag)
            except InvalidSignature as exc:
                raise CryptoError("Ciphertext failed authentication") from exc

        try:
            tail = unpadder.update(decryptor.finalize()) + unpadder.finalize()
        except ValueError as exc:
            raise CryptoError("Invalid padding in final block") from exc
        if tail:
            yield tail


class KeyWrapper:
    """Wraps per-file keys with a master key using AES-256-GCM"""

    def __init__(self, master_key: bytes):
        if len(master_key) != KEY_SIZE:
            raise CryptoError(f"Master key must be {KEY_SIZE} bytes")
        self._aead = AESGCM(master_key)

    @classmethod
    def from_hex(cls, value: str | None) -> "KeyWrapper":
        """Build a wrapper from the hex-encoded FILE_MASTER_KEY setting"""
        if not value:
            raise CryptoError("FILE_MASTER_KEY is not configured")
        try:
            master_key = bytes.fromhex(value)
        except ValueError as exc:
            raise CryptoError("FILE_MASTER_KEY is not valid hex") from exc
        return cls(master_key)

    def wrap(self, key: bytes, associated_data: bytes | None = None) -> bytes:
        """Encrypt a file key; the output is nonce || ciphertext || tag"""
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, key, associated_data)

    def unwrap(self, wrapped: bytes, associated_data: bytes | None = None) -> bytes:
        """
        Recover a file key

        Raises:
            CryptoError: If the wrapped key is truncated or fails authentication
        """
        if len(wrapped) <= NONCE_SIZE:
            raise CryptoError("Wrapped key is truncated")
        try:
            return self._aead.decrypt(
                wrapped[:NONCE_SIZE], wrapped[NONCE_SIZE:], associated_data
            )
        except InvalidTag as exc:
            raise CryptoError("Wrapped key failed authentication") from exc
