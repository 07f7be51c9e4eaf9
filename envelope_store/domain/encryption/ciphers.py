"""Symmetric ciphers used to seal envelopes.

``aes-256-gcm`` uses a random 96-bit nonce per envelope, so the same
plaintext never produces the same ciphertext twice. ``aes-ecb`` reproduces
the legacy storage format: it is deterministic and leaks equality of
plaintexts. It stays available only to read, and optionally keep writing,
data compatible with older deployments.
"""
import os
from abc import ABC, abstractmethod
from typing import Dict

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from envelope_store.settings import CIPHER_AES_256_GCM, CIPHER_AES_ECB

NONCE_SIZE = 12


class EnvelopeCipher(ABC):
    alg: str

    @abstractmethod
    def encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        ...

    @abstractmethod
    def decrypt(self, key: bytes, data: bytes) -> bytes:
        ...


class AesGcmCipher(EnvelopeCipher):
    alg = CIPHER_AES_256_GCM

    def encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, plaintext, None)

    def decrypt(self, key: bytes, data: bytes) -> bytes:
        if len(data) <= NONCE_SIZE:
            raise ValueError("Ciphertext too short")
        return AESGCM(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)


class AesEcbCipher(EnvelopeCipher):
    alg = CIPHER_AES_ECB

    def encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, key: bytes, data: bytes) -> bytes:
        decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()


CIPHERS: Dict[str, EnvelopeCipher] = {
    CIPHER_AES_256_GCM: AesGcmCipher(),
    CIPHER_AES_ECB: AesEcbCipher(),
}


def get_cipher(alg: str) -> EnvelopeCipher:
    try:
        return CIPHERS[alg]
    except KeyError:
        raise ValueError(f"Unsupported algorithm: {alg}") from None
