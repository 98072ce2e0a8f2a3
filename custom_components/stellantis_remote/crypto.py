"""Cryptographic primitives for the Stellantis OTP protocol.

The OTP backend wraps key material with RSA-OAEP (SHA-256, MGF1-SHA-256) using
its *private* key, so the client recovers it by raising the ciphertext to the
small public exponent and undoing the OAEP padding by hand. Client to server
secrets travel the usual way, OAEP-encrypted with the recovered public key.
"""

from __future__ import annotations

import hashlib
import logging
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .const import OAEP_BLOCK_SIZE, PUBLIC_EXPONENT
from .exceptions import StellantisConfigError

_LOGGER = logging.getLogger(__name__)

BASE36_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
SHA256_LENGTH = 32


def sha256_hex(data: str) -> str:
    """Return the hex SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def random_hex(length: int) -> str:
    """Return ``length`` random bytes as a hex string."""
    return secrets.token_hex(length)


def mgf1(seed: bytes, length: int, hash_name: str = "sha256") -> bytes:
    """Mask generation function MGF1 (RFC 8017, B.2.1).

    Args:
        seed: Seed the mask is generated from
        length: Exact length of the returned mask in bytes
        hash_name: hashlib algorithm name

    Returns:
        Mask of exactly ``length`` bytes
    """
    digest_size = hashlib.new(hash_name).digest_size
    output = bytearray()
    for counter in range(-(-length // digest_size)):
        output += hashlib.new(hash_name, seed + counter.to_bytes(4, "big")).digest()
    return bytes(output[:length])


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right, strict=True))


def oaep_encode(
    message: bytes, key_length: int, label: bytes = b"", seed: bytes | None = None
) -> bytes:
    """Build an OAEP encoded message (EME-OAEP, SHA-256).

    Args:
        message: Payload to pad
        key_length: Modulus length in bytes
        label: Optional OAEP label
        seed: Seed to use, random when omitted

    Returns:
        Encoded message of ``key_length`` bytes

    Raises:
        ValueError: If the message does not fit in one block
    """
    max_length = key_length - 2 * SHA256_LENGTH - 2
    if len(message) > max_length:
        raise ValueError(
            f"Message of {len(message)} bytes exceeds OAEP capacity of {max_length}"
        )
    label_hash = hashlib.sha256(label).digest()
    padding_string = bytes(max_length - len(message))
    data_block = label_hash + padding_string + b"\x01" + message
    if seed is None:
        seed = secrets.token_bytes(SHA256_LENGTH)

    masked_db = _xor(data_block, mgf1(seed, key_length - SHA256_LENGTH - 1))
    masked_seed = _xor(seed, mgf1(masked_db, SHA256_LENGTH))
    return b"\x00" + masked_seed + masked_db


def oaep_decode(encoded: bytes, key_length: int) -> bytes:
    """Strip OAEP padding from an encoded message.

    The label hash is not verified; the backend does not use labels.

    Raises:
        StellantisConfigError: If no 0x01 separator follows the label hash
    """
    masked_seed = encoded[1 : SHA256_LENGTH + 1]
    masked_db = encoded[SHA256_LENGTH + 1 :]

    seed = _xor(masked_seed, mgf1(masked_db, SHA256_LENGTH))
    data_block = _xor(masked_db, mgf1(seed, key_length - SHA256_LENGTH - 1))

    separator = data_block.find(b"\x01", SHA256_LENGTH)
    if separator < 0:
        raise StellantisConfigError("Incorrect decryption, no OAEP separator found")
    return data_block[separator + 1 :]


def oaep_decrypt_with_exponent(
    ciphertext: bytes, modulus: int, exponent: int
) -> bytes:
    """Recover an OAEP padded payload by raising it to ``exponent`` mod ``modulus``.

    Args:
        ciphertext: One RSA block (at most the modulus length)
        modulus: RSA modulus
        exponent: Exponent to apply, normally the public exponent 0x11

    Returns:
        Unpadded payload

    Raises:
        StellantisConfigError: If the block is too long or the padding is invalid
    """
    key_length = (modulus.bit_length() + 7) // 8
    if len(ciphertext) > key_length:
        raise StellantisConfigError(
            f"Ciphertext with incorrect length, expected at most {key_length} "
            f"bytes, got {len(ciphertext)}"
        )
    message = pow(int.from_bytes(ciphertext, "big"), exponent, modulus)
    return oaep_decode(message.to_bytes(key_length, "big"), key_length)


def decode_oaep(encrypted_hex: str, modulus_hex: str, exponent: int = PUBLIC_EXPONENT) -> str:
    """Unwrap a hex blob of one or more 128 byte OAEP blocks.

    Returns:
        Concatenated payloads as a hex string
    """
    encrypted = bytes.fromhex(encrypted_hex)
    modulus = int(modulus_hex, 16)
    decoded = b"".join(
        oaep_decrypt_with_exponent(
            encrypted[offset : offset + OAEP_BLOCK_SIZE], modulus, exponent
        )
        for offset in range(0, len(encrypted), OAEP_BLOCK_SIZE)
    )
    _LOGGER.debug("Decoded %d OAEP bytes", len(decoded))
    return decoded.hex()


class OaepCipher:
    """RSA public key bound to a server-issued modulus.

    Encrypts with standard RSA-OAEP and unwraps server blobs by applying the
    public exponent directly.
    """

    def __init__(self, modulus_hex: str, exponent: int = PUBLIC_EXPONENT) -> None:
        """Initialize the cipher.

        Args:
            modulus_hex: RSA modulus as a hex string
            exponent: Public exponent
        """
        self.modulus_hex = modulus_hex
        self.modulus = int(modulus_hex, 16)
        self.exponent = exponent
        self._public_key = rsa.RSAPublicNumbers(exponent, self.modulus).public_key()

    def encrypt(self, plaintext: bytes) -> bytes:
        """OAEP-encrypt ``plaintext`` (SHA-256 digest and MGF1)."""
        return self._public_key.encrypt(
            plaintext,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )

    def unwrap(self, encrypted_hex: str) -> str:
        """Recover a hex payload the server wrapped for this key."""
        return decode_oaep(encrypted_hex, self.modulus_hex, self.exponent)


def aes_ecb_encrypt(key: bytes, data: bytes) -> bytes:
    """AES-ECB encrypt block aligned ``data`` without padding."""
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def number_to_base36(number: int) -> str:
    """Encode a non-negative integer in the backend's base 36.

    Digits run from ``a`` (0) through ``z`` and then ``0`` to ``9`` (35), least
    significant digit first. Zero alone is written ``"0"``, so 0 and 26 share
    an encoding.
    """
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(digits)


def base36_to_number(value: str) -> int:
    """Decode ``number_to_base36`` output; ``"0"`` decodes to zero."""
    if value == "0":
        return 0
    number = 0
    for position, char in enumerate(value):
        digit = BASE36_ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"invalid base 36 digit {char!r}")
        number += digit * 36**position
    return number
