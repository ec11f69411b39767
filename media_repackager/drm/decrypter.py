from typing import Optional, Union

from Crypto.Cipher import AES

from media_repackager.schemas import DecryptInfo


class DecryptionError(Exception):
    """Raised when an object cannot be decrypted with the asset's key material."""


class StorageDecrypter:
    """
    Incremental AES-128-CTR decrypter for storage-encrypted objects.

    The counter block is the object's 8 byte IV followed by a 64-bit big-endian
    block counter starting at zero. A 16 byte IV is used as the full initial
    counter block. Chunks may have any size; the key stream carries over
    between calls.
    """

    def __init__(self, key: bytes, iv: bytes):
        """
        Args:
            key (bytes): The 16 byte content key.
            iv (bytes): The 8 or 16 byte initialization vector of the object.
        """
        if len(key) != 16:
            raise DecryptionError(f"Invalid key length {len(key)}, expected 16 bytes")
        if len(iv) == 8:
            self._cipher = AES.new(key, AES.MODE_CTR, nonce=iv, initial_value=0)
        elif len(iv) == 16:
            self._cipher = AES.new(key, AES.MODE_CTR, nonce=b"", initial_value=iv)
        else:
            raise DecryptionError(f"Invalid IV length {len(iv)}, expected 8 or 16 bytes")
        self.bytes_processed = 0

    def decrypt(self, chunk: Union[bytes, bytearray, memoryview]) -> bytes:
        """
        Decrypts the next chunk of the object.

        Args:
            chunk: Ciphertext following the previously decrypted bytes.

        Returns:
            bytes: The plaintext of the chunk.
        """
        self.bytes_processed += len(chunk)
        return self._cipher.decrypt(chunk)


def decrypter_for(decrypt_info: Optional[DecryptInfo], object_name: str) -> Optional[StorageDecrypter]:
    """
    Builds the decrypter of one object, or None when the asset is not encrypted.

    Raises:
        DecryptionError: If the asset is encrypted but has no IV for the object.
    """
    if decrypt_info is None:
        return None
    iv = decrypt_info.iv_for(object_name)
    if iv is None:
        raise DecryptionError(f"No initialization vector for encrypted object {object_name}")
    return StorageDecrypter(decrypt_info.key, iv)
