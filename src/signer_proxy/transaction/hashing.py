"""Keccak-256 digest of the signing payload."""

from Crypto.Hash import keccak

from signer_proxy.transaction.codec import encode_unsigned
from signer_proxy.transaction.models import UnsignedTransaction

DIGEST_SIZE = 32


def digest(data: bytes) -> bytes:
    """Keccak-256 (Ethereum padding, not SHA3-256) of data."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def signing_digest(tx: UnsignedTransaction) -> bytes:
    """Digest submitted to the signer for tx."""
    return digest(encode_unsigned(tx))
