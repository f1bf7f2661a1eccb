"""Transaction and signature data types.

All numeric fields are plain Python integers; widths are enforced by the
codec when a transaction is decoded from a request.
"""

from dataclasses import dataclass, field
from typing import Optional

from signer_proxy.errors import SignatureMismatch

# secp256k1 curve order
SECP256K1_N = int("fffffffffffffffffffffffffffffffebaaedce6af48a03bbfd25e8cd0364141", 16)
SECP256K1_HALF_N = SECP256K1_N // 2

UINT64_MAX = 2**64 - 1
UINT256_MAX = 2**256 - 1
ADDRESS_LENGTH = 20
SIGNATURE_COMPONENT_LENGTH = 32


@dataclass(frozen=True)
class UnsignedTransaction:
    """Legacy (chain-id protected) transaction before signing.

    Attributes:
        chain_id: Chain identifier bound into v
        nonce: Sender account nonce
        gas_price: Gas price in wei
        gas_limit: Gas limit
        to: 20-byte recipient, None for contract creation
        value: Value in wei
        data: Call data / init code
    """
    chain_id: int
    nonce: int
    gas_price: int
    gas_limit: int
    to: Optional[bytes] = None
    value: int = 0
    data: bytes = b""

    @property
    def is_contract_creation(self) -> bool:
        return self.to is None


@dataclass(frozen=True)
class RawSignature:
    """ECDSA (r, s) pair as returned by a raw signing primitive."""
    r: int
    s: int

    @classmethod
    def from_bytes(cls, signature: bytes) -> "RawSignature":
        """Parse a fixed-width r || s signature (PKCS#11 style).

        Raises:
            ValueError: If the signature is not 64 bytes
        """
        if len(signature) != 2 * SIGNATURE_COMPONENT_LENGTH:
            raise ValueError(
                f"Raw signature must be {2 * SIGNATURE_COMPONENT_LENGTH} bytes, got {len(signature)}"
            )
        return cls(
            r=int.from_bytes(signature[:SIGNATURE_COMPONENT_LENGTH], "big"),
            s=int.from_bytes(signature[SIGNATURE_COMPONENT_LENGTH:], "big"),
        )

    @classmethod
    def from_der(cls, der_signature: bytes) -> "RawSignature":
        """Parse a DER-encoded ECDSA signature (KMS, YubiHSM).

        Raises:
            ValueError: If the bytes are not a DER ECDSA signature
        """
        from ecdsa.der import UnexpectedDER
        from ecdsa.util import MalformedSignature, sigdecode_der

        try:
            r, s = sigdecode_der(der_signature, SECP256K1_N)
        except (UnexpectedDER, MalformedSignature) as e:
            raise ValueError(f"Undecodable DER signature: {e}")
        return cls(r=r, s=s)

    @property
    def is_low_s(self) -> bool:
        return self.s <= SECP256K1_HALF_N

    def validate(self) -> None:
        """Check the invariants of a usable signature.

        A bad signature comes from the signer, never from the caller, so
        every failure here is a SignatureMismatch.

        Raises:
            SignatureMismatch: If r or s is wider than 32 bytes, zero, or not
                below the curve order
        """
        for name, value in (("r", self.r), ("s", self.s)):
            if value.bit_length() > 8 * SIGNATURE_COMPONENT_LENGTH:
                raise SignatureMismatch(f"Signature component {name} exceeds 32 bytes")
            if not 0 < value < SECP256K1_N:
                raise SignatureMismatch(f"Signature component {name} is out of range")

    def normalized(self) -> tuple["RawSignature", bool]:
        """Return the low-s form and whether s had to be flipped."""
        if self.is_low_s:
            return self, False
        return RawSignature(r=self.r, s=SECP256K1_N - self.s), True

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big")


@dataclass(frozen=True)
class SignedTransaction:
    """Unsigned fields plus the chain-bound signature."""
    transaction: UnsignedTransaction
    v: int
    r: int
    s: int
    raw: bytes = field(default=b"", repr=False, compare=False)

    @property
    def recovery_id(self) -> int:
        from signer_proxy.transaction.codec import recovery_id_from_v

        return recovery_id_from_v(self.v, self.transaction.chain_id)

    @property
    def signature(self) -> RawSignature:
        return RawSignature(r=self.r, s=self.s)

    def to_hex(self) -> str:
        return "0x" + self.raw.hex()
