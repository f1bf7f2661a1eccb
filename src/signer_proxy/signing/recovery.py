"""Recovery id resolution by trial-and-match.

Raw-signing HSMs return only (r, s). The recovery id is found by recovering
a public key for each candidate and comparing it with the known signer key.
"""

import logging

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from signer_proxy.errors import SignatureMismatch
from signer_proxy.transaction.models import SECP256K1_N, RawSignature

logger = logging.getLogger(__name__)

RECOVERY_IDS = (0, 1)


def recover_public_key(digest: bytes, r: int, s: int, recovery_id: int) -> keys.PublicKey:
    """Recover the public key that produced (r, s) over digest.

    Raises:
        BadSignature: If no point exists for this candidate
        ValidationError: If r, s or recovery_id is out of range
    """
    signature = keys.Signature(vrs=(recovery_id, r, s))
    return signature.recover_public_key_from_msg_hash(digest)


def _matches(digest: bytes, r: int, s: int, recovery_id: int, public_key: keys.PublicKey,
             attempts: list[str]) -> bool:
    try:
        recovered = recover_public_key(digest, r, s, recovery_id)
    except (BadSignature, ValidationError) as e:
        attempts.append(f"s={'low' if s <= SECP256K1_N // 2 else 'high'} id={recovery_id}: {e}")
        return False
    if recovered == public_key:
        return True
    attempts.append(
        f"s={'low' if s <= SECP256K1_N // 2 else 'high'} id={recovery_id}: "
        f"recovered {recovered.to_checksum_address()}"
    )
    return False


def resolve_recovery_id(digest: bytes, signature: RawSignature, public_key: keys.PublicKey) -> int:
    """Find the recovery id of signature against the known public key.

    The returned id refers to the low-s form of the signature
    (``signature.normalized()``). Candidates are tried on the low-s form
    first, then on the curve-order complement of s with the complementary id.

    The complement pass is a guard only. (r, n - s, id) recovers the same
    key as (r, s, id ^ 1), so once both low-s ids have failed it cannot
    succeed; it records its attempts for the SignatureMismatch report.

    Args:
        digest: 32-byte digest that was signed
        signature: Raw (r, s) from the signer
        public_key: Public key of the signing key

    Returns:
        0 or 1

    Raises:
        SignatureMismatch: If no candidate recovers public_key
    """
    low, _ = signature.normalized()
    attempts: list[str] = []

    for recovery_id in RECOVERY_IDS:
        if _matches(digest, low.r, low.s, recovery_id, public_key, attempts):
            return recovery_id

    high_s = SECP256K1_N - low.s
    for recovery_id in RECOVERY_IDS:
        if _matches(digest, low.r, high_s, recovery_id, public_key, attempts):
            # (r, n - s, id) and (r, s, id ^ 1) recover the same key
            return recovery_id ^ 1

    logger.error(
        f"Signature does not recover to {public_key.to_checksum_address()}: {'; '.join(attempts)}"
    )
    raise SignatureMismatch(
        f"Signature does not recover to signer {public_key.to_checksum_address()}",
        attempts=attempts,
    )
