"""Transaction types, canonical encoding and signing digest."""

from signer_proxy.transaction.codec import (
    decode_request_fields,
    decode_signed,
    encode_request_fields,
    encode_signed,
    encode_unsigned,
    encode_v,
    recovery_id_from_v,
)
from signer_proxy.transaction.hashing import digest, signing_digest
from signer_proxy.transaction.models import (
    RawSignature,
    SignedTransaction,
    UnsignedTransaction,
)

__all__ = [
    "RawSignature",
    "SignedTransaction",
    "UnsignedTransaction",
    "decode_request_fields",
    "decode_signed",
    "digest",
    "encode_request_fields",
    "encode_signed",
    "encode_unsigned",
    "encode_v",
    "recovery_id_from_v",
    "signing_digest",
]
