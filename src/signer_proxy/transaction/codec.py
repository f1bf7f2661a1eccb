"""Canonical transaction encoding.

Legacy transactions are serialized with RLP. The signing payload carries the
chain id in the v slot with empty r and s (EIP-155):

    unsigned: [nonce, gasPrice, gas, to, value, data, chainId, 0, 0]
    signed:   [nonce, gasPrice, gas, to, value, data, v, r, s]

Integers are minimal big-endian with no leading zero bytes, so 0 and the
empty string share the same encoding. Fields are told apart by position.

Inbound requests are loosely typed JSON (hex strings, decimal strings or
integers). Everything is validated here so nothing malformed reaches the
hasher or the signer.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any, Optional, Union

import rlp
from eth_utils import to_checksum_address
from rlp.exceptions import RLPException
from rlp.sedes import big_endian_int

from signer_proxy.errors import EncodingOverflow, MalformedRequest
from signer_proxy.transaction.models import (
    ADDRESS_LENGTH,
    SIGNATURE_COMPONENT_LENGTH,
    UINT64_MAX,
    UINT256_MAX,
    SignedTransaction,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)

EIP155_V_OFFSET = 35

_HEX_QUANTITY = re.compile(r"^0[xX][0-9a-fA-F]+$")
_DECIMAL_QUANTITY = re.compile(r"^[0-9]+$")
_HEX_BYTES = re.compile(r"^(0[xX])?(?:[0-9a-fA-F]{2})*$")

# Field name -> maximum value
QUANTITY_FIELDS = {
    "chainId": UINT64_MAX,
    "nonce": UINT64_MAX,
    "gasPrice": UINT256_MAX,
    "gas": UINT64_MAX,
    "value": UINT256_MAX,
}
REQUIRED_FIELDS = ("chainId", "nonce", "gas", "gasPrice")
TYPED_TX_FIELDS = ("maxFeePerGas", "maxPriorityFeePerGas", "accessList")

IntOrBytes = Union[int, bytes]


def encode_v(recovery_id: int, chain_id: int) -> int:
    """Chain-bound v value: recovery_id + 2 * chain_id + 35."""
    if recovery_id not in (0, 1):
        raise ValueError(f"Recovery id must be 0 or 1, got {recovery_id}")
    return recovery_id + 2 * chain_id + EIP155_V_OFFSET


def recovery_id_from_v(v: int, chain_id: int) -> int:
    """Inverse of encode_v.

    Raises:
        MalformedRequest: If v is not bound to chain_id
    """
    recovery_id = v - 2 * chain_id - EIP155_V_OFFSET
    if recovery_id not in (0, 1):
        raise MalformedRequest(f"v={v} is not valid for chain id {chain_id}", field="v")
    return recovery_id


def _check_width(name: str, value: int, maximum: int) -> None:
    if value < 0:
        raise MalformedRequest(f"{name} must not be negative", field=name)
    if value > maximum:
        raise EncodingOverflow(f"{name} exceeds its maximum width", field=name)


def validate_transaction(tx: UnsignedTransaction) -> None:
    """Enforce field widths on a transaction built outside decode_request_fields.

    Raises:
        MalformedRequest: Negative number or short address
        EncodingOverflow: Number or address wider than its field
    """
    _check_width("chainId", tx.chain_id, UINT64_MAX)
    _check_width("nonce", tx.nonce, UINT64_MAX)
    _check_width("gasPrice", tx.gas_price, UINT256_MAX)
    _check_width("gas", tx.gas_limit, UINT64_MAX)
    _check_width("value", tx.value, UINT256_MAX)
    if tx.to is not None:
        _check_address_length(tx.to)


def _check_address_length(to: bytes) -> None:
    if len(to) > ADDRESS_LENGTH:
        raise EncodingOverflow(
            f"to is {len(to)} bytes, maximum is {ADDRESS_LENGTH}", field="to"
        )
    if len(to) < ADDRESS_LENGTH:
        raise MalformedRequest(
            f"to is {len(to)} bytes, expected {ADDRESS_LENGTH}", field="to"
        )


def _int_bytes(value: int) -> bytes:
    return big_endian_int.serialize(value)


def _signature_component(name: str, value: IntOrBytes) -> bytes:
    """Minimal-length encoding of r or s (leading zero bytes stripped)."""
    if isinstance(value, int):
        if value < 0:
            raise MalformedRequest(f"{name} must not be negative", field=name)
        if value.bit_length() > 8 * SIGNATURE_COMPONENT_LENGTH:
            raise EncodingOverflow(f"{name} exceeds 32 bytes", field=name)
        return _int_bytes(value)
    if len(value) > SIGNATURE_COMPONENT_LENGTH:
        raise EncodingOverflow(f"{name} exceeds 32 bytes", field=name)
    return value.lstrip(b"\x00")


def _base_fields(tx: UnsignedTransaction) -> list[bytes]:
    validate_transaction(tx)
    return [
        _int_bytes(tx.nonce),
        _int_bytes(tx.gas_price),
        _int_bytes(tx.gas_limit),
        tx.to or b"",
        _int_bytes(tx.value),
        tx.data,
    ]


def encode_unsigned(tx: UnsignedTransaction) -> bytes:
    """Serialize the signing payload of a transaction."""
    return rlp.encode(_base_fields(tx) + [_int_bytes(tx.chain_id), b"", b""])


def encode_signed(tx: UnsignedTransaction, v: int, r: IntOrBytes, s: IntOrBytes) -> bytes:
    """Serialize a signed transaction for broadcast."""
    if v < 0:
        raise MalformedRequest("v must not be negative", field="v")
    return rlp.encode(
        _base_fields(tx)
        + [_int_bytes(v), _signature_component("r", r), _signature_component("s", s)]
    )


def decode_signed(raw: bytes) -> SignedTransaction:
    """Parse a canonical signed transaction.

    Raises:
        MalformedRequest: If the bytes are not a chain-bound legacy transaction
    """
    try:
        items = rlp.decode(raw)
    except RLPException as e:
        raise MalformedRequest(f"Invalid RLP: {e}", field="raw")

    if not isinstance(items, list) or len(items) != 9:
        raise MalformedRequest("Signed transaction must be a list of 9 items", field="raw")
    if any(not isinstance(item, bytes) for item in items):
        raise MalformedRequest("Signed transaction items must be byte strings", field="raw")

    names = ("nonce", "gasPrice", "gas", "to", "value", "data", "v", "r", "s")
    values: dict[str, Any] = {}
    for name, item in zip(names, items):
        if name in ("to", "data"):
            values[name] = item
            continue
        try:
            values[name] = big_endian_int.deserialize(item)
        except RLPException as e:
            raise MalformedRequest(f"{name} is not a canonical integer: {e}", field=name)

    v = values["v"]
    if v < EIP155_V_OFFSET:
        raise MalformedRequest(f"v={v} is not chain-id protected", field="v")
    chain_id = (v - EIP155_V_OFFSET) // 2

    tx = UnsignedTransaction(
        chain_id=chain_id,
        nonce=values["nonce"],
        gas_price=values["gasPrice"],
        gas_limit=values["gas"],
        to=values["to"] or None,
        value=values["value"],
        data=values["data"],
    )
    validate_transaction(tx)
    return SignedTransaction(transaction=tx, v=v, r=values["r"], s=values["s"], raw=bytes(raw))


def _parse_quantity(fields: Mapping[str, Any], name: str, default: Optional[int] = None) -> int:
    raw = fields.get(name)
    if raw is None:
        if default is None:
            raise MalformedRequest(f"Missing required field: {name}", field=name)
        return default

    # bool is an int subclass; JSON true/false is never a quantity
    if isinstance(raw, bool):
        raise MalformedRequest(f"{name} must be a number, got a boolean", field=name)
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if _HEX_QUANTITY.match(text):
            value = int(text[2:], 16)
        elif _DECIMAL_QUANTITY.match(text):
            # int() refuses decimal strings past sys.get_int_max_str_digits()
            digits = text.lstrip("0") or "0"
            if len(digits) > len(str(QUANTITY_FIELDS[name])):
                raise EncodingOverflow(f"{name} exceeds its maximum width", field=name)
            value = int(digits, 10)
        else:
            raise MalformedRequest(f"{name} is not a hex or decimal quantity: {raw!r}", field=name)
    else:
        raise MalformedRequest(f"{name} must be a hex string or integer", field=name)

    _check_width(name, value, QUANTITY_FIELDS[name])
    return value


def _parse_bytes(name: str, raw: Any) -> bytes:
    if not isinstance(raw, str) or not _HEX_BYTES.match(raw.strip()):
        raise MalformedRequest(f"{name} is not a hex byte string", field=name)
    text = raw.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    return bytes.fromhex(text)


def _parse_data(fields: Mapping[str, Any]) -> bytes:
    data = fields.get("data")
    call_input = fields.get("input")
    if data is not None and call_input is not None:
        if _parse_bytes("data", data) != _parse_bytes("input", call_input):
            raise MalformedRequest("data and input are both set and differ", field="data")
    if data is not None:
        return _parse_bytes("data", data)
    if call_input is not None:
        return _parse_bytes("input", call_input)
    return b""


def _parse_to(fields: Mapping[str, Any]) -> Optional[bytes]:
    raw = fields.get("to")
    if raw is None:
        return None
    to = _parse_bytes("to", raw)
    _check_address_length(to)
    return to


def _reject_typed_transaction(fields: Mapping[str, Any]) -> None:
    tx_type = fields.get("type")
    if tx_type is not None and str(tx_type).lower() not in ("0", "0x", "0x0", "0x00"):
        raise MalformedRequest(
            f"Only legacy transactions are supported, got type {tx_type}", field="type"
        )
    for name in TYPED_TX_FIELDS:
        if fields.get(name) is not None:
            raise MalformedRequest(
                f"{name} requires a typed transaction; only legacy transactions are supported",
                field=name,
            )


def decode_request_fields(fields: Mapping[str, Any]) -> UnsignedTransaction:
    """Build an UnsignedTransaction from an eth_signTransaction field map.

    Required: chainId, nonce, gas, gasPrice. A missing or null ``to`` means
    contract creation. ``from`` is ignored here; the signer address always
    comes from the signing key.

    Raises:
        MalformedRequest: Missing or unparseable field
        EncodingOverflow: Field wider than its maximum
    """
    if not isinstance(fields, Mapping):
        raise MalformedRequest("Transaction must be a JSON object", field="params")

    _reject_typed_transaction(fields)
    for name in REQUIRED_FIELDS:
        if fields.get(name) is None:
            raise MalformedRequest(f"Missing required field: {name}", field=name)

    return UnsignedTransaction(
        chain_id=_parse_quantity(fields, "chainId"),
        nonce=_parse_quantity(fields, "nonce"),
        gas_price=_parse_quantity(fields, "gasPrice"),
        gas_limit=_parse_quantity(fields, "gas"),
        to=_parse_to(fields),
        value=_parse_quantity(fields, "value", default=0),
        data=_parse_data(fields),
    )


def encode_request_fields(tx: UnsignedTransaction, sender: Optional[str] = None) -> dict[str, Any]:
    """Serialize a transaction into the eth_signTransaction field map."""
    fields: dict[str, Any] = {
        "chainId": hex(tx.chain_id),
        "nonce": hex(tx.nonce),
        "gasPrice": hex(tx.gas_price),
        "gas": hex(tx.gas_limit),
        "value": hex(tx.value),
        "data": "0x" + tx.data.hex(),
    }
    if tx.to is not None:
        fields["to"] = to_checksum_address("0x" + tx.to.hex())
    if sender:
        fields["from"] = sender
    return fields
