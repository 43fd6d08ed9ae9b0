from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from eth_utils import to_hex


def hex_to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity (hex string) or an already-decoded integer"""
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)

    elif isinstance(value, bytes):
        return int.from_bytes(value, "big")

    return int(value)


# NOTE: web3py returns `AttributeDict` of `HexBytes`, raw subscriptions return hex strings
def clean_hexbytes_dict(data: Mapping, recurse_count: int = 0) -> dict:
    """Strips `HexBytes` objects from mapping values, so every consumer sees hex strings"""
    fixed_data: dict[str, Any] = {}
    for name, value in data.items():
        if isinstance(value, bytes):
            fixed_data[name] = to_hex(value)

        elif isinstance(value, (list, tuple)):
            fixed_data[name] = [to_hex(v) if isinstance(v, bytes) else v for v in value]

        elif isinstance(value, Mapping):
            if recurse_count > 3:
                raise RecursionError("object is too deep")

            fixed_data[name] = clean_hexbytes_dict(value, recurse_count + 1)

        else:
            fixed_data[name] = value

    return fixed_data


def gwei_to_wei(amount: Decimal | int | float) -> int:
    return int(Decimal(str(amount)) * 10**9)


def mask_secret(value: str, visible: int = 4) -> str:
    if len(value) <= 2 * visible:
        return "*" * len(value)

    return f"{value[:visible]}...{value[-visible:]}"
