from __future__ import annotations

import ipaddress
from typing import Tuple, Union

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str, None]

_FAMILY_NONE = 0
_FAMILY_IPV4 = 1
_FAMILY_IPV6 = 2
_FAMILY_OTHER = 3


def parse_address(value: object) -> Address:
    """Normalize an address value; IP literals become ipaddress objects, anything else stays text."""
    if value is None:
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if isinstance(value, bytes):
        if len(value) in (4, 16):
            return ipaddress.ip_address(value)
        return value.hex()
    text = str(value).strip()
    if not text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return text


def address_to_display(address: Address) -> str:
    if address is None:
        return ""
    return str(address)


def address_sort_key(address: Address) -> Tuple[int, int, bytes]:
    """
    Total order over address values: family first, then length, then bytes.

    Unset addresses sort first and non-IP addresses sort after IPv6, compared
    on their UTF-8 text.
    """
    if address is None:
        return _FAMILY_NONE, 0, b""
    if isinstance(address, ipaddress.IPv4Address):
        return _FAMILY_IPV4, 4, address.packed
    if isinstance(address, ipaddress.IPv6Address):
        return _FAMILY_IPV6, 16, address.packed
    raw = str(address).encode("utf-8")
    return _FAMILY_OTHER, len(raw), raw
