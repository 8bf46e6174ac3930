"""IPv4 subnet math used to derive mask, network and gateway from a CIDR."""

from typing import Tuple

_ALL_ONES = 0xFFFFFFFF


class SubnetError(ValueError):
    """Base class for address math validation failures."""


class InvalidAddress(SubnetError):
    """Malformed or out-of-range dotted-decimal address."""


class InvalidPrefixLength(SubnetError):
    """Prefix length outside the allowed range."""


class InvalidBitString(SubnetError):
    """Bit string that is not exactly 32 characters of '0'/'1'."""


def _address_to_int(address: str) -> int:
    if not isinstance(address, str):
        raise InvalidAddress(f"Address must be a string, got {type(address).__name__}")
    octets = address.split(".")
    if len(octets) != 4:
        raise InvalidAddress(f"Address {address!r} must have exactly four octets")

    value = 0
    for octet in octets:
        if not octet.isdigit() or not octet.isascii():
            raise InvalidAddress(f"Octet {octet!r} in {address!r} is not a decimal number")
        if len(octet) > 3:
            raise InvalidAddress(f"Octet {octet!r} in {address!r} has more than three digits")
        number = int(octet)
        if number > 255:
            raise InvalidAddress(f"Octet {number} in {address!r} is outside 0-255")
        value = (value << 8) | number
    return value


def _int_to_address(value: int) -> str:
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def _check_prefix_length(prefix_length: int, maximum: int = 32) -> int:
    # bool is an int subclass; True/False are never meaningful prefixes
    if isinstance(prefix_length, bool) or not isinstance(prefix_length, int):
        raise InvalidPrefixLength(f"Prefix length must be an integer, got {prefix_length!r}")
    if not 0 <= prefix_length <= maximum:
        raise InvalidPrefixLength(f"Prefix length /{prefix_length} is outside 0-{maximum}")
    return prefix_length


def _mask_int(prefix_length: int) -> int:
    return (_ALL_ONES << (32 - prefix_length)) & _ALL_ONES


def to_binary_string(address: str) -> str:
    """
    Return the 32-character binary form of a dotted-decimal address.

    Octets may carry leading zeros up to three digits (``010``); converting
    back with ``to_dotted_decimal`` yields the canonical form (``10``).
    """
    return format(_address_to_int(address), "032b")


def to_dotted_decimal(bits: str) -> str:
    """Convert a 32-character string of '0'/'1' back to dotted-decimal."""
    if not isinstance(bits, str) or len(bits) != 32:
        raise InvalidBitString(f"Bit string must be 32 characters long, got {bits!r}")
    if set(bits) - {"0", "1"}:
        raise InvalidBitString(f"Bit string {bits!r} contains characters other than '0' and '1'")
    return _int_to_address(int(bits, 2))


def subnet_mask(prefix_length: int) -> str:
    """Dotted-decimal mask with ``prefix_length`` leading one-bits."""
    _check_prefix_length(prefix_length)
    return _int_to_address(_mask_int(prefix_length))


def network_address(address: str, prefix_length: int) -> str:
    """Address with every host bit cleared."""
    value = _address_to_int(address)
    _check_prefix_length(prefix_length)
    return _int_to_address(value & _mask_int(prefix_length))


def gateway_address(address: str, prefix_length: int) -> str:
    """
    First usable host of the network: network address with the lowest bit set.

    /31 and /32 networks have no distinct host range, so they are rejected
    instead of returning an address outside (or equal to) the network.

    Raises:
        InvalidAddress: If ``address`` is not a valid IPv4 address
        InvalidPrefixLength: If ``prefix_length`` is not in 0-30
    """
    value = _address_to_int(address)
    _check_prefix_length(prefix_length)
    if prefix_length > 30:
        raise InvalidPrefixLength(f"/{prefix_length} has no usable host range for a gateway")
    return _int_to_address((value & _mask_int(prefix_length)) | 1)


def parse_cidr(cidr: str) -> Tuple[str, int]:
    """Split ``a.b.c.d/n`` into a validated (address, prefix_length) pair."""
    if not isinstance(cidr, str) or cidr.count("/") != 1:
        raise InvalidAddress(f"CIDR {cidr!r} must be in the form a.b.c.d/n")
    address, _, prefix = cidr.strip().partition("/")
    value = _address_to_int(address)
    if not prefix.isdigit() or not prefix.isascii():
        raise InvalidPrefixLength(f"Prefix {prefix!r} in {cidr!r} is not a number")
    return _int_to_address(value), _check_prefix_length(int(prefix))
