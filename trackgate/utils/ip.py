"""IPv4 address helpers.

Ban ranges are stored as unsigned 32-bit integers; these helpers convert
between that form and the textual notations administrators type.
"""

from __future__ import annotations

import ipaddress

from trackgate.exceptions import ValidationError


def address_to_int(address: str | int) -> int | None:
    """Convert a client address to its IPv4 integer form.

    IPv4-mapped IPv6 addresses are unwrapped. Native IPv6 addresses have no
    32-bit form and yield None.

    Raises:
        ValueError: If the address cannot be parsed

    """
    if isinstance(address, int):
        if not 0 <= address <= 0xFFFFFFFF:
            msg = f"IPv4 integer out of range: {address}"
            raise ValueError(msg)
        return address

    ip = ipaddress.ip_address(address.strip())
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is None:
            return None
        ip = ip.ipv4_mapped
    return int(ip)


def int_to_address(value: int) -> str:
    """Format an IPv4 integer as dotted quad."""
    return str(ipaddress.IPv4Address(value))


def parse_ip_range(ip_range: str) -> tuple[int, int]:
    """Parse an IPv4 range into inclusive integer bounds.

    Supports:
    - CIDR notation: 192.168.0.0/24
    - Range notation: 192.168.0.0-192.168.255.255 (spaces around "-" allowed)
    - Single IP: 192.168.1.1

    Raises:
        ValidationError: If the range is invalid or not IPv4

    """
    ip_range = ip_range.strip()

    if "/" in ip_range:
        try:
            network = ipaddress.ip_network(ip_range, strict=False)
        except ValueError as e:
            msg = f"Invalid CIDR notation: {e}"
            raise ValidationError(msg) from e
        if not isinstance(network, ipaddress.IPv4Network):
            msg = f"Only IPv4 ranges can be banned: {ip_range}"
            raise ValidationError(msg)
        return int(network.network_address), int(network.broadcast_address)

    if "-" in ip_range:
        start_str, end_str = (part.strip() for part in ip_range.split("-", 1))
        try:
            start = ipaddress.IPv4Address(start_str)
            end = ipaddress.IPv4Address(end_str)
        except ValueError as e:
            msg = f"Invalid IP range: {e}"
            raise ValidationError(msg) from e
        if int(start) > int(end):
            msg = f"Range start must be <= end: {ip_range}"
            raise ValidationError(msg)
        return int(start), int(end)

    try:
        single = ipaddress.IPv4Address(ip_range)
    except ValueError as e:
        msg = f"Invalid IP address or range: {e}"
        raise ValidationError(msg) from e
    return int(single), int(single)


def parse_filter_line(line: str) -> tuple[int, int, str | None] | None:
    """Parse one line of a PeerGuardian or CIDR ban list.

    PeerGuardian lines look like ``description:1.2.3.0-1.2.3.255``; plain lines
    hold a CIDR, range or single address optionally followed by a comment.

    Returns:
        (from_ip, to_ip, description) or None for blank/comment lines

    Raises:
        ValidationError: If the line holds no valid range

    """
    line = line.strip()
    if not line or line.startswith(("#", "//")):
        return None

    description: str | None = None
    body = line
    # PeerGuardian: the description may itself contain ':' so split on the last one
    if ":" in line and "-" in line.rsplit(":", 1)[1]:
        description, body = line.rsplit(":", 1)
        description = description.strip() or None
    elif " - " in line:
        # eMule DAT: "start - end , level , description"
        fields = [field.strip() for field in line.split(",")]
        body = fields[0]
        if len(fields) > 2:
            description = fields[2] or None
    else:
        parts = line.split(None, 1)
        body = parts[0]
        if len(parts) > 1:
            description = parts[1].lstrip("#").strip() or None

    from_ip, to_ip = parse_ip_range(body)
    return from_ip, to_ip, description
