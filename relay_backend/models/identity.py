import re

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")
BARE_MAC_PATTERN = re.compile(r"^[0-9A-Fa-f]{12}$")


def is_mac_address(value: str) -> bool:
    value = value.strip()
    return bool(MAC_PATTERN.match(value) or BARE_MAC_PATTERN.match(value))


def normalize_identity(raw: str) -> str:
    """
    Return the canonical device identity.

    MAC addresses become upper-case and colon separated; any other device id is
    stripped and lower-cased so lookups stay case-insensitive.
    """
    if raw is None:
        raise ValueError("device identity is required")
    value = str(raw).strip()
    if not value:
        raise ValueError("device identity is required")
    if MAC_PATTERN.match(value):
        return value.replace("-", ":").upper()
    if BARE_MAC_PATTERN.match(value):
        value = value.upper()
        return ":".join(value[i : i + 2] for i in range(0, 12, 2))
    return value.lower()
