"""Display formatting for pairing artifacts."""


def format_pairing_code(code: str, group_size: int = 4) -> str:
    """Group a pairing code into fixed-size chunks for readability.

    Purely cosmetic; the protocol client accepts the raw code.

    Args:
        code: Raw pairing code from the protocol client.
        group_size: Characters per group.

    Returns:
        Code grouped with dashes, e.g. "ABCD-EFGH".

    Examples:
        >>> format_pairing_code("ABCDEFGH")
        "ABCD-EFGH"
        >>> format_pairing_code("ABCDEFGHIJ", 4)
        "ABCD-EFGH-IJ"
    """
    raw = code.replace("-", "").strip()
    if group_size <= 0:
        return raw
    return "-".join(raw[i : i + group_size] for i in range(0, len(raw), group_size))
