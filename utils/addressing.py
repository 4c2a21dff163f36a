"""Address normalization helpers."""

from __future__ import annotations


def normalize_address(value: str | None) -> str:
    """Normalize instrument address keys for internal maps/dedup.

    Solana addresses are base58 and case-sensitive, so only surrounding
    whitespace is stripped.
    """
    return str(value or "").strip()


def same_address(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    return bool(a) and a == normalize_address(right)
