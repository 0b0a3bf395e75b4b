"""Mint address normalization helpers."""

from __future__ import annotations

import base58


def normalize_mint(value: str | None) -> str:
    """Base58 is case-sensitive, so only surrounding whitespace is stripped."""
    return str(value or "").strip()


def is_valid_mint(value: str | None) -> bool:
    text = normalize_mint(value)
    if not 32 <= len(text) <= 44:
        return False
    try:
        return len(base58.b58decode(text)) == 32
    except ValueError:
        return False


def dedupe_mints(values) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in values or []:
        mint = normalize_mint(raw)
        if mint and mint not in seen:
            seen.add(mint)
            out.append(mint)
    return out


def short_mint(value: str | None) -> str:
    text = normalize_mint(value)
    if len(text) <= 10:
        return text
    return f"{text[:4]}…{text[-4:]}"
