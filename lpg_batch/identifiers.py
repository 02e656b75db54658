"""
Identifier parsing: free-text batch input → ordered list of 16-digit NIKs.
"""

import re

NIK_LENGTH = 16

# Any run of whitespace (newlines included), commas or semicolons
_DELIMITERS = re.compile(r"[\s,;]+")
_NIK_RE = re.compile(r"[0-9]{16}")


def is_valid_identifier(token: str) -> bool:
    """True iff *token* is exactly 16 decimal digits after trimming."""
    return bool(_NIK_RE.fullmatch(token.strip()))


def parse_identifiers(raw: str) -> list[str]:
    """
    Split pasted input into identifiers.

    Order and duplicates are preserved; invalid tokens are dropped silently.
    An empty result means there is nothing to process.
    """
    if not raw:
        return []
    tokens = (token.strip() for token in _DELIMITERS.split(raw))
    return [token for token in tokens if token and is_valid_identifier(token)]
