"""Interest tokens: the crude relevance signal derived from a user's own content."""
from typing import Iterable

MIN_TOKEN_LENGTH = 4


def extract_interest_tokens(texts: Iterable[str]) -> list[str]:
    """
    Lowercase, whitespace-split and de-duplicate the given texts.

    Tokens of three characters or fewer are dropped. Order is first occurrence,
    so the result is deterministic for the same input.
    """
    words = " ".join(t for t in texts if t).lower().split()
    return list(dict.fromkeys(w for w in words if len(w) >= MIN_TOKEN_LENGTH))
