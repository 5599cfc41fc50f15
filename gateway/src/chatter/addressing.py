from __future__ import annotations

SEPARATOR = "_"

_ESCAPES = {"%": "%25", SEPARATOR: "%5F"}


def _escape(identity: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in identity)


def conversation_id(user_a: str, user_b: str) -> str:
    """Return the canonical id of the two-party conversation between ``user_a`` and ``user_b``.

    The pair is sorted so the id is order independent. Separator characters
    inside an identity are escaped, which keeps distinct pairs from sharing an
    id; plain phone-number identities come out as ``"<low>_<high>"``.
    """

    low, high = sorted((str(user_a), str(user_b)))
    return f"{_escape(low)}{SEPARATOR}{_escape(high)}"
