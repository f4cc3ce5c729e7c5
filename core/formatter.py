from typing import Any, Iterable, Mapping, Optional

AMOUNT_TOKEN = "%amount%"
NAME_TOKEN = "%name%"
TRANSACTION_DETAILS_TOKEN = "%transaction_details%"

KNOWN_TOKENS = (AMOUNT_TOKEN, NAME_TOKEN, TRANSACTION_DETAILS_TOKEN)


def token_for(key: str) -> str:
    return f"%{key}%"


def format_placeholders(
    template: str,
    values: Mapping[str, Any],
    *,
    allowed: Optional[Iterable[str]] = None,
) -> str:
    """Replace ``%key%`` markers in a confirmation template.

    Each distinct token is replaced once, at its first occurrence. Tokens
    without a value (or outside ``allowed`` when given) are left verbatim.
    """
    text = template or ""
    permitted = set(allowed) if allowed is not None else None
    for key, value in values.items():
        token = token_for(key)
        if permitted is not None and token not in permitted:
            continue
        if value is None:
            continue
        text = text.replace(token, str(value), 1)
    return text


def transaction_details(tx_hash: str, explorer_url: str) -> str:
    link = f"{explorer_url.rstrip('/')}/{tx_hash}"
    return f"\nTransaction details: {link}"
