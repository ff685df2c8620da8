import json
from typing import Optional

from itsdangerous import BadData, base64_decode, base64_encode
from pydantic import ValidationError

from schemas import TxCursor


def encode_tx_cursor(cursor: TxCursor) -> str:
    """JSON, UTF-8, then unpadded base64url."""
    payload = cursor.model_dump_json().encode("utf-8")
    return base64_encode(payload).decode("ascii")


def decode_tx_cursor(value: str) -> Optional[TxCursor]:
    """Reverse of :func:`encode_tx_cursor`; ``None`` for anything malformed."""
    try:
        raw = base64_decode(value)
        payload = json.loads(raw.decode("utf-8"))
        return TxCursor.model_validate(payload)
    except (
        BadData,
        UnicodeError,
        ValueError,
        TypeError,
        OverflowError,
        RecursionError,
        ValidationError,
    ):
        return None
