from __future__ import annotations
import secrets

CODE_LENGTH = 6


def generate_code() -> str:
    # leading digit is never 0, so the code is always a full six digits (100000..999999)
    head = secrets.choice("123456789")
    return head + "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH - 1))
