"""
Input Validation for access tokens.

Tokens are checked for shape at the HTTP boundary so malformed input never
reaches the resolver. Older token generations can be as short as 8
characters; new tokens are at least 20.
"""

import re
from typing import Annotated

from fastapi import Path
from pydantic import AfterValidator


TOKEN_MIN_LENGTH = 8
TOKEN_MAX_LENGTH = 128
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def strip_control_chars(value: str) -> str:
    """
    Remove control characters (except newlines/tabs).
    Prevents null byte injection and similar attacks.
    """
    if not value:
        return value
    # Keep: \t (9), \n (10), \r (13), and printable chars (32+)
    return ''.join(c for c in value if ord(c) >= 32 or c in '\t\n\r')


def is_well_formed_token(value: str | None) -> bool:
    if not value:
        return False
    return (
        TOKEN_MIN_LENGTH <= len(value) <= TOKEN_MAX_LENGTH
        and TOKEN_PATTERN.match(value) is not None
    )


def validate_token(value: str) -> str:
    """Validator for opaque access tokens."""
    value = strip_control_chars(value).strip()
    if not is_well_formed_token(value):
        raise ValueError("Malformed access token")
    return value


# Annotated type for path parameters
AccessTokenPath = Annotated[
    str,
    Path(min_length=TOKEN_MIN_LENGTH, max_length=TOKEN_MAX_LENGTH, pattern=TOKEN_PATTERN.pattern),
    AfterValidator(validate_token),
]


__all__ = [
    "TOKEN_MIN_LENGTH",
    "TOKEN_MAX_LENGTH",
    "strip_control_chars",
    "is_well_formed_token",
    "validate_token",
    "AccessTokenPath",
]
