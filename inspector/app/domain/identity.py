"""Operator display name derived from a bearer token's claims."""
from __future__ import annotations

import jwt as pyjwt
from loguru import logger

NAME_CLAIMS = ("upn", "unique_name", "preferred_username", "name", "appid", "oid")


def display_name_from_token(token: str) -> str | None:
    """Return the first populated name claim, or None when the token is not a readable JWT.

    The signature is not verified; the name is only used for traceability stamps.
    """
    try:
        claims = pyjwt.decode(token, options={"verify_signature": False})
    except pyjwt.PyJWTError as exc:
        logger.debug("token is not a readable jwt: {}", exc)
        return None
    for claim in NAME_CLAIMS:
        value = claims.get(claim)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
