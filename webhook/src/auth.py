from __future__ import annotations

import hmac
from collections.abc import Mapping

from controller.src.errors import AuthenticationFailure

TOKEN_HEADER = "X-Argoos-Token"


def check_token(headers: Mapping[str, str], token: str) -> None:
    """Validate the shared-secret header against the configured *token*.

    Authentication is disabled when *token* is empty.  Otherwise the trimmed
    ``X-Argoos-Token`` header must be non-empty and equal the token exactly.
    Raises :class:`AuthenticationFailure` on mismatch.
    """
    if not token:
        return

    provided = (headers.get(TOKEN_HEADER) or "").strip()
    if not provided or not hmac.compare_digest(provided.encode(), token.encode()):
        raise AuthenticationFailure()
