from __future__ import annotations

import hmac


def secret_matches(provided: str | None, expected: str | None, *, allow_bearer: bool = False) -> bool:
    """Constant-time shared-secret check. An unconfigured secret matches nothing."""
    if not expected or not provided:
        return False
    if allow_bearer and provided.startswith("Bearer "):
        provided = provided[len("Bearer "):]
    return hmac.compare_digest(provided.strip().encode(), expected.encode())
