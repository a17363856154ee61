"""
Signature checks for install requests and webhook deliveries.

Both follow the upstream platform's scheme: an md5 digest over the
request data with the application secret appended.
"""

import hashlib
import hmac
import time
from typing import Mapping

INSTALL_SIGNATURE_PARAMS = ("language", "shop_id", "timestamp", "token")


def compute_install_signature(params: Mapping[str, object], app_secret: str) -> str:
    """Hash of the sorted install parameters concatenated with the secret."""
    pairs = "".join(
        f"{key}={params[key]}" for key in sorted(INSTALL_SIGNATURE_PARAMS) if key in params
    )
    return hashlib.md5(f"{pairs}{app_secret}".encode()).hexdigest()


def verify_install_signature(
    params: Mapping[str, object],
    app_secret: str,
    max_age: float | None = None,
    now: float | None = None,
) -> bool:
    """
    Verify an install request signature.

    Args:
        params: Request parameters, including `signature`
        app_secret: Shared application secret
        max_age: Reject timestamps older than this many seconds (None = no check)
        now: Current unix time (injectable for tests)
    """
    signature = params.get("signature")
    if not signature or not app_secret:
        return False
    if any(key not in params for key in INSTALL_SIGNATURE_PARAMS):
        return False

    if max_age is not None:
        try:
            issued = float(params["timestamp"])
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        if current - issued > max_age:
            return False

    expected = compute_install_signature(params, app_secret)
    return hmac.compare_digest(expected, str(signature))


def compute_webhook_signature(body: bytes, app_secret: str) -> str:
    return hashlib.md5(body + app_secret.encode()).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, app_secret: str) -> bool:
    """Check the `x-signature` header of a webhook delivery."""
    if not signature or not app_secret:
        return False
    return hmac.compare_digest(compute_webhook_signature(body, app_secret), signature.strip())
