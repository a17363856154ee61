"""
Tests for install and webhook signatures.
"""

import hashlib

from catalog_sync.security import (
    compute_install_signature,
    compute_webhook_signature,
    verify_install_signature,
    verify_webhook_signature,
)

SECRET = "app-secret"


def install_params(**overrides):
    params = {
        "language": "nl",
        "shop_id": "1001",
        "timestamp": "1700000000",
        "token": "install-token",
    }
    params.update(overrides)
    params["signature"] = compute_install_signature(params, SECRET)
    return params


class TestInstallSignature:

    def test_digest_of_sorted_pairs(self):
        params = {"token": "t", "language": "nl", "shop_id": "1", "timestamp": "2"}
        expected = hashlib.md5(b"language=nlshop_id=1timestamp=2token=tapp-secret").hexdigest()
        assert compute_install_signature(params, SECRET) == expected

    def test_valid(self):
        assert verify_install_signature(install_params(), SECRET)

    def test_tampered_param(self):
        params = install_params()
        params["shop_id"] = "9999"
        assert not verify_install_signature(params, SECRET)

    def test_wrong_secret(self):
        assert not verify_install_signature(install_params(), "other-secret")

    def test_missing_param(self):
        params = install_params()
        del params["token"]
        assert not verify_install_signature(params, SECRET)

    def test_expired_timestamp(self):
        params = install_params(timestamp="1000")
        assert verify_install_signature(params, SECRET, max_age=60, now=1050)
        assert not verify_install_signature(params, SECRET, max_age=60, now=2000)

    def test_unparseable_timestamp_with_max_age(self):
        params = install_params(timestamp="yesterday")
        assert not verify_install_signature(params, SECRET, max_age=60)

    def test_empty_secret_never_verifies(self):
        params = install_params()
        assert not verify_install_signature(params, "")


class TestWebhookSignature:

    def test_round_trip(self):
        body = b'{"itemGroup":"products"}'
        signature = compute_webhook_signature(body, SECRET)
        assert signature == hashlib.md5(body + SECRET.encode()).hexdigest()
        assert verify_webhook_signature(body, signature, SECRET)

    def test_whitespace_around_header_is_ignored(self):
        body = b"{}"
        assert verify_webhook_signature(body, f" {compute_webhook_signature(body, SECRET)}\n", SECRET)

    def test_modified_body(self):
        signature = compute_webhook_signature(b"{}", SECRET)
        assert not verify_webhook_signature(b"{ }", signature, SECRET)

    def test_missing_signature(self):
        assert not verify_webhook_signature(b"{}", None, SECRET)
        assert not verify_webhook_signature(b"{}", "", SECRET)
