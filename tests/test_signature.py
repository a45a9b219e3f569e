"""Tests for the shared signature engine."""

import hashlib
import hmac

import pytest

from app.providers.signature import (
    MOMO_CALLBACK_SCHEME,
    MOMO_CREATE_SCHEME,
    STRIPE_SCHEME,
    VNPAY_SCHEME,
    canonicalize_stripe,
    canonicalize_vnpay,
    parse_stripe_signature_header,
    sign,
    verify,
)

VNPAY_PARAMS = {
    "vnp_TxnRef": "VNPAY_1700000000000_ab12cd34",
    "vnp_Amount": "25000000",
    "vnp_OrderInfo": "Thanh toan don hang O1",
    "vnp_ResponseCode": "00",
    "vnp_TmnCode": "TESTTMN1",
    "vnp_BankCode": "",
}

MOMO_CALLBACK = {
    "partnerCode": "MOMO_PARTNER",
    "orderId": "MOMO_1700000000000_ab12cd34",
    "requestId": "MOMO_1700000000000_ab12cd34",
    "amount": 250000,
    "orderInfo": "Payment for order O1",
    "orderType": "momo_wallet",
    "transId": 4088878653,
    "resultCode": 0,
    "message": "Successful.",
    "payType": "qr",
    "responseTime": 1700000005000,
    "extraData": "",
    "accessKey": "MOMO_ACCESS_KEY",
}

STRIPE_PARAMS = {"timestamp": "1700000000", "payload": '{"id":"evt_1","type":"checkout.session.completed"}'}

SCHEMES = [
    pytest.param(VNPAY_SCHEME, VNPAY_PARAMS, "vnp_Amount", id="vnpay"),
    pytest.param(MOMO_CALLBACK_SCHEME, MOMO_CALLBACK, "amount", id="momo"),
    pytest.param(STRIPE_SCHEME, STRIPE_PARAMS, "payload", id="stripe"),
]


def _flip_last_char(value: str) -> str:
    return value[:-1] + ("1" if value[-1] != "1" else "2")


class TestCanonicalization:
    def test_vnpay_sorted_and_urlencoded(self):
        assert canonicalize_vnpay(VNPAY_PARAMS) == (
            "vnp_Amount=25000000"
            "&vnp_OrderInfo=Thanh+toan+don+hang+O1"
            "&vnp_ResponseCode=00"
            "&vnp_TmnCode=TESTTMN1"
            "&vnp_TxnRef=VNPAY_1700000000000_ab12cd34"
        )

    def test_vnpay_excludes_hash_fields_and_foreign_keys(self):
        params = {**VNPAY_PARAMS, "vnp_SecureHash": "abc", "vnp_SecureHashType": "SHA512", "utm_source": "x"}
        assert canonicalize_vnpay(params) == canonicalize_vnpay(VNPAY_PARAMS)

    def test_momo_callback_field_order(self):
        assert MOMO_CALLBACK_SCHEME.canonicalize(MOMO_CALLBACK) == (
            "accessKey=MOMO_ACCESS_KEY&amount=250000&extraData=&message=Successful."
            "&orderId=MOMO_1700000000000_ab12cd34&orderInfo=Payment for order O1"
            "&orderType=momo_wallet&partnerCode=MOMO_PARTNER&payType=qr"
            "&requestId=MOMO_1700000000000_ab12cd34&responseTime=1700000005000"
            "&resultCode=0&transId=4088878653"
        )

    def test_momo_absent_fields_render_empty(self):
        canonical = MOMO_CREATE_SCHEME.canonicalize({"amount": 1000, "orderId": "X"})
        assert canonical.startswith("accessKey=&amount=1000&extraData=&ipnUrl=&orderId=X")

    def test_stripe_timestamp_dot_payload(self):
        assert canonicalize_stripe(STRIPE_PARAMS) == f"1700000000.{STRIPE_PARAMS['payload']}"


class TestDigests:
    def test_vnpay_is_hmac_sha512(self):
        expected = hmac.new(b"secret", canonicalize_vnpay(VNPAY_PARAMS).encode(), hashlib.sha512).hexdigest()
        assert sign(VNPAY_PARAMS, "secret", VNPAY_SCHEME) == expected

    def test_stripe_is_hmac_sha256(self):
        expected = hmac.new(b"whsec", canonicalize_stripe(STRIPE_PARAMS).encode(), hashlib.sha256).hexdigest()
        assert sign(STRIPE_PARAMS, "whsec", STRIPE_SCHEME) == expected


@pytest.mark.parametrize("scheme,params,field", SCHEMES)
class TestVerification:
    def test_round_trip(self, scheme, params, field):
        signature = sign(params, "s3cret", scheme)
        assert verify(params, signature, "s3cret", scheme)

    def test_uppercase_digest_accepted(self, scheme, params, field):
        signature = sign(params, "s3cret", scheme)
        assert verify(params, signature.upper(), "s3cret", scheme)

    def test_tampered_field_rejected(self, scheme, params, field):
        signature = sign(params, "s3cret", scheme)
        tampered = {**params, field: _flip_last_char(str(params[field]))}
        assert not verify(tampered, signature, "s3cret", scheme)

    def test_tampered_signature_rejected(self, scheme, params, field):
        signature = sign(params, "s3cret", scheme)
        assert not verify(params, _flip_last_char(signature), "s3cret", scheme)

    def test_wrong_secret_rejected(self, scheme, params, field):
        signature = sign(params, "s3cret", scheme)
        assert not verify(params, signature, "other", scheme)

    @pytest.mark.parametrize("provided", [None, "", 12345, "đ" * 128])
    def test_garbage_signature_rejected(self, scheme, params, field, provided):
        assert not verify(params, provided, "s3cret", scheme)


class TestStripeHeader:
    def test_parses_timestamp_and_all_v1(self):
        assert parse_stripe_signature_header("t=1700000000,v1=aaa,v0=zzz,v1=bbb") == ("1700000000", ["aaa", "bbb"])

    def test_missing_header(self):
        assert parse_stripe_signature_header(None) == (None, [])

    def test_ignores_malformed_parts(self):
        assert parse_stripe_signature_header("garbage, t=1 ,v1=abc") == ("1", ["abc"])
