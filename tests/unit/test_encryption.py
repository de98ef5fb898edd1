from __future__ import annotations

import base64

import pytest

from onetable_py import CryptoError, Table
from onetable_py.encryption import Cipher
from onetable_py.mocks import FakeDynamoDBClient
from onetable_py.testkit import fixed_rand_bytes

CRYPTO = {"primary": {"cipher": "aes-256-gcm", "password": "correct-horse"}}


def test_cipher_round_trip_is_self_describing() -> None:
    cipher = Cipher(CRYPTO, rand_bytes=fixed_rand_bytes(b"\x01"))
    token = cipher.encrypt("top secret")

    name, tag, iv, data = token.split(":")
    assert name == "primary"
    assert iv == "01" * 16
    assert base64.b64decode(tag)
    assert data
    assert cipher.decrypt(token) == "top secret"


def test_cipher_rejects_tampered_tokens() -> None:
    cipher = Cipher(CRYPTO)
    name, _tag, iv, data = cipher.encrypt("top secret").split(":")
    forged = ":".join((name, base64.b64encode(b"\x00" * 16).decode("ascii"), iv, data))
    with pytest.raises(CryptoError, match="Cannot decrypt"):
        cipher.decrypt(forged)


def test_cipher_configuration_errors() -> None:
    with pytest.raises(CryptoError, match="Unsupported cipher"):
        Cipher({"primary": {"cipher": "des", "password": "x"}})
    with pytest.raises(CryptoError, match="requires a password"):
        Cipher({"primary": {}})
    with pytest.raises(CryptoError, match="No database secret"):
        Cipher(None).encrypt("x")
    assert Cipher(None).decrypt("plain") == "plain"


SCHEMA = {
    "version": "0.0.1",
    "indexes": {"primary": {"hash": "pk", "sort": "sk"}},
    "models": {
        "Card": {
            "pk": {"type": "string", "value": "card#${id}"},
            "sk": {"type": "string", "value": "card#"},
            "id": {"type": "string"},
            "number": {"type": "string", "crypt": True},
        }
    },
}


def test_crypt_fields_are_encrypted_on_write_and_decrypted_on_read() -> None:
    client = FakeDynamoDBClient()
    stored: dict = {}

    def validate_put(req: dict) -> None:
        stored.update(req["Item"])
        assert req["Item"]["number"]["S"].startswith("primary:")
        assert "4242" not in req["Item"]["number"]["S"]

    client.expect("put_item", validate_put)
    table = Table("app-table", client=client, schema=SCHEMA, crypto=CRYPTO)

    created = table.create("Card", {"id": "c1", "number": "4242424242424242"})
    assert created["number"] == "4242424242424242"

    client.expect("get_item", response={"Item": stored})
    fetched = table.get("Card", {"id": "c1"})
    assert fetched == {"id": "c1", "number": "4242424242424242", "_type": "Card"}
    client.assert_no_pending()


def test_crypt_fields_require_crypto_configuration() -> None:
    table = Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA)
    with pytest.raises(CryptoError, match="no crypto is configured"):
        table.create("Card", {"id": "c1", "number": "4242"})
