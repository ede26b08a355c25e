#!/usr/bin/env python3
"""
Custodial wallet: key generation, password encryption and unlock failures
"""
import json

import pytest
from eth_account import Account

from errors import AuthenticationError, ValidationError
from wallet import WalletService


@pytest.fixture
def issued(wallet):
    return wallet.generate_wallet()


def test_generate_wallet_derives_address_from_key(wallet, issued):
    assert issued["private_key"].startswith("0x")
    assert len(issued["private_key"]) == 66
    assert Account.from_key(issued["private_key"]).address == issued["address"]


def test_generated_wallets_are_unique(wallet):
    addresses = {wallet.generate_wallet()["address"] for _ in range(5)}
    assert len(addresses) == 5


def test_encrypt_then_decrypt_returns_private_key(wallet, issued):
    record = wallet.encrypt_private_key(issued["private_key"], "correct horse")

    assert set(record) == {"encrypted", "iv", "salt"}
    assert len(bytes.fromhex(record["iv"])) == 12
    assert len(bytes.fromhex(record["salt"])) == 16
    assert issued["private_key"][2:] not in record["encrypted"]
    assert wallet.decrypt_private_key(record, "correct horse") == issued["private_key"]


def test_decrypt_accepts_stored_json(wallet, issued):
    stored = wallet.serialize(wallet.encrypt_private_key(issued["private_key"], "pw123456"))
    assert wallet.decrypt_private_key(stored, "pw123456") == issued["private_key"]


def test_each_encryption_uses_fresh_salt_and_iv(wallet, issued):
    first = wallet.encrypt_private_key(issued["private_key"], "pw123456")
    second = wallet.encrypt_private_key(issued["private_key"], "pw123456")
    assert first["salt"] != second["salt"]
    assert first["iv"] != second["iv"]
    assert first["encrypted"] != second["encrypted"]


def test_wrong_password_is_an_authentication_error(wallet, issued):
    record = wallet.encrypt_private_key(issued["private_key"], "right-password")
    with pytest.raises(AuthenticationError):
        wallet.decrypt_private_key(record, "wrong-password")


def test_tampered_ciphertext_fails_authentication(wallet, issued):
    record = wallet.encrypt_private_key(issued["private_key"], "pw123456")
    flipped = format(int(record["encrypted"][:2], 16) ^ 0xFF, "02x")
    record["encrypted"] = flipped + record["encrypted"][2:]
    with pytest.raises(AuthenticationError):
        wallet.decrypt_private_key(record, "pw123456")


@pytest.mark.parametrize(
    "mutate",
    [
        lambda record: record.pop("iv"),
        lambda record: record.pop("salt"),
        lambda record: record.update(encrypted="not-hex"),
        lambda record: record.update(iv="abcd"),
        lambda record: record.update(encrypted=record["encrypted"][:20]),
    ],
    ids=["missing-iv", "missing-salt", "non-hex", "short-iv", "truncated"],
)
def test_malformed_record_is_a_validation_error(wallet, issued, mutate):
    record = wallet.encrypt_private_key(issued["private_key"], "pw123456")
    mutate(record)
    with pytest.raises(ValidationError):
        wallet.decrypt_private_key(record, "pw123456")


def test_garbage_json_is_a_validation_error(wallet):
    with pytest.raises(ValidationError):
        wallet.decrypt_private_key("{not json", "pw123456")
    with pytest.raises(ValidationError):
        wallet.decrypt_private_key(json.dumps(["a", "b"]), "pw123456")


def test_empty_password_cannot_protect_a_wallet(wallet, issued):
    with pytest.raises(ValidationError):
        wallet.encrypt_private_key(issued["private_key"], "")


def test_get_user_account_unlocks_signing_account(wallet, issued):
    record = wallet.encrypt_private_key(issued["private_key"], "pw123456")
    account = wallet.get_user_account(record, "pw123456")
    assert account.address == issued["address"]


def test_default_cost_matches_scrypt_parameters():
    assert WalletService().scrypt_n == 2 ** 14
