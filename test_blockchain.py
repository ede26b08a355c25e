#!/usr/bin/env python3
"""
Ledger collaborator: mirror results, the offline stand-in and connection fallbacks
"""
import time
from types import SimpleNamespace

import pytest
from eth_account import Account
from web3.exceptions import TimeExhausted

from blockchain import (
    BlockchainService,
    LedgerCall,
    LedgerReceipt,
    MirrorResult,
    OfflineLedger,
    connect_ledger,
    mirror,
)
from config import Settings
from errors import LedgerError
from schemas import LedgerMirrorStatus
from utils import generate_explorer_url, is_valid_address, is_valid_transaction_hash, mask_phone, percentage
from wallet import WalletService
from conftest import run

TX_HASH = "0x" + "ab" * 32


def ledger_settings(**overrides):
    values = {
        "LEDGER_ENABLED": True,
        "RPC_URL": "http://127.0.0.1:9",
        "MASTER_PRIVATE_KEY": WalletService.generate_wallet()["private_key"],
        "CONTRACT_ADDRESS": "0x" + "1" * 40,
        "LEDGER_TIMEOUT_SECONDS": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


async def _confirmed():
    return LedgerReceipt(tx_hash=TX_HASH, block_number=7, gas_used=50000)


async def _reverted():
    raise LedgerError("Transaction reverted", tx_hash=TX_HASH)


def test_mirror_confirmed():
    result = run(mirror("registerProduct", _confirmed()))
    assert result.confirmed
    assert result.tx_hash == TX_HASH
    assert result.receipt.block_number == 7


def test_mirror_folds_ledger_error_into_failed_result():
    result = run(mirror("transferProduct", _reverted()))
    assert result.status == LedgerMirrorStatus.FAILED
    assert not result.confirmed
    assert result.tx_hash == TX_HASH
    assert result.error.message == "Transaction reverted"


def test_skipped_result_carries_reason():
    result = MirrorResult.skipped("verifyStakeholder", "no wallet password supplied")
    assert result.status == LedgerMirrorStatus.SKIPPED
    assert result.reason == "no wallet password supplied"


def test_offline_ledger_rejects_every_call():
    offline = OfflineLedger("ledger not configured")

    assert run(offline.check_connection()) is False
    with pytest.raises(LedgerError) as excinfo:
        run(offline.fund_wallet("0x" + "2" * 40))
    assert excinfo.value.details == "ledger not configured"

    result = run(mirror("registerStakeholder", offline.register_stakeholder("0x1", "A", "B", 0)))
    assert result.status == LedgerMirrorStatus.FAILED


def test_connect_ledger_disabled():
    assert isinstance(run(connect_ledger(ledger_settings(LEDGER_ENABLED=False))), OfflineLedger)


def test_connect_ledger_without_contract_address():
    assert isinstance(run(connect_ledger(ledger_settings(CONTRACT_ADDRESS=""))), OfflineLedger)


def test_connect_ledger_falls_back_when_abi_missing(tmp_path):
    settings = ledger_settings(CONTRACT_ABI_PATH=str(tmp_path / "missing.json"))
    ledger = run(connect_ledger(settings))
    assert isinstance(ledger, OfflineLedger)


def test_initialize_loads_contract_abi():
    settings = ledger_settings()
    service = BlockchainService(settings)
    run(service.initialize())

    assert service.contract_address == "0x" + "1" * 40
    assert service.master_address is not None
    for function in ("registerStakeholder", "verifyStakeholder", "registerProduct", "transferProduct"):
        assert hasattr(service.contract.functions, function)
    assert hasattr(service.contract.events, "ProductRegistered")


def test_unreachable_rpc_reports_disconnected():
    service = BlockchainService(ledger_settings())
    run(service.initialize())
    assert run(service.check_connection()) is False


def test_slow_call_times_out_as_ledger_error():
    service = BlockchainService(ledger_settings())
    run(service.initialize())
    service.timeout = 0.05

    with pytest.raises(LedgerError) as excinfo:
        run(service._run("Slow call", time.sleep, 0.3))
    assert "timed out" in excinfo.value.message


def test_uninitialized_service_raises_ledger_error():
    service = BlockchainService(ledger_settings())
    with pytest.raises(LedgerError):
        run(service.sign_and_submit("0x" + "1" * 64, LedgerCall("registerStakeholder", ("A", "B", 0))))


def test_receipt_timeout_keeps_broadcast_hash(monkeypatch):
    service = BlockchainService(ledger_settings())
    run(service.initialize())
    service.timeout = 0.05
    broadcast = bytes.fromhex("cd" * 32)

    def wait_for_receipt(tx_hash, timeout):
        time.sleep(timeout)
        raise TimeExhausted(f"Transaction {tx_hash!r} is not in the chain after {timeout} seconds")

    service.w3 = SimpleNamespace(
        eth=SimpleNamespace(
            account=Account,
            send_raw_transaction=lambda raw: broadcast,
            wait_for_transaction_receipt=wait_for_receipt,
        )
    )
    monkeypatch.setattr(
        service,
        "_build_transaction",
        lambda sender, call: {"to": call.to, "value": 0, "gas": 21000, "gasPrice": 1, "nonce": 0, "chainId": 1},
    )

    signer = WalletService.generate_wallet()["private_key"]
    with pytest.raises(LedgerError) as excinfo:
        run(service.sign_and_submit(signer, LedgerCall(None, to="0x" + "2" * 40)))

    assert excinfo.value.tx_hash == "0x" + "cd" * 32
    assert "not confirmed" in excinfo.value.message


def test_transaction_hash_and_address_validation():
    assert is_valid_transaction_hash(TX_HASH)
    assert not is_valid_transaction_hash("0x1234")
    assert not is_valid_transaction_hash(None)
    assert is_valid_address("0x" + "Ab" * 20)
    assert not is_valid_address("0xnothex")


def test_explorer_url():
    assert generate_explorer_url(TX_HASH, "https://explorer.test/tx/") == f"https://explorer.test/tx/{TX_HASH}"
    assert generate_explorer_url("bogus") is None


def test_mask_phone_and_percentage():
    assert mask_phone("+919876543210") == "+91***210"
    assert mask_phone(None) == "N/A"
    assert percentage(1, 3) == 33
    assert percentage(5, 0) == 0
