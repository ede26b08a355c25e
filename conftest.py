"""
Shared pytest fixtures: an in-memory database, a fake ledger and an API client.
"""
import asyncio
import itertools

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

import auth
from blockchain import LedgerReceipt
from config import Settings
from database import Database
from errors import LedgerError
from main import build_services, create_app
from schemas import UserRole
from services.credentials import hash_password
from wallet import WalletService

ADMIN_KEY = "test-admin-key"
PASSWORD = "secret123"


class FakeLedger:
    """Records every call; set ``fail`` to make every call raise ``LedgerError``."""

    master_address = "0x" + "a" * 40
    contract_address = "0x" + "c" * 40

    def __init__(self):
        self.calls = []
        self.fail = False
        self.verified = set()
        self.products = {}
        self.receipts = {}
        self._product_ids = itertools.count(1)
        self._tx_counter = itertools.count(1)

    def _record(self, name, *args):
        self.calls.append((name, args))
        if self.fail:
            raise LedgerError(f"Ledger call {name} failed", details="connection refused")

    def _receipt(self, **data):
        tx_hash = "0x" + format(next(self._tx_counter), "064x")
        receipt = LedgerReceipt(tx_hash=tx_hash, block_number=100, gas_used=21000, data=data)
        self.receipts[tx_hash] = receipt
        return receipt

    def call_names(self):
        return [name for name, _ in self.calls]

    async def check_connection(self):
        return not self.fail

    async def fund_wallet(self, address, amount_ether=None):
        self._record("fundWallet", address)
        return self._receipt()

    async def register_stakeholder(self, private_key, name, location, role):
        self._record("registerStakeholder", name, location, role)
        return self._receipt()

    async def verify_stakeholder(self, address):
        self._record("verifyStakeholder", address)
        self.verified.add(address.lower())
        return self._receipt()

    async def register_product(self, private_key, name, variety, farm_location, quantity,
                               quality_grade, is_organic, price, ipfs_hash=""):
        self._record("registerProduct", name, variety, quantity)
        product_id = next(self._product_ids)
        self.products[product_id] = {
            "id": product_id,
            "name": name,
            "variety": variety,
            "farmer": Account.from_key(private_key).address,
            "farmLocation": farm_location,
            "quantity": quantity,
            "qualityGrade": quality_grade,
            "isOrganic": is_organic,
            "currentPrice": str(price),
            "status": 0,
            "ipfsHash": ipfs_hash,
        }
        return self._receipt(productId=product_id)

    async def transfer_product(self, private_key, product_id, to_address, quantity, price, location):
        self._record("transferProduct", product_id, to_address, quantity)
        return self._receipt()

    async def is_stakeholder_verified(self, address):
        self._record("getStakeholder", address)
        return address.lower() in self.verified

    async def get_product(self, product_id):
        self._record("getProduct", product_id)
        return self.products[product_id]

    async def get_product_transactions(self, product_id):
        self._record("getProductTransactions", product_id)
        return []

    async def get_transaction_receipt(self, tx_hash):
        self._record("getTransactionReceipt", tx_hash)
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            return None
        return {
            "blockNumber": receipt.block_number,
            "blockHash": "0x" + "b" * 64,
            "gasUsed": str(receipt.gas_used),
            "status": 1,
            "confirmations": 3,
        }

    async def get_balance(self, address):
        self._record("getBalance", address)
        return "0.1"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def test_settings(monkeypatch):
    monkeypatch.setattr(auth.settings, "ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(auth.settings, "JWT_SECRET", "test-jwt-secret")
    return Settings(
        DATABASE_URL="sqlite://",
        LEDGER_ENABLED=False,
        AUTO_VERIFY_USERS=False,
        ADMIN_API_KEY=ADMIN_KEY,
        JWT_SECRET="test-jwt-secret",
        FRONTEND_URL="http://frontend.test",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def wallet():
    # Cheap scrypt cost keeps the suite fast
    return WalletService(scrypt_n=2 ** 4)


@pytest.fixture
def services(test_settings, db, ledger, wallet):
    return build_services(test_settings, db, ledger, wallet)


@pytest.fixture
def make_user(services, wallet):
    """Create a stakeholder directly in the store, verified unless told otherwise."""
    counter = itertools.count(1)

    def _make_user(role=UserRole.FARMER, verified=True, password=PASSWORD, name=None):
        number = next(counter)
        issued = wallet.generate_wallet()
        user = services.credentials.register(
            phone=f"+91900000{number:04d}",
            name=name or f"{UserRole(role).label} {number}",
            location="Nashik",
            role=role,
            wallet_address=issued["address"],
            encrypted_private_key=wallet.serialize(wallet.encrypt_private_key(issued["private_key"], password)),
            password_hash=hash_password(password),
        )
        if verified:
            user = services.credentials.verify(user.id)
        return user

    return _make_user


@pytest.fixture
def batch_fields():
    return {
        "produce": "Tomato",
        "variety": "Roma",
        "quantity": 100,
        "price": 25.0,
        "quality_grade": "A",
        "is_organic": True,
        "farm_location": "Nashik, Maharashtra",
        "gps_coordinates": "19.99,73.78",
    }


@pytest.fixture
def client(test_settings, db, ledger, wallet):
    app = create_app(test_settings, database=db, ledger=ledger, wallet=wallet)
    with TestClient(app) as test_client:
        yield test_client
