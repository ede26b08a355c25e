import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from config import Settings, settings as default_settings
from errors import LedgerError
from schemas import LedgerMirrorStatus

logger = logging.getLogger(__name__)

# Extra time a submission gets beyond the receipt wait so the receipt timeout fires first
RECEIPT_TIMEOUT_MARGIN = 10.0


@dataclass(frozen=True)
class LedgerCall:
    """One contract call (or a plain value transfer when ``function`` is None)."""

    function: Optional[str]
    args: Tuple[Any, ...] = ()
    value: int = 0
    to: Optional[str] = None


@dataclass
class LedgerReceipt:
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MirrorResult:
    """Outcome of one best-effort ledger write."""

    action: str
    status: LedgerMirrorStatus
    tx_hash: Optional[str] = None
    error: Optional[LedgerError] = None
    reason: Optional[str] = None
    receipt: Optional[LedgerReceipt] = None

    @property
    def confirmed(self) -> bool:
        return self.status == LedgerMirrorStatus.CONFIRMED

    @classmethod
    def skipped(cls, action: str, reason: str) -> "MirrorResult":
        return cls(action=action, status=LedgerMirrorStatus.SKIPPED, reason=reason)


async def mirror(action: str, pending: Awaitable[LedgerReceipt]) -> MirrorResult:
    """Await a ledger write and fold ``LedgerError`` into a failed result."""
    try:
        receipt = await pending
    except LedgerError as exc:
        return MirrorResult(
            action=action,
            status=LedgerMirrorStatus.FAILED,
            tx_hash=exc.tx_hash,
            error=exc,
        )
    return MirrorResult(
        action=action,
        status=LedgerMirrorStatus.CONFIRMED,
        tx_hash=receipt.tx_hash,
        receipt=receipt,
    )


def log_mirror_result(log: logging.Logger, result: MirrorResult, subject: str) -> None:
    if result.status == LedgerMirrorStatus.CONFIRMED:
        log.info("Ledger %s for %s confirmed: %s", result.action, subject, result.tx_hash)
    elif result.status == LedgerMirrorStatus.SKIPPED:
        log.info("Ledger %s for %s skipped: %s", result.action, subject, result.reason)
    else:
        log.warning(
            "Ledger %s for %s failed, database record kept: %s",
            result.action,
            subject,
            result.error.message if result.error else "unknown error",
        )


def _timestamp(value: int) -> str:
    return datetime.fromtimestamp(value, timezone.utc).isoformat().replace("+00:00", "Z")


class BlockchainService:
    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        self.w3: Optional[Web3] = None
        self.contract = None
        self.master_account = None
        self.timeout = settings.LEDGER_TIMEOUT_SECONDS

    @property
    def master_address(self) -> Optional[str]:
        return self.master_account.address if self.master_account else None

    @property
    def contract_address(self) -> Optional[str]:
        return self.contract.address if self.contract is not None else None

    async def initialize(self):
        """Initialize blockchain connection and load contract"""
        try:
            self.w3 = Web3(
                Web3.HTTPProvider(
                    self.settings.RPC_URL,
                    request_kwargs={"timeout": self.timeout},
                )
            )

            if self.settings.LEDGER_POA_CHAIN:
                self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

            # Master account pays gas for wallet funding and signs admin verification
            self.master_account = Account.from_key(self.settings.MASTER_PRIVATE_KEY)

            self._load_contract()
        except Exception as e:
            logger.error(f"Failed to initialize blockchain service: {e}")
            raise LedgerError("Failed to initialize blockchain service", details=str(e)) from e

        logger.info("Blockchain service initialized successfully")
        logger.info(f"Master wallet: {self.master_account.address}")
        logger.info(f"Network: {self.settings.NETWORK_NAME}")

    def _load_contract(self):
        """Load smart contract ABI and create contract instance"""
        with open(self.settings.CONTRACT_ABI_PATH, "r") as f:
            contract_data = json.load(f)

        # Hardhat artifacts wrap the ABI; a bare ABI array works too
        abi = contract_data["abi"] if isinstance(contract_data, dict) and "abi" in contract_data else contract_data

        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.settings.CONTRACT_ADDRESS),
            abi=abi,
        )
        logger.info(f"Contract loaded at address: {self.settings.CONTRACT_ADDRESS}")

    async def _run(
        self,
        description: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run a blocking web3 call in a worker thread under the ledger timeout."""
        if self.w3 is None:
            raise LedgerError("Blockchain service is not initialized")
        limit = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=limit)
        except LedgerError:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"{description} timed out after {limit}s")
            raise LedgerError(f"{description} timed out", details=f"no answer within {limit}s") from e
        except Exception as e:
            logger.error(f"{description} failed: {e}")
            raise LedgerError(f"{description} failed", details=str(e)) from e

    async def check_connection(self) -> bool:
        """Check if blockchain connection is healthy"""
        try:
            latest_block = await self._run("Connection check", self.w3.eth.get_block, "latest")
            return latest_block is not None
        except LedgerError as e:
            logger.error(f"Blockchain connection check failed: {e.details}")
            return False

    # ------------------------------------------------------------------
    # Transaction submission
    # ------------------------------------------------------------------
    def _build_transaction(self, sender: str, call: LedgerCall) -> Dict[str, Any]:
        base = {
            "from": sender,
            "nonce": self.w3.eth.get_transaction_count(sender),
            "chainId": self.settings.CHAIN_ID,
            "value": call.value,
        }

        if call.function is None:
            transaction = dict(base, to=Web3.to_checksum_address(call.to), gas=21000)
            self._apply_fees(transaction)
            return transaction

        function_call = getattr(self.contract.functions, call.function)(*call.args)
        # build_transaction estimates gas and fills EIP-1559 fees
        transaction = function_call.build_transaction(base)
        estimated_gas = transaction["gas"]
        gas_with_buffer = min(int(estimated_gas * self.settings.GAS_ESTIMATION_BUFFER), self.settings.GAS_LIMIT)
        transaction["gas"] = max(gas_with_buffer, estimated_gas)
        logger.info(f"Estimated gas: {estimated_gas}, Using: {transaction['gas']}")
        if "maxFeePerGas" not in transaction and "gasPrice" not in transaction:
            self._apply_fees(transaction)
        return transaction

    def _apply_fees(self, transaction: Dict[str, Any]) -> None:
        try:
            latest_block = self.w3.eth.get_block("latest")
            base_fee = latest_block["baseFeePerGas"]
            max_priority_fee = self.w3.eth.max_priority_fee
            transaction["maxFeePerGas"] = base_fee * 2 + max_priority_fee
            transaction["maxPriorityFeePerGas"] = max_priority_fee
        except Exception as gas_error:
            # Fallback to legacy transaction with network gas price
            logger.warning(f"EIP-1559 not available, using legacy transaction: {gas_error}")
            transaction.pop("maxFeePerGas", None)
            transaction.pop("maxPriorityFeePerGas", None)
            transaction["gasPrice"] = self.w3.eth.gas_price

    def _submit(self, private_key: str, call: LedgerCall) -> LedgerReceipt:
        account = Account.from_key(private_key)
        transaction = self._build_transaction(account.address, call)

        signed_txn = self.w3.eth.account.sign_transaction(transaction, private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except TimeExhausted as e:
            logger.error(f"No receipt for {tx_hex} after {self.timeout}s")
            raise LedgerError(
                f"Transaction not confirmed: {tx_hex}",
                details=f"no receipt within {self.timeout}s",
                tx_hash=tx_hex,
            ) from e
        if receipt["status"] != 1:
            raise LedgerError(f"Transaction reverted: {tx_hex}", tx_hash=tx_hex)

        logger.info(f"Transaction successful: {tx_hex} (gas used {receipt['gasUsed']})")
        result = LedgerReceipt(
            tx_hash=tx_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        if call.function == "registerProduct":
            events = self.contract.events.ProductRegistered().process_receipt(receipt, errors=DISCARD)
            if events:
                result.data["productId"] = int(events[0]["args"]["productId"])
        return result

    async def sign_and_submit(self, private_key: str, call: LedgerCall) -> LedgerReceipt:
        """Sign a call with ``private_key``, broadcast it and wait for the receipt."""
        if self.contract is None and call.function is not None:
            raise LedgerError("Contract is not loaded")
        label = call.function or "value transfer"
        return await self._run(
            f"Ledger call {label}",
            self._submit,
            private_key,
            call,
            timeout=self.timeout + RECEIPT_TIMEOUT_MARGIN,
        )

    # ------------------------------------------------------------------
    # Contract actions
    # ------------------------------------------------------------------
    async def register_stakeholder(self, private_key: str, name: str, location: str, role: int) -> LedgerReceipt:
        return await self.sign_and_submit(private_key, LedgerCall("registerStakeholder", (name, location, int(role))))

    async def verify_stakeholder(self, address: str) -> LedgerReceipt:
        """Verify stakeholder (master wallet is the contract owner)"""
        return await self.sign_and_submit(
            self.settings.MASTER_PRIVATE_KEY,
            LedgerCall("verifyStakeholder", (Web3.to_checksum_address(address),)),
        )

    async def register_product(
        self,
        private_key: str,
        name: str,
        variety: str,
        farm_location: str,
        quantity: float,
        quality_grade: str,
        is_organic: bool,
        price: float,
        ipfs_hash: str = "",
    ) -> LedgerReceipt:
        receipt = await self.sign_and_submit(
            private_key,
            LedgerCall(
                "registerProduct",
                (
                    name,
                    variety,
                    farm_location,
                    int(round(quantity)),
                    quality_grade,
                    bool(is_organic),
                    Web3.to_wei(Decimal(str(price)), "ether"),
                    ipfs_hash or "",
                ),
            ),
        )
        if "productId" not in receipt.data:
            logger.warning(f"ProductRegistered event missing from {receipt.tx_hash}")
        return receipt

    async def transfer_product(
        self,
        private_key: str,
        product_id: int,
        to_address: str,
        quantity: float,
        price: float,
        location: str,
    ) -> LedgerReceipt:
        return await self.sign_and_submit(
            private_key,
            LedgerCall(
                "transferProduct",
                (
                    int(product_id),
                    Web3.to_checksum_address(to_address),
                    int(round(quantity)),
                    Web3.to_wei(Decimal(str(price)), "ether"),
                    location,
                ),
            ),
        )

    async def fund_wallet(self, address: str, amount_ether: Optional[str] = None) -> LedgerReceipt:
        """Send gas money from the master wallet to a freshly issued user wallet"""
        amount = amount_ether or self.settings.FUND_AMOUNT_ETHER
        return await self.sign_and_submit(
            self.settings.MASTER_PRIVATE_KEY,
            LedgerCall(None, value=Web3.to_wei(Decimal(amount), "ether"), to=address),
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    async def is_stakeholder_verified(self, address: str) -> bool:
        stakeholder = await self._run(
            "getStakeholder",
            lambda: self.contract.functions.getStakeholder(Web3.to_checksum_address(address)).call(),
        )
        # (wallet, name, location, role, isVerified, registeredAt)
        return bool(stakeholder[4])

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        product = await self._run(
            "getProduct",
            lambda: self.contract.functions.getProduct(int(product_id)).call(),
        )
        return {
            "id": product[0],
            "name": product[1],
            "variety": product[2],
            "farmer": product[3],
            "farmLocation": product[4],
            "harvestDate": _timestamp(product[5]),
            "quantity": product[6],
            "qualityGrade": product[7],
            "isOrganic": product[8],
            "currentPrice": str(Web3.from_wei(product[9], "ether")),
            "status": product[10],
            "ipfsHash": product[11],
        }

    async def get_product_transactions(self, product_id: int) -> List[Dict[str, Any]]:
        transactions = await self._run(
            "getProductTransactions",
            lambda: self.contract.functions.getProductTransactions(int(product_id)).call(),
        )
        return [
            {
                "id": tx[0],
                "productId": tx[1],
                "from": tx[2],
                "to": tx[3],
                "quantity": tx[4],
                "price": str(Web3.from_wei(tx[5], "ether")),
                "timestamp": _timestamp(tx[6]),
                "location": tx[7],
                "txType": tx[8],
            }
            for tx in transactions
        ]

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        def _lookup():
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            latest = self.w3.eth.block_number
            return receipt, latest

        try:
            receipt, latest = await self._run("getTransactionReceipt", _lookup)
        except LedgerError as e:
            if "not found" in (e.details or "").lower():
                return None
            raise
        return {
            "blockNumber": receipt["blockNumber"],
            "blockHash": Web3.to_hex(receipt["blockHash"]),
            "gasUsed": str(receipt["gasUsed"]),
            "status": receipt["status"],
            "confirmations": latest - receipt["blockNumber"],
        }

    async def get_balance(self, address: str) -> str:
        balance = await self._run("getBalance", self.w3.eth.get_balance, Web3.to_checksum_address(address))
        return str(Web3.from_wei(balance, "ether"))


class OfflineLedger:
    """Stands in for the chain when it is not configured or unreachable.

    Every write fails with ``LedgerError`` so callers record the action in the
    database only.
    """

    master_address = None
    contract_address = None

    def __init__(self, reason: str = "ledger disabled"):
        self.reason = reason

    def _offline(self) -> LedgerError:
        return LedgerError("Ledger offline", details=self.reason)

    async def check_connection(self) -> bool:
        return False

    async def sign_and_submit(self, private_key: str, call: LedgerCall) -> LedgerReceipt:
        raise self._offline()

    async def register_stakeholder(self, private_key, name, location, role) -> LedgerReceipt:
        raise self._offline()

    async def verify_stakeholder(self, address) -> LedgerReceipt:
        raise self._offline()

    async def register_product(self, private_key, *args, **kwargs) -> LedgerReceipt:
        raise self._offline()

    async def transfer_product(self, private_key, *args, **kwargs) -> LedgerReceipt:
        raise self._offline()

    async def fund_wallet(self, address, amount_ether=None) -> LedgerReceipt:
        raise self._offline()

    async def is_stakeholder_verified(self, address) -> bool:
        raise self._offline()

    async def get_product(self, product_id) -> Dict[str, Any]:
        raise self._offline()

    async def get_product_transactions(self, product_id) -> List[Dict[str, Any]]:
        raise self._offline()

    async def get_transaction_receipt(self, tx_hash) -> Optional[Dict[str, Any]]:
        raise self._offline()

    async def get_balance(self, address) -> str:
        raise self._offline()


async def connect_ledger(settings: Settings = default_settings):
    """Return a live BlockchainService, or an OfflineLedger when that is impossible."""
    if not settings.LEDGER_ENABLED:
        logger.info("Ledger mirroring disabled by configuration")
        return OfflineLedger("ledger disabled by configuration")
    if not settings.MASTER_PRIVATE_KEY or not settings.CONTRACT_ADDRESS:
        logger.warning("MASTER_PRIVATE_KEY or CONTRACT_ADDRESS not set - running without ledger")
        return OfflineLedger("ledger not configured")

    service = BlockchainService(settings)
    try:
        await service.initialize()
    except LedgerError as e:
        logger.warning(f"Continuing without ledger: {e.details}")
        return OfflineLedger(e.details or e.message)
    return service
