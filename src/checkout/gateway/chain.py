"""Read-only access to an EVM chain.

Only the three reads needed to verify a payment are exposed. Both clients
return the same normalised shapes: ints for quantities, lowercase hex for
hashes and addresses, and ERC-20 transfers already decoded from the receipt
logs, so the verifier never deals with raw JSON-RPC encoding.
"""

import threading
from abc import ABC, abstractmethod

import structlog
from eth_utils import is_0x_prefixed, is_hexstr
from web3 import HTTPProvider, Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from checkout.errors import TransientProviderError

logger = structlog.get_logger(__name__)

SUPPORTED_CHAIN_IDS = frozenset({1, 5, 137, 80001})

ERC20_TRANSFER_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    }
]


def is_tx_hash(value: str | None) -> bool:
    return isinstance(value, str) and is_0x_prefixed(value) and len(value) == 66 and is_hexstr(value)


def is_address(value: str | None) -> bool:
    """A 0x-prefixed 20-byte address. Mixed case must be a valid EIP-55 checksum."""
    return isinstance(value, str) and is_0x_prefixed(value) and Web3.is_address(value)


class ChainClient(ABC):
    @abstractmethod
    def get_transaction(self, tx_hash: str) -> dict | None: ...

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> dict | None:
        """Mined receipt with ``status``, ``block_number`` and decoded ERC-20 ``transfers``."""
        ...

    @abstractmethod
    def block_number(self) -> int: ...


class JsonRpcChainClient(ChainClient):
    """EVM node over HTTP JSON-RPC, through web3.py."""

    def __init__(self, rpc_url: str, timeout: float, web3: Web3 | None = None) -> None:
        self.w3 = web3 or Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._transfer_event = self.w3.eth.contract(abi=ERC20_TRANSFER_ABI).events.Transfer()

    def _call(self, method: str, fn, *args):
        try:
            return fn(*args)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError) as exc:
            logger.warning("rpc_error", method=method, error=str(exc))
            raise TransientProviderError(f"{method}: {exc}") from exc

    def get_transaction(self, tx_hash: str) -> dict | None:
        tx = self._call("eth_getTransactionByHash", self.w3.eth.get_transaction, tx_hash)
        if tx is None:
            return None
        return {
            "hash": Web3.to_hex(tx["hash"]).lower(),
            "from": (tx.get("from") or "").lower(),
            "to": (tx.get("to") or "").lower(),
            "value": int(tx.get("value") or 0),
            "block_number": tx.get("blockNumber"),
        }

    def get_receipt(self, tx_hash: str) -> dict | None:
        receipt = self._call("eth_getTransactionReceipt", self.w3.eth.get_transaction_receipt, tx_hash)
        if receipt is None:
            return None
        return {
            "status": receipt.get("status"),
            "block_number": receipt.get("blockNumber"),
            "transfers": [
                {
                    "token": event["address"].lower(),
                    "from": event["args"]["from"].lower(),
                    "to": event["args"]["to"].lower(),
                    "value": int(event["args"]["value"]),
                }
                for event in self._transfer_event.process_receipt(receipt, errors=DISCARD)
            ],
        }

    def block_number(self) -> int:
        return self._call("eth_blockNumber", lambda: self.w3.eth.block_number)


class FakeChain(ChainClient):
    """In-memory chain for tests and local development."""

    def __init__(self, head: int = 100) -> None:
        self._lock = threading.Lock()
        self.head = head
        self.transactions: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.unreachable = False

    def submit(
        self,
        tx_hash: str,
        to: str,
        value: int = 0,
        sender: str = "0x" + "1" * 40,
        status: int = 1,
        transfers: list[dict] | None = None,
        mined: bool = True,
    ) -> None:
        """Broadcast a transaction, optionally mined in the current head block."""
        tx_hash = tx_hash.lower()
        with self._lock:
            block = self.head if mined else None
            self.transactions[tx_hash] = {
                "hash": tx_hash,
                "from": sender.lower(),
                "to": to.lower(),
                "value": value,
                "block_number": block,
            }
            if mined:
                self.receipts[tx_hash] = {"status": status, "block_number": block, "transfers": transfers or []}

    def mine(self, blocks: int = 1) -> None:
        with self._lock:
            self.head += blocks

    def _check(self):
        if self.unreachable:
            raise TransientProviderError("chain unreachable")

    def get_transaction(self, tx_hash: str) -> dict | None:
        self._check()
        return self.transactions.get(tx_hash.lower())

    def get_receipt(self, tx_hash: str) -> dict | None:
        self._check()
        return self.receipts.get(tx_hash.lower())

    def block_number(self) -> int:
        self._check()
        return self.head


def erc20_transfer(token: str, sender: str, recipient: str, amount: int) -> dict:
    """A decoded Transfer event in the normalised receipt format."""
    return {"token": token.lower(), "from": sender.lower(), "to": recipient.lower(), "value": amount}
