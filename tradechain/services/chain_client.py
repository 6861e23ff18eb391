"""
Chain Client
web3.py wrapper around the TradeDocuments contract: signing, broadcast, receipts and block-pinned reads
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import pybreaker
import requests
import structlog
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from tradechain.models.write_request import LogicalKey, RecordType
from tradechain.services.contract_schema import load_abi, validate_abi
from tradechain.services.errors import (
    ContractConfigError,
    CoordinatorError,
    InsufficientFunds,
    NonceConflict,
    RecordNotFound,
    Reverted,
    TransientChainError,
    UpstreamUnavailable,
)

logger = structlog.get_logger(__name__)

NONCE_CONFLICT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "transaction underpriced",
    "nonce has already been used",
)
ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "alreadyknown")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class ContractCall:
    """A contract write: function name and positional arguments."""
    function: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class SignedCall:
    tx_hash: str
    raw_transaction: bytes
    nonce: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int  # 1 success, 0 reverted


def call_for(key: LogicalKey, payload: Dict[str, Any]) -> ContractCall:
    """Map a validated write to its contract call."""
    if key.record_type == RecordType.DOCUMENT:
        return ContractCall("storeDocument", (key.entity_id, key.doc_type, payload["cid"]))
    return ContractCall("setCarbonEmission", (key.entity_id, payload["total_emissions"], payload["unit"]))


def classify_chain_error(exc: Exception) -> CoordinatorError:
    """
    Map a web3/requests exception onto the error taxonomy.

    Reverts and insufficient funds are fatal; nonce problems are retried with
    a fresh nonce; connectivity problems are UpstreamUnavailable; anything else
    from the node is a TransientChainError.
    """
    if isinstance(exc, CoordinatorError):
        return exc
    if isinstance(exc, pybreaker.CircuitBreakerError):
        return UpstreamUnavailable(f"RPC circuit open: {exc}")
    if isinstance(exc, ContractLogicError):
        return Reverted(f"Contract reverted: {exc}")

    message = str(exc)
    lowered = message.lower()
    if "insufficient funds" in lowered:
        return InsufficientFunds(message)
    if any(marker in lowered for marker in NONCE_CONFLICT_MARKERS):
        return NonceConflict(message)
    if "execution reverted" in lowered:
        return Reverted(message)
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionError, TimeoutError)):
        return UpstreamUnavailable(f"RPC endpoint unreachable: {message}")
    return TransientChainError(message or type(exc).__name__)


def _is_already_known(exc: Exception) -> bool:
    lowered = str(exc).lower()
    return any(marker in lowered for marker in ALREADY_KNOWN_MARKERS)


class ChainClient:
    """
    Explicitly constructed client for the TradeDocuments contract.

    Lifecycle: build with from_settings() at startup, call connect() to fail
    fast on an unreachable node or mismatched contract, pass the instance to
    every component, close() on shutdown.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        abi: list,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        timeout: int = 10,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        validate_abi(abi)

        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        if not Web3.is_address(contract_address):
            raise ContractConfigError(f"Invalid contract address: {contract_address}")
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=abi)
        self.chain_id = chain_id
        self.breaker = breaker

        self._account = self.w3.eth.account.from_key(private_key) if private_key else None
        self.logger = logger.bind(service="chain_client", contract=self.contract_address)

    @classmethod
    def from_settings(cls, config, breaker: Optional[pybreaker.CircuitBreaker] = None) -> "ChainClient":
        """Build a client from Settings, loading and validating the ABI."""
        abi = load_abi(config.contract_abi_path)
        return cls(
            rpc_url=config.rpc_url,
            contract_address=config.contract_address,
            abi=abi,
            private_key=config.private_key,
            chain_id=config.chain_id,
            timeout=config.rpc_timeout_seconds,
            breaker=breaker,
        )

    def connect(self, verify_code: bool = True) -> None:
        """
        Check node connectivity and that contract code exists at the address.

        Raises:
            UpstreamUnavailable: node not reachable
            ContractConfigError: no code deployed at the configured address
        """
        if not self.w3.is_connected():
            raise UpstreamUnavailable(f"Web3 not connected. Is the node running at {self.rpc_url}?")

        node_chain_id = self.w3.eth.chain_id
        if self.chain_id is not None and node_chain_id != self.chain_id:
            self.logger.warning("chain_id_mismatch", configured=self.chain_id, node=node_chain_id)
            self.chain_id = node_chain_id

        if verify_code:
            code = self.w3.eth.get_code(self.contract_address)
            if not code or len(code) == 0:
                raise ContractConfigError(f"No contract code at {self.contract_address}")

        self.logger.info("chain_connected", chain_id=node_chain_id, signer=self.signer_address)

    def close(self) -> None:
        provider = self.w3.provider
        session = getattr(provider, "_request_session_manager", None)
        cache = getattr(session, "session_cache", None)
        if cache is not None:
            for _, cached in list(cache.items()):
                cached.close()
            cache.clear()
        self.logger.info("chain_client_closed")

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _call(self, func, *args, **kwargs):
        if self.breaker is None:
            return func(*args, **kwargs)
        return self.breaker.call(func, *args, **kwargs)

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    def block_number(self) -> int:
        try:
            return self._call(lambda: self.w3.eth.block_number)
        except Exception as e:
            raise classify_chain_error(e)

    def pending_nonce(self, address: str) -> int:
        """Transaction count including the node's mempool."""
        try:
            return self._call(self.w3.eth.get_transaction_count, address, "pending")
        except Exception as e:
            raise classify_chain_error(e)

    def confirmed_nonce(self, address: str) -> int:
        """Transaction count as of the latest block."""
        try:
            return self._call(self.w3.eth.get_transaction_count, address, "latest")
        except Exception as e:
            raise classify_chain_error(e)

    def network_info(self) -> Dict[str, Any]:
        try:
            return {
                "chain_id": self._call(lambda: self.w3.eth.chain_id),
                "block_number": self.block_number(),
                "contract_address": self.contract_address,
                "signer": self.signer_address,
            }
        except CoordinatorError:
            raise
        except Exception as e:
            raise classify_chain_error(e)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def sign_call(self, call: ContractCall, nonce: int) -> SignedCall:
        """
        Build and sign a contract write locally.

        Gas estimation happens here, so a call that would revert fails before
        anything is broadcast.

        Raises:
            Reverted, InsufficientFunds, TransientChainError, UpstreamUnavailable
        """
        if self._account is None:
            raise ContractConfigError("PRIVATE_KEY not configured - cannot sign transactions")

        try:
            function = getattr(self.contract.functions, call.function)(*call.args)
            tx_params = {"from": self._account.address, "nonce": nonce}
            if self.chain_id is not None:
                tx_params["chainId"] = self.chain_id
            tx = self._call(function.build_transaction, tx_params)
            signed = self._account.sign_transaction(tx)
        except Exception as e:
            raise classify_chain_error(e)

        return SignedCall(
            tx_hash=Web3.to_hex(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            nonce=nonce,
        )

    def broadcast(self, signed: SignedCall) -> str:
        """
        Send a signed transaction.

        A node answering "already known" has the transaction, which counts as
        a successful broadcast.
        """
        try:
            tx_hash = self._call(self.w3.eth.send_raw_transaction, signed.raw_transaction)
            return Web3.to_hex(tx_hash)
        except Exception as e:
            if _is_already_known(e):
                self.logger.info("broadcast_already_known", tx_hash=signed.tx_hash)
                return signed.tx_hash
            raise classify_chain_error(e)

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self._call(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_chain_error(e)

        if receipt is None or receipt.get("blockNumber") is None:
            return None
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            status=int(receipt.get("status", 1)),
        )

    def transaction_known(self, tx_hash: str) -> bool:
        """Whether the node has the transaction (mempool or mined)."""
        try:
            self._call(self.w3.eth.get_transaction, tx_hash)
            return True
        except TransactionNotFound:
            return False
        except Exception as e:
            raise classify_chain_error(e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_document(self, product_id: int, doc_type: int, block: Optional[int] = None) -> Dict[str, Any]:
        try:
            cid, uploaded_by, timestamp = self._call(
                self.contract.functions.getDocument(product_id, doc_type).call,
                block_identifier=block if block is not None else "latest"
            )
        except ContractLogicError as e:
            raise RecordNotFound(f"Document not found for product {product_id}, type {doc_type}: {e}")
        except Exception as e:
            raise classify_chain_error(e)

        if not cid:
            raise RecordNotFound(f"Document not found for product {product_id}, type {doc_type}")
        return {"cid": cid, "uploaded_by": uploaded_by, "timestamp": int(timestamp)}

    def read_carbon_emission(self, product_id: int, block: Optional[int] = None) -> Dict[str, Any]:
        try:
            total, unit, reported_by, timestamp = self._call(
                self.contract.functions.getCarbonEmission(product_id).call,
                block_identifier=block if block is not None else "latest"
            )
        except ContractLogicError as e:
            raise RecordNotFound(f"Carbon emission not set for product {product_id}: {e}")
        except Exception as e:
            raise classify_chain_error(e)

        if int(total) == 0 and reported_by == ZERO_ADDRESS:
            raise RecordNotFound(f"Carbon emission not set for product {product_id}")
        return {
            "total_emissions": int(total),
            "unit": unit,
            "reported_by": reported_by,
            "timestamp": int(timestamp),
        }

    def read_value(self, key: LogicalKey, block: Optional[int] = None) -> Dict[str, Any]:
        """Read the current value of a logical key at `block`."""
        if key.record_type == RecordType.DOCUMENT:
            return self.read_document(key.entity_id, key.doc_type, block)
        return self.read_carbon_emission(key.entity_id, block)

    def is_product_complete(self, product_id: int) -> bool:
        try:
            return bool(self._call(self.contract.functions.isProductComplete(product_id).call))
        except ContractLogicError as e:
            raise RecordNotFound(f"Product {product_id} not found: {e}")
        except Exception as e:
            raise classify_chain_error(e)
