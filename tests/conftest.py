"""
Shared fixtures: SQLite session factory, in-memory chain, recording dispatcher
and a pinning client on an httpx mock transport.
"""

import os

# Must be set before tradechain.config is imported
os.environ["ENVIRONMENT"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("DATABASE_URL", None)

import itertools
import json
import threading

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import tradechain.models  # noqa: F401
from tradechain.config import Settings
from tradechain.database import Base
from tradechain.models.write_request import LogicalKey
from tradechain.runtime import build_runtime
from tradechain.services.chain_client import SignedCall, TxReceipt
from tradechain.services.chain_watcher import ChainWatcher
from tradechain.services.errors import RecordNotFound, UpstreamUnavailable
from tradechain.services.fingerprint_store import FingerprintStore
from tradechain.services.nonce_manager import NonceManager
from tradechain.services.pinning_client import PinningClient
from tradechain.services.read_cache import ReadRepairCache
from tradechain.services.submission_queue import SubmissionQueue

SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
PINNED_CID = "QmXoypizjW3WknFiJnKLwHCnL72vedxjQkDDP1mXWo6uco"


class FakeChain:
    """
    In-memory stand-in for ChainClient.

    Transactions are only applied when mine() is called. Values are kept per
    block so reads pinned to an older block see the older value. Errors queued
    in sign_errors / broadcast_errors / receipt_errors are raised once each.
    """

    contract_address = CONTRACT

    def __init__(self, signer=SIGNER, head=100):
        self.signer_address = signer
        self.head = head
        self.confirmed_count = 0
        self.down = False

        self.signed = {}  # tx_hash -> (ContractCall, nonce)
        self.mempool = set()
        self.receipts = {}
        self.history = {}  # slot -> [(block, value)]
        self.broadcasts = []
        self.reads = []

        self.sign_errors = []
        self.broadcast_errors = []
        self.receipt_errors = []
        self.on_sign = None
        self.closed = False

        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    # chain state
    def block_number(self):
        if self.down:
            raise UpstreamUnavailable("RPC endpoint unreachable")
        return self.head

    def pending_nonce(self, address):
        sent = [self.signed[tx][1] for tx in self.mempool]
        return max([self.confirmed_count] + [n + 1 for n in sent])

    def confirmed_nonce(self, address):
        return self.confirmed_count

    def network_info(self):
        if self.down:
            raise UpstreamUnavailable("RPC endpoint unreachable")
        return {
            "chain_id": 31337,
            "block_number": self.head,
            "contract_address": self.contract_address,
            "signer": self.signer_address,
        }

    # writes
    def sign_call(self, call, nonce):
        if self.on_sign is not None:
            self.on_sign()
        if self.sign_errors:
            raise self.sign_errors.pop(0)
        with self._lock:
            tx_hash = "0x%064x" % next(self._counter)
        self.signed[tx_hash] = (call, nonce)
        return SignedCall(tx_hash=tx_hash, raw_transaction=tx_hash.encode(), nonce=nonce)

    def broadcast(self, signed):
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        self.mempool.add(signed.tx_hash)
        self.broadcasts.append(signed)
        return signed.tx_hash

    def get_receipt(self, tx_hash):
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return self.receipts.get(tx_hash)

    def transaction_known(self, tx_hash):
        return tx_hash in self.mempool or tx_hash in self.receipts

    # reads
    def read_value(self, key, block=None):
        block = self.head if block is None else block
        self.reads.append((key.slot, block))
        visible = [value for mined_at, value in self.history.get(key.slot, []) if mined_at <= block]
        if not visible:
            raise RecordNotFound(f"Nothing stored for {key.slot}")
        return visible[-1]

    def is_product_complete(self, product_id):
        return all(
            self.history.get(LogicalKey.document(product_id, doc_type).slot)
            for doc_type in range(4)
        )

    def close(self):
        self.closed = True

    # test helpers
    def advance(self, blocks=1):
        self.head += blocks

    def set_value(self, key, value, block=None):
        self.history.setdefault(key.slot, []).append((self.head if block is None else block, value))

    def mine(self, tx_hash, status=1):
        """Include a broadcast transaction in a new block."""
        call, nonce = self.signed[tx_hash]
        self.head += 1
        self.mempool.discard(tx_hash)
        self.receipts[tx_hash] = TxReceipt(tx_hash=tx_hash, block_number=self.head, status=status)
        self.confirmed_count = max(self.confirmed_count, nonce + 1)
        if status == 1:
            key, value = self._apply(call)
            self.set_value(key, value)
        return self.head

    def _apply(self, call):
        if call.function == "storeDocument":
            product_id, doc_type, cid = call.args
            return LogicalKey.document(product_id, doc_type), {
                "cid": cid,
                "uploaded_by": self.signer_address,
                "timestamp": self.head,
            }
        product_id, total, unit = call.args
        return LogicalKey.carbon_emission(product_id), {
            "total_emissions": total,
            "unit": unit,
            "reported_by": self.signer_address,
            "timestamp": self.head,
        }


class RecordingDispatcher:
    """Dispatcher that records messages instead of sending them."""

    def __init__(self):
        self.submissions = []
        self.confirmations = []

    def dispatch_submission(self, request_id, delay_ms=0):
        self.submissions.append((request_id, delay_ms))

    def dispatch_confirmation_check(self, request_id, delay_ms=0):
        self.confirmations.append((request_id, delay_ms))


def pinning_handler(requests_seen):
    """httpx MockTransport handler emulating the pinning API and gateway."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        path = request.url.path
        if path.endswith("/pinning/pinFileToIPFS") or path.endswith("/pinning/pinJSONToIPFS"):
            return httpx.Response(200, json={"IpfsHash": PINNED_CID, "PinSize": 5})
        if path.endswith("/pinning/pinByHash"):
            return httpx.Response(200, json={"id": "job-1", "ipfsHash": json.loads(request.content)["hashToPin"]})
        if "/pinning/unpin/" in path:
            return httpx.Response(200, text="OK")
        if path.endswith(f"/ipfs/{PINNED_CID}"):
            return httpx.Response(200, content=b"hello tradechain")
        return httpx.Response(404, text="not found")

    return handler


@pytest.fixture
def session_factory():
    """In-memory SQLite database with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store(session_factory):
    return FingerprintStore(session_factory)


@pytest.fixture
def nonce_manager(session_factory, chain):
    return NonceManager(session_factory, chain.pending_nonce)


@pytest.fixture
def cache(session_factory, chain, store):
    return ReadRepairCache(session_factory, chain, store, confirmation_depth=1, ttl_seconds=300)


@pytest.fixture
def queue(store, dispatcher, nonce_manager):
    return SubmissionQueue(store, dispatcher, nonce_manager)


@pytest.fixture
def make_watcher(store, chain, nonce_manager, cache):
    """Build a ChainWatcher with overridable tuning."""

    def build(**overrides):
        options = dict(
            confirmation_depth=1,
            confirmation_timeout_seconds=300,
            poll_interval_ms=3000,
            max_attempts=5,
            min_backoff_ms=1000,
            max_backoff_ms=60000,
        )
        options.update(overrides)
        return ChainWatcher(store, chain, nonce_manager, cache, **options)

    return build


@pytest.fixture
def watcher(make_watcher):
    return make_watcher()


@pytest.fixture
def pinning_requests():
    return []


@pytest.fixture
def pinning_client(pinning_requests):
    client = PinningClient(
        api_url="https://pinning.test",
        gateway_url="https://gateway.test/ipfs",
        jwt="test-jwt",
        api_key="key",
        api_secret="secret",
        transport=httpx.MockTransport(pinning_handler(pinning_requests)),
    )
    yield client
    client.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="testing",
        database_url=None,
        redis_url=None,
        confirmation_depth=1,
        stale_dispatch_seconds=0,
    )


@pytest.fixture
def runtime(test_settings, session_factory, chain, pinning_client, dispatcher):
    """Runtime wired to SQLite, the fake chain and the mock pinning transport."""
    return build_runtime(
        test_settings,
        session_factory=session_factory,
        chain=chain,
        pinning=pinning_client,
        dispatcher=dispatcher,
        connect=False,
    )
