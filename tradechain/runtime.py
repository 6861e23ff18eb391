"""
Runtime
Explicitly constructed collaborators shared by the API process and the workers
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy.orm import sessionmaker
from web3.exceptions import ContractLogicError, TransactionNotFound

from tradechain.config import Settings
from tradechain.database import init_db
from tradechain.services.chain_client import ChainClient
from tradechain.services.chain_watcher import ChainWatcher
from tradechain.services.dispatcher import DramatiqDispatcher
from tradechain.services.errors import InvalidPayload, RecordNotFound, UpstreamUnavailable
from tradechain.services.fingerprint_store import FingerprintStore
from tradechain.services.monitoring.circuit_breakers import get_breaker
from tradechain.services.nonce_manager import NonceManager
from tradechain.services.pinning_client import PinningClient
from tradechain.services.read_cache import ReadRepairCache
from tradechain.services.reconciliation import ReconciliationService
from tradechain.services.submission_queue import SubmissionQueue

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    session_factory: sessionmaker
    chain: ChainClient
    pinning: PinningClient
    dispatcher: object
    store: FingerprintStore
    nonce_manager: NonceManager
    queue: SubmissionQueue
    cache: ReadRepairCache
    watcher: ChainWatcher
    reconciliation: ReconciliationService

    def close(self) -> None:
        """Release network clients and database connections."""
        self.pinning.close()
        self.chain.close()
        self.session_factory.kw["bind"].dispose()
        logger.info("runtime_closed")


def build_runtime(
    config: Settings,
    session_factory: Optional[sessionmaker] = None,
    chain: Optional[ChainClient] = None,
    pinning: Optional[PinningClient] = None,
    dispatcher=None,
    connect: bool = True,
) -> Runtime:
    """
    Construct every collaborator from settings.

    Anything passed in is used as-is (tests inject SQLite factories, a fake
    chain, a mock-transport pinning client and a recording dispatcher).

    Raises:
        RuntimeError: no database configured
        ContractConfigError: ABI or contract address do not match
        UpstreamUnavailable: RPC node unreachable at startup
    """
    if session_factory is None:
        session_factory = init_db(config.database_url)
        if session_factory is None:
            raise RuntimeError("DATABASE_URL is required")

    if chain is None:
        chain = ChainClient.from_settings(
            config,
            breaker=get_breaker("rpc", exclude=[ContractLogicError, TransactionNotFound]),
        )
        if connect:
            chain.connect(verify_code=config.verify_contract_code)

    if pinning is None:
        pinning = PinningClient.from_settings(
            config,
            breaker=get_breaker("pinning", exclude=[RecordNotFound, InvalidPayload]),
        )

    if dispatcher is None:
        dispatcher = DramatiqDispatcher()

    store = FingerprintStore(session_factory)
    nonce_manager = NonceManager(session_factory, chain.pending_nonce)
    queue = SubmissionQueue(store, dispatcher, nonce_manager)
    cache = ReadRepairCache(
        session_factory,
        chain,
        store,
        confirmation_depth=config.confirmation_depth,
        ttl_seconds=config.cache_ttl_seconds,
    )
    watcher = ChainWatcher.from_settings(config, store, chain, nonce_manager, cache)
    reconciliation = ReconciliationService(
        session_factory,
        store,
        watcher,
        cache,
        dispatcher,
        stale_dispatch_seconds=config.stale_dispatch_seconds,
        idempotency_ttl_hours=config.idempotency_ttl_hours,
    )

    logger.info("runtime_built", contract=chain.contract_address, signer=chain.signer_address)
    return Runtime(
        settings=config,
        session_factory=session_factory,
        chain=chain,
        pinning=pinning,
        dispatcher=dispatcher,
        store=store,
        nonce_manager=nonce_manager,
        queue=queue,
        cache=cache,
        watcher=watcher,
        reconciliation=reconciliation,
    )


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the Runtime created in the app lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise UpstreamUnavailable("Service not initialized")
    return runtime
