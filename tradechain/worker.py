"""
Dramatiq Worker Entrypoint

This module serves as the entry point for Dramatiq workers.
It imports the actor modules to register them with the broker and installs
the Runtime (database, chain client, watcher) the actors use.

Usage:
    dramatiq tradechain.worker --processes 2 --threads 4 --verbose

Procfile Configuration:
    worker: dramatiq tradechain.worker --processes 2 --threads 4 --verbose

Process vs Thread Trade-offs:
    - Chain Watcher steps are I/O-bound (RPC calls, DB queries) -> threads work well
    - Every status change is a compare-and-swap, so any number of threads and
      processes may handle the same record concurrently
    - Nonce allocation is shared through the signer_nonces table
"""

import structlog

from tradechain.actors import broker, configure_runtime
from tradechain.config import settings, validate_production_settings
from tradechain.runtime import build_runtime
from tradechain.services.monitoring import init_sentry, setup_logging

setup_logging(settings.log_level)
logger = structlog.get_logger()

validate_production_settings(settings)
init_sentry()

runtime = build_runtime(settings)
configure_runtime(runtime)

# Worker health check log
logger.info("worker_ready", broker=type(broker).__name__, signer=runtime.chain.signer_address)
