"""
Dramatiq broker and Chain Watcher actors.

REDIS_URL selects a RedisBroker; without it a StubBroker is used (tests,
single-process development with INLINE_WORKER). Messages carry only a
request id, so the broker holds no submission state of its own.

Actors do not build their own collaborators: the process that runs them
(tradechain.worker, or the API with INLINE_WORKER) installs a Runtime with
configure_runtime() before any message is processed.
"""

import threading
from typing import Optional

import dramatiq
import structlog
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker

from tradechain.config import settings

logger = structlog.get_logger()

# Failed messages stay inspectable in Redis for a week
DEAD_MESSAGE_TTL_MS = 7 * 24 * 60 * 60 * 1000

_runtime = None
_runtime_lock = threading.Lock()


def setup_broker(redis_url: Optional[str] = None) -> dramatiq.Broker:
    """Create the broker for this process and make it the global Dramatiq broker."""
    if redis_url:
        broker = RedisBroker(
            url=redis_url,
            namespace="tradechain",
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            heartbeat_timeout=30000,
            dead_message_ttl=DEAD_MESSAGE_TTL_MS
        )
    else:
        broker = StubBroker()

    dramatiq.set_broker(broker)
    logger.info("broker_configured", type=type(broker).__name__)
    return broker


def configure_runtime(runtime) -> None:
    """Install the Runtime used by every actor in this process."""
    global _runtime
    with _runtime_lock:
        _runtime = runtime
    logger.info("actor_runtime_configured")


def current_runtime():
    """
    Return the installed Runtime.

    Raises:
        RuntimeError: no Runtime was installed in this process
    """
    if _runtime is None:
        raise RuntimeError("Actor runtime not configured - call configure_runtime() at worker boot")
    return _runtime


def clear_runtime(runtime: Optional[object] = None) -> None:
    """Remove the installed Runtime (only if it is `runtime`, when given)."""
    global _runtime
    with _runtime_lock:
        if runtime is None or _runtime is runtime:
            _runtime = None


def start_inline_worker(worker_threads: int = 4):
    """
    Run a Dramatiq Worker inside the current process (development).

    Returns:
        The started dramatiq.Worker; call stop() on shutdown
    """
    from dramatiq import Worker

    worker = Worker(broker, worker_threads=worker_threads)
    worker.start()
    logger.info("inline_worker_started", threads=worker_threads, broker=type(broker).__name__)
    return worker


# Initialize broker at module level
broker = setup_broker(settings.redis_url)

# Actor imports (registered with broker on import)
from tradechain.actors import chain_watcher  # noqa: F401, E402

# Export specific actors for convenience
from tradechain.actors.chain_watcher import process_submission, watch_confirmation  # noqa: F401, E402
