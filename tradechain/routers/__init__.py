"""
API routers package
"""

from tradechain.routers.submissions import router as submissions_router
from tradechain.routers.records import router as records_router
from tradechain.routers.ipfs import router as ipfs_router
from tradechain.routers.health import router as health_router
