"""
Pinning Client
httpx client for a Pinata-compatible pinning API and its IPFS gateway
"""

import json
from typing import Any, Dict, Optional

import httpx
import pybreaker
import structlog

from tradechain.services.errors import (
    InvalidPayload,
    RecordNotFound,
    UpstreamUnavailable,
)
from tradechain.services.validation import validate_cid

logger = structlog.get_logger(__name__)


class PinningClient:
    """
    Uploads, pins and fetches content-addressed files.

    Uploads authenticate with the JWT bearer token; pin-by-hash and unpin use
    the API key/secret header pair. Network failures and 5xx responses are
    reported as UpstreamUnavailable, and all calls share one circuit breaker.
    """

    def __init__(
        self,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud/ipfs",
        jwt: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 10.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_base = gateway_url.rstrip("/")
        self.jwt = jwt
        self.api_key = api_key
        self.api_secret = api_secret
        self.breaker = breaker
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self.logger = logger.bind(service="pinning_client")

    @classmethod
    def from_settings(cls, config, breaker: Optional[pybreaker.CircuitBreaker] = None) -> "PinningClient":
        return cls(
            api_url=config.pinata_api_url,
            gateway_url=config.pinata_gateway_url,
            jwt=config.pinata_jwt,
            api_key=config.pinata_api_key,
            api_secret=config.pinata_api_secret,
            timeout=config.pinning_timeout_seconds,
            breaker=breaker,
        )

    def close(self) -> None:
        self._client.close()

    def gateway_url(self, cid: str) -> str:
        validate_cid(cid)
        return f"{self.gateway_base}/{cid}"

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def pin_file(self, content: bytes, filename: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Upload a file and pin it.

        Returns:
            CID of the pinned content
        """
        if not content:
            raise InvalidPayload("No file provided")

        pinata_metadata = {"name": filename}
        if metadata:
            pinata_metadata["keyvalues"] = metadata

        response = self._request(
            "POST",
            f"{self.api_url}/pinning/pinFileToIPFS",
            headers=self._jwt_headers(),
            files={"file": (filename, content)},
            data={"pinataMetadata": json.dumps(pinata_metadata)},
        )
        cid = self._extract_cid(response)
        self.logger.info("file_pinned", cid=cid, filename=filename, size=len(content))
        return cid

    def pin_json(self, content: Any, name: str = "data.json") -> str:
        """Upload a JSON document and pin it."""
        if content is None:
            raise InvalidPayload("No JSON data provided")

        response = self._request(
            "POST",
            f"{self.api_url}/pinning/pinJSONToIPFS",
            headers=self._jwt_headers(),
            json={"pinataContent": content, "pinataMetadata": {"name": name}},
        )
        cid = self._extract_cid(response)
        self.logger.info("json_pinned", cid=cid, name=name)
        return cid

    # ------------------------------------------------------------------
    # Pin management
    # ------------------------------------------------------------------

    def pin(self, ipfs_hash: str) -> None:
        """Pin existing content by hash."""
        validate_cid(ipfs_hash)
        self._request(
            "POST",
            f"{self.api_url}/pinning/pinByHash",
            headers=self._key_headers(),
            json={"hashToPin": ipfs_hash},
        )
        self.logger.info("hash_pinned", cid=ipfs_hash)

    def unpin(self, ipfs_hash: str) -> None:
        validate_cid(ipfs_hash)
        self._request(
            "DELETE",
            f"{self.api_url}/pinning/unpin/{ipfs_hash}",
            headers=self._key_headers(),
        )
        self.logger.info("hash_unpinned", cid=ipfs_hash)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def fetch(self, cid: str) -> bytes:
        """Fetch raw content through the gateway."""
        response = self._request("GET", self.gateway_url(cid), not_found_message=f"Content not found for CID {cid}")
        return response.content

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _jwt_headers(self) -> Dict[str, str]:
        if not self.jwt:
            raise UpstreamUnavailable("Pinning service not configured: PINATA_JWT missing")
        return {"Authorization": f"Bearer {self.jwt}"}

    def _key_headers(self) -> Dict[str, str]:
        if not self.api_key or not self.api_secret:
            raise UpstreamUnavailable("Pinning service not configured: PINATA_API_KEY/PINATA_API_SECRET missing")
        return {"pinata_api_key": self.api_key, "pinata_secret_api_key": self.api_secret}

    def _extract_cid(self, response: httpx.Response) -> str:
        try:
            cid = response.json().get("IpfsHash")
        except ValueError:
            cid = None
        if not cid:
            raise UpstreamUnavailable("Pinning service response did not include IpfsHash")
        return cid

    def _request(self, method: str, url: str, not_found_message: Optional[str] = None, **kwargs) -> httpx.Response:
        if self.breaker is None:
            return self._send(method, url, not_found_message, **kwargs)
        try:
            return self.breaker.call(self._send, method, url, not_found_message, **kwargs)
        except pybreaker.CircuitBreakerError as e:
            raise UpstreamUnavailable(f"Pinning circuit open: {e}")

    def _send(self, method: str, url: str, not_found_message: Optional[str], **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Pinning service timed out: {e}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Pinning service unreachable: {e}")

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"Pinning service error: HTTP {response.status_code}")
        if response.status_code == 404 and not_found_message:
            raise RecordNotFound(not_found_message)
        if response.status_code in (401, 403):
            raise UpstreamUnavailable(f"Pinning service rejected credentials: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise InvalidPayload(f"Pinning service rejected request: HTTP {response.status_code} {response.text[:200]}")
        return response
