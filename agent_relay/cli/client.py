"""HTTP client for the relay API."""

import logging
import os
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8420"
API_TIMEOUT = 5  # seconds


class RelayClient:
    """Client for the relay API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: $RELAY_API_URL or http://127.0.0.1:8420)
        """
        self.api_url = (api_url or os.environ.get("RELAY_API_URL", DEFAULT_API_URL)).rstrip("/")

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (relay not running)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        try:
            response = httpx.request(method, url, json=data, params=params, timeout=request_timeout)
        except httpx.RequestError as e:
            logger.debug(f"{method} {url} failed: {e}")
            return None, False, True

        if response.status_code in (200, 201):
            try:
                return response.json(), True, False
            except ValueError:
                return None, True, False
        logger.debug(f"{method} {url} returned {response.status_code}: {response.text[:200]}")
        return None, False, False

    def health(self) -> Optional[dict]:
        data, success, _ = self._request("GET", "/health")
        return data if success else None

    def list_channels(self) -> Optional[list]:
        """List all channels."""
        data, success, _ = self._request("GET", "/channels")
        if success and data:
            return data.get("channels", [])
        return None

    def get_channel(self, channel_id: str) -> Optional[dict]:
        data, success, _ = self._request("GET", f"/channels/{channel_id}")
        return data if success else None

    def send_input(
        self,
        channel_id: str,
        text: str,
        user_id: Optional[str] = None,
        credential_alias: Optional[str] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        payload = {"text": text}
        if user_id:
            payload["user_id"] = user_id
        if credential_alias:
            payload["credential_alias"] = credential_alias
        # Spawning a process includes a warm-up delay
        return self._request("POST", f"/channels/{channel_id}/input", payload, timeout=30)

    def reset(self, channel_id: str) -> tuple[bool, bool]:
        _, success, unavailable = self._request("POST", f"/channels/{channel_id}/reset")
        return success, unavailable

    def interrupt(self, channel_id: str) -> tuple[bool, bool]:
        _, success, unavailable = self._request("POST", f"/channels/{channel_id}/interrupt")
        return success, unavailable

    def get_output(self, channel_id: str, lines: int = 30) -> Optional[str]:
        data, success, _ = self._request("GET", f"/channels/{channel_id}/output", params={"lines": lines})
        return data.get("output") if success and data else None

    def send_approval_response(
        self,
        request_id: str,
        decision: str,
        retries: int = 1,
        retry_delay: float = 0.5,
    ) -> tuple[bool, bool]:
        """
        Deliver an approval decision, retrying connection failures.

        Returns:
            (success, unavailable)
        """
        payload = {"requestId": request_id, "response": decision}
        attempt = 0
        while True:
            _, success, unavailable = self._request("POST", "/approval-response", payload)
            if success or not unavailable or attempt >= retries:
                return success, unavailable
            attempt += 1
            logger.warning(f"Approval response for {request_id} failed, retrying in {retry_delay}s")
            time.sleep(retry_delay)
