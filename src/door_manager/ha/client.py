"""Home Assistant API client for programming the door keypad."""

import logging
from typing import Any, Optional

import httpx

from door_manager.config import CLEAR_CODE_SCRIPT, SET_CODE_SCRIPT
from door_manager.core.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


class HomeAssistantClient:
    """Client for the Home Assistant scripts that set and clear keypad codes.

    Each call is a single blocking round-trip with no retry. A call that
    returns normally means the lock ended in the requested state.
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            url: Home Assistant API base URL (e.g., "http://supervisor/core/api")
            token: Long-lived access token
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run_script(self, script: str, data: dict[str, Any]) -> dict[str, Any]:
        """Run a Home Assistant script.

        Args:
            script: Script name (e.g., "set_user_code")
            data: Script variables

        Returns:
            Response data

        Raises:
            GatewayTimeoutError: If the call did not complete within the timeout
            GatewayError: If the call failed for any other reason
        """
        client = await self._get_client()
        try:
            response = await client.post(f"{self.url}/script/{script}", json=data)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Lock gateway timed out running {script}") from e
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"Lock gateway returned {e.response.status_code} for {script}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Lock gateway unreachable running {script}: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    # Keypad code operations

    async def set_user_code(self, slot: int, code: str) -> None:
        """Set a user code on the door keypad.

        Args:
            slot: Slot number
            code: The code to set
        """
        await self._run_script(
            "set_user_code",
            {"entity_id": SET_CODE_SCRIPT, "slot": slot, "lock_code": code},
        )
        logger.debug("Set code on slot %d", slot)

    async def clear_user_code(self, slot: int) -> None:
        """Clear a user code from the door keypad.

        Args:
            slot: Slot number
        """
        await self._run_script(
            "clear_user_code",
            {"entity_id": CLEAR_CODE_SCRIPT, "slot": slot},
        )
        logger.debug("Cleared code on slot %d", slot)

    async def health_check(self) -> bool:
        """Check if the Home Assistant instance is reachable.

        Returns:
            True if HA is reachable
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.url}/")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
