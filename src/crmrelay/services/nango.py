import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

import httpx

from ..errors import BackendError

logger = logging.getLogger(__name__)

ACTION_NAMES = {
    "create": "salesforce-create-entity",
    "update": "salesforce-update-entity",
    "fetch": "salesforce-fetch-entity",
}


class ActionBackend(ABC):
    """The integration backend that performs entity create/update/fetch operations."""

    @abstractmethod
    async def execute(
        self,
        operation: str,
        entity_type: str,
        identifier_or_fields: str | Dict[str, Any],
        fields: Dict[str, Any] | List[str] | None = None,
    ) -> Any:
        """Run one operation and return its JSON result; raise on failure."""

    async def close(self) -> None:
        return None


def build_action_payload(
    operation: str,
    entity_type: str,
    identifier_or_fields: str | Dict[str, Any],
    fields: Dict[str, Any] | List[str] | None = None,
) -> Tuple[str, Dict[str, Any]]:
    """Map an operation to its Nango action name and input payload.

    Raises:
        BackendError: If the operation is unsupported or the arguments have the
            wrong shape for it.
    """
    action_name = ACTION_NAMES.get(operation)
    if action_name is None:
        raise BackendError(f"Unsupported operation: {operation}")

    payload: Dict[str, Any] = {"operation": operation, "entityType": entity_type}
    if operation == "create":
        if not isinstance(identifier_or_fields, dict):
            raise BackendError("Fields must be provided as an object for create operation.")
        payload["fields"] = identifier_or_fields
    elif operation == "update":
        if not isinstance(identifier_or_fields, str) or not isinstance(fields, dict):
            raise BackendError(
                "Identifier must be a string and fields must be an object for update operation."
            )
        payload["identifier"] = identifier_or_fields
        payload["fields"] = fields
    else:
        if not isinstance(identifier_or_fields, str):
            raise BackendError("Identifier must be a string for fetch operation.")
        payload["identifier"] = identifier_or_fields
        payload["fields"] = list(fields) if isinstance(fields, list) else []
    return action_name, payload


class NangoActionBackend(ActionBackend):
    """Triggers Salesforce actions through the Nango action API."""

    def __init__(
        self,
        secret_key: str,
        connection_id: str,
        provider_config_key: str = "salesforce-2",
        base_url: str = "https://api.nango.dev",
        timeout: float | None = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._connection_id = connection_id
        self._provider_config_key = provider_config_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Any) -> "NangoActionBackend":
        return cls(
            secret_key=settings.nango_secret_key or "",
            connection_id=settings.nango_connection_id or "",
            provider_config_key=settings.nango_provider_config_key,
            base_url=settings.nango_base_url,
            timeout=settings.tool_timeout_seconds,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Connection-Id": self._connection_id,
            "Provider-Config-Key": self._provider_config_key,
            "Content-Type": "application/json",
        }

    async def execute(
        self,
        operation: str,
        entity_type: str,
        identifier_or_fields: str | Dict[str, Any],
        fields: Dict[str, Any] | List[str] | None = None,
    ) -> Any:
        action_name, payload = build_action_payload(
            operation, entity_type, identifier_or_fields, fields
        )
        logger.info(
            "Triggering Salesforce action via Nango action=%s connection_id=%s",
            action_name,
            self._connection_id,
        )
        logger.debug("Nango payload for %s: %s", action_name, payload)

        client = await self._ensure_client()
        try:
            response = await client.post(
                f"{self._base_url}/action/trigger",
                json={"action_name": action_name, "input": payload},
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            logger.error("Nango action %s timed out: %s", action_name, e)
            raise BackendError(f"Nango action {action_name} timed out") from e
        except httpx.HTTPError as e:
            logger.error("Nango action %s failed: %s", action_name, e)
            raise BackendError(f"Nango action {action_name} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "Nango action %s rejected status=%s body=%s",
                action_name,
                response.status_code,
                response.text[:200],
            )
            raise BackendError(
                f"Nango action {action_name} failed with status {response.status_code}: "
                f"{response.text[:200]}"
            )

        logger.info("Salesforce action %s triggered successfully", action_name)
        try:
            return response.json()
        except ValueError:
            return response.text
