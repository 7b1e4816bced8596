import httpx
import logging
from typing import Any, Dict, Optional

from fieldsync.connectors.base import (
    BaseSyncConnector,
    PullPage,
    RejectedRequestError,
    TransientConnectorError,
)
from fieldsync.schemas.sync import SyncEntityConfig

log = logging.getLogger(__name__)


class HttpSyncConnector(BaseSyncConnector):
    """
    Connector for the field-service REST API.
    Pulls paginated entity snapshots and pushes mutation batches.

    Error mapping:
    - network errors, timeouts, 429 and 5xx raise TransientConnectorError
    - other 4xx raise RejectedRequestError (a ValueError) with a readable message
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = self.config["base_url"].strip().rstrip("/")
        self.api_token = self.config.get("api_token", "")
        self.push_timeout = float(self.config.get("push_timeout", 60.0))

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            follow_redirects=True,
            timeout=float(self.config.get("timeout", 45.0)),
        )
        self.headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        technician_id = self.config.get("technician_id")
        if technician_id:
            self.headers["X-Technician-Id"] = str(technician_id)

        log.info(f"Sync connector initialized with base URL: {self.base_url}")

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Helper to make authenticated requests to the API.
        Handles errors with informative messages.
        """
        if not path.startswith("/"):
            path = f"/{path}"

        try:
            log.trace(f"API {method} {self.base_url}{path}")
            response = await self.client.request(method, path, headers=self.headers, **kwargs)
            log.trace(f"API response: {response.status_code}")
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            url = str(e.request.url)
            response_text = e.response.text

            log.error(f"API raw response body: {response_text}")

            if status == 429 or status >= 500:
                error_msg = f"API temporarily unavailable (HTTP {status}) for {url}"
                log.warning(error_msg)
                raise TransientConnectorError(error_msg) from e

            elif status == 401:
                error_msg = f"API authentication failed: invalid or expired token for {url}"
            elif status == 403:
                error_msg = f"API permission denied for {url}"
            elif status == 404:
                error_msg = f"API resource not found: {url}"
            elif status in (400, 409, 422):
                error_msg = f"API rejected request to {url}: {response_text}"
            else:
                error_msg = f"API HTTP {status} error for {url}: {response_text}"
            log.error(error_msg)
            raise RejectedRequestError(error_msg, status_code=status) from e

        except httpx.TimeoutException as e:
            error_msg = f"API request timed out: {method} {path}"
            log.warning(error_msg)
            raise TransientConnectorError(error_msg) from e

        except httpx.RequestError as e:
            error_msg = f"API network error for {method} {path}: {e}"
            log.warning(error_msg)
            raise TransientConnectorError(error_msg) from e

    async def fetch_page(
        self,
        entity: SyncEntityConfig,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> PullPage:
        params: Dict[str, Any] = {
            "limit": limit or entity.batch_size,
            "scope": entity.scope,
        }
        if cursor:
            params["cursor"] = cursor
        if since:
            params["since"] = since

        body = await self._request("GET", entity.api_endpoint, params=params)
        page = PullPage.from_response(body)
        log.debug(f"Fetched {len(page.items)} {entity.name} (hasMore={page.has_more}, total={page.total})")
        return page

    async def fetch_record(self, entity: SyncEntityConfig, entity_id: str) -> Optional[Dict[str, Any]]:
        try:
            body = await self._request("GET", f"{entity.api_endpoint.rstrip('/')}/{entity_id}")
        except RejectedRequestError as e:
            if e.status_code == 404:
                log.info(f"{entity.name} {entity_id} no longer exists on the server")
                return None
            raise
        # Single-record endpoints answer either with the row or with {"item": row}
        return body.get("item", body) if isinstance(body, dict) else None

    async def push_mutations(self, entity: SyncEntityConfig, payload: Dict[str, Any]) -> Dict[str, Any]:
        count = len(payload.get("mutations", []))
        log.debug(f"Pushing {count} {entity.name} mutations to {entity.api_mutation_endpoint}")
        return await self._request(
            "POST",
            entity.api_mutation_endpoint,
            json=payload,
            timeout=self.push_timeout,
        )

    async def validate_connection(self) -> bool:
        try:
            await self._request("GET", self.config.get("health_path", "/health"))
            return True
        except Exception as e:
            log.error(f"API connection validation failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
