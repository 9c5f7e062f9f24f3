"""Elasticsearch document store clients."""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .config import StoreConfig
from .exceptions import ConflictError, NetworkError, StoreError, ValidationError
from .models import LockDocument, UpsertOutcome, UpsertResult
from .protocol import INDEX_MAPPING, LeaseScript, release_query
from .store import AsyncDocumentStore, DocumentStore

logger = logging.getLogger(__name__)


def _doc_path(index: str, action: str, lock_id: str) -> str:
    if not lock_id:
        raise ValidationError("Lock id must not be empty")
    return f"/{index}/{action}/{quote(lock_id, safe='')}"


def _client_options(config: StoreConfig) -> Dict[str, Any]:
    return {
        "base_url": config.base_url.rstrip("/"),
        "headers": config.headers(),
        "auth": config.auth(),
        "timeout": config.timeout.total_seconds(),
        "verify": config.verify,
    }


def _error_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_message(response: httpx.Response) -> str:
    data = _error_body(response)
    error = data.get("error") if data is not None else None
    if isinstance(error, dict):
        return f"{error.get('type', 'error')}: {error.get('reason', '')}"
    if isinstance(error, str) and error:
        return error
    return f"HTTP {response.status_code}: {response.text}"


def _error_type(response: httpx.Response) -> Optional[str]:
    data = _error_body(response)
    error = data.get("error") if data is not None else None
    return error.get("type") if isinstance(error, dict) else None


def _handle_response(response: httpx.Response) -> Dict[str, Any]:
    """Handle HTTP response and raise appropriate exceptions."""
    if response.status_code == 409:
        raise ConflictError(_error_message(response), status_code=409)
    if response.status_code >= 400:
        raise StoreError(_error_message(response), status_code=response.status_code)
    try:
        data = response.json() if response.content else {}
    except ValueError as e:
        raise StoreError(f"Failed to parse response: {e}", status_code=response.status_code)
    if not isinstance(data, dict):
        raise StoreError(f"Unexpected response body: {response.text}", status_code=response.status_code)
    return data


def _update_body(script: LeaseScript) -> Dict[str, Any]:
    return {
        "scripted_upsert": True,
        "script": {"lang": "painless", "source": script.source, "params": script.params()},
        "upsert": script.upsert_document().to_source(),
    }


def _read_document(source: Dict[str, Any]) -> LockDocument:
    try:
        return LockDocument.from_source(source)
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise StoreError(f"Malformed lock document {source!r}: {e}") from e


def _upsert_outcome(data: Dict[str, Any]) -> UpsertOutcome:
    try:
        result = UpsertResult(data["result"])
        source = (data.get("get") or {}).get("_source")
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise StoreError(f"Malformed update response {data!r}: {e}") from e
    return UpsertOutcome(result=result, document=_read_document(source) if source else None)


class ElasticsearchStore(DocumentStore):
    """Lock index backed by the Elasticsearch REST API."""

    def __init__(self, config: Optional[StoreConfig] = None, client: Optional[httpx.Client] = None):
        """Initialize the store.

        Args:
            config: Connection settings; defaults to a local cluster
            client: Preconfigured httpx client, used instead of building one
        """
        self.config = config or StoreConfig()
        self.index = self.config.index
        self.client = client or httpx.Client(**_client_options(self.config))

    @property
    def _refresh(self) -> str:
        return "true" if self.config.refresh else "false"

    def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome:
        """Create, renew or take over the lock document in one scripted update."""
        try:
            response = self.client.post(
                _doc_path(self.index, "_update", lock_id),
                params={"refresh": self._refresh, "_source": "true"},
                json=_update_body(script),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error updating lock {lock_id!r}: {e}")
        outcome = _upsert_outcome(_handle_response(response))
        logger.debug("Upsert of lock %r by %s: %s", lock_id, script.owner, outcome.result.value)
        return outcome

    def conditional_delete(self, lock_id: str, owner: str) -> int:
        """Delete the lock document if `owner` still holds it."""
        try:
            response = self.client.post(
                f"/{self.index}/_delete_by_query",
                params={"conflicts": "proceed", "refresh": self._refresh},
                json=release_query(lock_id, owner),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error releasing lock {lock_id!r}: {e}")
        if response.status_code == 404:
            return 0
        deleted = _handle_response(response).get("deleted", 0)
        logger.debug("Delete of lock %r for %s removed %d document(s)", lock_id, owner, deleted)
        return deleted

    def get(self, lock_id: str) -> Optional[LockDocument]:
        """Fetch the current lease, or None if the lock is free."""
        try:
            response = self.client.get(_doc_path(self.index, "_doc", lock_id))
        except httpx.RequestError as e:
            raise NetworkError(f"Network error reading lock {lock_id!r}: {e}")
        if response.status_code == 404:
            return None
        data = _handle_response(response)
        if not data.get("found"):
            return None
        return _read_document(data.get("_source"))

    def ensure_index(self) -> None:
        """Create the lock index with a keyword owner field if it is missing."""
        try:
            response = self.client.put(f"/{self.index}", json=INDEX_MAPPING)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error creating index {self.index!r}: {e}")
        if response.status_code == 400 and _error_type(response) == "resource_already_exists_exception":
            return
        _handle_response(response)
        logger.info("Created lock index %r", self.index)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()


class AsyncElasticsearchStore(AsyncDocumentStore):
    """Async lock index backed by the Elasticsearch REST API."""

    def __init__(self, config: Optional[StoreConfig] = None, client: Optional[httpx.AsyncClient] = None):
        """Initialize the async store.

        Args:
            config: Connection settings; defaults to a local cluster
            client: Preconfigured httpx async client, used instead of building one
        """
        self.config = config or StoreConfig()
        self.index = self.config.index
        self.client = client or httpx.AsyncClient(**_client_options(self.config))

    @property
    def _refresh(self) -> str:
        return "true" if self.config.refresh else "false"

    async def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome:
        """Create, renew or take over the lock document in one scripted update."""
        try:
            response = await self.client.post(
                _doc_path(self.index, "_update", lock_id),
                params={"refresh": self._refresh, "_source": "true"},
                json=_update_body(script),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error updating lock {lock_id!r}: {e}")
        outcome = _upsert_outcome(_handle_response(response))
        logger.debug("Upsert of lock %r by %s: %s", lock_id, script.owner, outcome.result.value)
        return outcome

    async def conditional_delete(self, lock_id: str, owner: str) -> int:
        """Delete the lock document if `owner` still holds it."""
        try:
            response = await self.client.post(
                f"/{self.index}/_delete_by_query",
                params={"conflicts": "proceed", "refresh": self._refresh},
                json=release_query(lock_id, owner),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error releasing lock {lock_id!r}: {e}")
        if response.status_code == 404:
            return 0
        deleted = _handle_response(response).get("deleted", 0)
        logger.debug("Delete of lock %r for %s removed %d document(s)", lock_id, owner, deleted)
        return deleted

    async def get(self, lock_id: str) -> Optional[LockDocument]:
        """Fetch the current lease, or None if the lock is free."""
        try:
            response = await self.client.get(_doc_path(self.index, "_doc", lock_id))
        except httpx.RequestError as e:
            raise NetworkError(f"Network error reading lock {lock_id!r}: {e}")
        if response.status_code == 404:
            return None
        data = _handle_response(response)
        if not data.get("found"):
            return None
        return _read_document(data.get("_source"))

    async def ensure_index(self) -> None:
        """Create the lock index with a keyword owner field if it is missing."""
        try:
            response = await self.client.put(f"/{self.index}", json=INDEX_MAPPING)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error creating index {self.index!r}: {e}")
        if response.status_code == 400 and _error_type(response) == "resource_already_exists_exception":
            return
        _handle_response(response)
        logger.info("Created lock index %r", self.index)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
