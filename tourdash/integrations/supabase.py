"""
Supabase Client

Async PostgREST client for the hosted relational store plus the edge
function RPCs (project provisioning, chatbot answers).

- Retries 429/5xx and transport errors with exponential backoff
- Circuit breaker fails fast while the backend is down
- Row-level security applies: pass the user's access token to read as them

API: https://supabase.com/docs/guides/api
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from tourdash.integrations.base import Filter, RemoteDataSource, RemoteFetchError

logger = logging.getLogger(__name__)


class SupabaseError(RemoteFetchError):
    """Custom exception for Supabase API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = None,
        response: Any = None,
        table: str = None,
    ):
        super().__init__(message, table=table, status_code=status_code)
        self.response = response


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


@dataclass
class CircuitBreakerState:
    """Circuit breaker state tracking."""
    failures: int = 0
    last_failure: float = 0.0
    is_open: bool = False
    opened_at: float = 0.0


class CircuitBreaker:
    """
    Fails fast after ``threshold`` consecutive failures, then lets a
    request through again once ``timeout`` seconds have passed.
    """

    def __init__(self, threshold: int = 5, timeout: int = 30):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitBreakerState()

    def is_available(self) -> bool:
        if not self.state.is_open:
            return True
        if time.time() - self.state.opened_at >= self.timeout:
            # Half-open: allow requests again
            self.state.is_open = False
            self.state.failures = 0
            logger.info("Circuit breaker closed, allowing requests")
            return True
        return False

    def record_success(self):
        self.state.failures = 0
        self.state.is_open = False

    def record_failure(self):
        self.state.failures += 1
        self.state.last_failure = time.time()
        if self.state.failures >= self.threshold and not self.state.is_open:
            self.state.is_open = True
            self.state.opened_at = time.time()
            logger.warning(
                f"Circuit breaker opened after {self.state.failures} failures. "
                f"Will retry in {self.timeout} seconds."
            )


class SupabaseClient(RemoteDataSource):
    """
    Async client for Supabase PostgREST and edge functions.

    Usage:
        client = SupabaseClient(url, anon_key, access_token=user_jwt)

        rows = await client.query("projects", [Filter.eq("end_client_id", cid)])
        # rows = [{"id": "...", "title": "...", ...}]

        await client.close()
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Supabase client.

        Args:
            url: Project URL (https://<ref>.supabase.co)
            api_key: anon or service-role key
            access_token: User JWT; defaults to the api key
            retry_config: Retry configuration (optional)
            timeout: Request timeout in seconds
            circuit_breaker: Shared breaker (optional)
            transport: Custom httpx transport (tests)
        """
        self.url = url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._closed = False

    # =========================================================================
    # PostgREST
    # =========================================================================

    @staticmethod
    def _filter_params(filters: Optional[Sequence[Filter]]) -> List[Tuple[str, str]]:
        return [(f.column, f.to_param()) for f in filters or []]

    async def query(
        self,
        table: str,
        filters: Optional[Sequence[Filter]] = None,
        select: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Select rows from a table.

        ``select`` may embed related tables, e.g.
        ``"*,end_clients(*,projects(*))"``.
        """
        params = [("select", select)] + self._filter_params(filters)
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        result = await self._request_with_retry("GET", f"/rest/v1/{table}", params=params, table=table)
        return result or []

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        result = await self._request_with_retry(
            "POST",
            f"/rest/v1/{table}",
            payload=rows,
            headers={"Prefer": "return=representation"},
            table=table,
        )
        return result or []

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("update() without filters would touch every row")
        result = await self._request_with_retry(
            "PATCH",
            f"/rest/v1/{table}",
            params=self._filter_params(filters),
            payload=values,
            headers={"Prefer": "return=representation"},
            table=table,
        )
        return result or []

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        if not filters:
            raise ValueError("delete() without filters would remove every row")
        result = await self._request_with_retry(
            "DELETE",
            f"/rest/v1/{table}",
            params=self._filter_params(filters),
            headers={"Prefer": "return=representation"},
            table=table,
        )
        return len(result or [])

    # =========================================================================
    # Edge Functions
    # =========================================================================

    async def invoke_function(self, name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to an edge function and return its JSON body."""
        return await self._request_with_retry(
            "POST", f"/functions/v1/{name}", payload=payload
        ) or {}

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[List[Tuple[str, str]]] = None,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
        table: Optional[str] = None,
    ) -> Any:
        """Make request with retry logic."""
        if self._closed:
            raise SupabaseError("Client has been closed", table=table)
        if not self.circuit_breaker.is_available():
            raise SupabaseError("Circuit breaker is open", status_code=503, table=table)

        config = self.retry_config
        last_exception = None

        for attempt in range(config.max_retries + 1):
            try:
                response = await self._client.request(
                    method,
                    endpoint,
                    params=params,
                    json=payload,
                    headers=headers,
                )

                if response.status_code >= 400:
                    error_data = self._error_body(response)

                    if response.status_code in config.retryable_status_codes:
                        last_exception = SupabaseError(
                            f"API error: {response.status_code}",
                            status_code=response.status_code,
                            response=error_data,
                            table=table,
                        )
                        # Will retry
                    else:
                        raise SupabaseError(
                            f"API error: {error_data.get('message') or error_data.get('error') or response.status_code}",
                            status_code=response.status_code,
                            response=error_data,
                            table=table,
                        )
                else:
                    self.circuit_breaker.record_success()
                    if not response.content:
                        return None
                    return response.json()

            except httpx.TimeoutException as e:
                last_exception = SupabaseError(f"Request timed out: {e}", table=table)
            except httpx.RequestError as e:
                last_exception = SupabaseError(f"Request failed: {e}", table=table)

            # Retry delay
            if attempt < config.max_retries:
                delay = min(
                    config.initial_delay * (config.exponential_base**attempt),
                    config.max_delay,
                )
                logger.warning(
                    f"Supabase {method} {endpoint} failed, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{config.max_retries + 1})"
                )
                await asyncio.sleep(delay)

        self.circuit_breaker.record_failure()
        raise last_exception

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {"message": response.text}
        return body if isinstance(body, dict) else {"message": str(body)}

    async def close(self):
        """Close the HTTP client."""
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


@dataclass
class ProvisionResult:
    """Ids created by the ``provision_project`` edge function."""
    end_client_id: str
    project_id: str
    chatbot_id: str
    portal_url: str
    portal_auth_created: bool = False


class EdgeFunctions:
    """
    Black-box RPCs hosted as edge functions.

    Usage:
        edge = EdgeFunctions(client)
        result = await edge.provision_project({
            "end_client": {"email": "...", "name": "...", "company": "..."},
            "project": {"title": "..."},
            "chatbot": {"name": "..."},
        })
    """

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def _call(self, name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.client.invoke_function(name, payload)
        if not body.get("success", True):
            raise SupabaseError(
                f"{name} failed: {body.get('error', 'unknown error')}",
                response=body,
            )
        return body

    async def provision_project(self, payload: Dict[str, Any]) -> ProvisionResult:
        for section in ("end_client", "project", "chatbot"):
            if section not in payload:
                raise ValueError(f"provision_project payload is missing '{section}'")

        body = await self._call("provision_project", payload)
        logger.info(f"Provisioned project {body.get('project_id')} for client {body.get('end_client_id')}")
        return ProvisionResult(
            end_client_id=body["end_client_id"],
            project_id=body["project_id"],
            chatbot_id=body["chatbot_id"],
            portal_url=body["portal_url"],
            portal_auth_created=bool(body.get("portal_auth_created", False)),
        )

    async def chat_answer(
        self,
        chatbot_id: str,
        message: str,
        session_id: Optional[str] = None,
    ) -> str:
        payload = {"chatbot_id": chatbot_id, "message": message}
        if session_id:
            payload["session_id"] = session_id
        body = await self._call("chat_answer", payload)
        return body.get("answer", "")
