"""
HTTP transport layer for fiscal provider APIs
Handles HTTP communication with circuit breaker, request IDs, audit
logging and connection pooling

The client makes exactly one attempt per call. Retrying is the fiscal
queue's job: a failed call surfaces as a classified ProviderError and the
queue item is rescheduled with backoff.
"""

import time
import uuid
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

import requests
from requests.adapters import HTTPAdapter

from vendhub_fiscal.exceptions import FiscalError, NetworkError, ProviderError
from vendhub_fiscal.utils.audit import AuditLogger, redact_sensitive_data


# Type variable for generic response
T = TypeVar("T")

# Logger for this module
logger = logging.getLogger(__name__)


class HttpMethod(str, Enum):
    """HTTP method types supported"""
    GET = "GET"
    POST = "POST"


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    failure_threshold: int = 5
    recovery_timeout: int = 30000  # milliseconds
    success_threshold: int = 3


@dataclass
class HttpResponse(Generic[T]):
    """HTTP response wrapper"""
    data: T
    status: int
    headers: Dict[str, str]
    duration: int  # milliseconds
    request_id: str


class HttpClient:
    """
    HTTP client for a fiscal provider

    Example:
        >>> client = HttpClient("https://api.multikassa.uz/v1", timeout=30000,
        ...                     auth=("login", "password"))
        >>> response = client.get("/shift/status")
        >>> print(response.data)
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30000,
        auth: Optional[Tuple[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
        audit: Optional[AuditLogger] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Create a new HTTP client instance

        Args:
            base_url: Provider API base URL
            timeout: Default per-call timeout in milliseconds
            auth: Optional basic auth credentials
            headers: Extra default headers
            circuit_breaker_config: Optional circuit breaker configuration
            audit: Optional audit logger for request entries
            session: Pre-built session (default: pooled session)
        """
        self._base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.circuit_config = circuit_breaker_config or CircuitBreakerConfig()
        self._audit = audit

        # Circuit breaker state
        self._circuit_state = CircuitState.CLOSED
        self._circuit_failure_count = 0
        self._circuit_success_count = 0
        self._circuit_open_time = 0.0

        self._session = session or self._create_session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if headers:
            self._session.headers.update(headers)
        if auth:
            self._session.auth = auth

    def _create_session(self) -> requests.Session:
        """Create requests session with connection pooling"""
        session = requests.Session()

        adapter = HTTPAdapter(
            pool_connections=10,
            pool_maxsize=10,
            max_retries=0,
        )

        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def _generate_request_id(self) -> str:
        """Generate unique request ID for traceability"""
        timestamp = hex(int(time.time() * 1000))[2:]
        unique_id = uuid.uuid4().hex[:8]
        return f"fiscal-{timestamp}-{unique_id}"

    def _check_circuit_breaker(self) -> None:
        """Check circuit breaker state and raise if open"""
        if self._circuit_state == CircuitState.OPEN:
            time_since_open = (time.time() * 1000) - self._circuit_open_time

            if time_since_open >= self.circuit_config.recovery_timeout:
                self._circuit_state = CircuitState.HALF_OPEN
                self._circuit_success_count = 0
                logger.info("Circuit breaker transitioning to HALF_OPEN state")
            else:
                retry_after = int(
                    (self.circuit_config.recovery_timeout - time_since_open) / 1000
                )
                raise NetworkError.circuit_breaker_open(retry_after)

    def _record_circuit_success(self) -> None:
        """Record circuit breaker success"""
        if self._circuit_state == CircuitState.HALF_OPEN:
            self._circuit_success_count += 1

            if self._circuit_success_count >= self.circuit_config.success_threshold:
                self._circuit_state = CircuitState.CLOSED
                self._circuit_failure_count = 0
                self._circuit_success_count = 0
                logger.info("Circuit breaker CLOSED after successful recovery")
        elif self._circuit_state == CircuitState.CLOSED:
            self._circuit_failure_count = 0

    def _record_circuit_failure(self) -> None:
        """Record circuit breaker failure"""
        if self._circuit_state == CircuitState.HALF_OPEN:
            self._circuit_state = CircuitState.OPEN
            self._circuit_open_time = time.time() * 1000
            logger.warning("Circuit breaker REOPENED after failure in half-open state")
        elif self._circuit_state == CircuitState.CLOSED:
            self._circuit_failure_count += 1

            if self._circuit_failure_count >= self.circuit_config.failure_threshold:
                self._circuit_state = CircuitState.OPEN
                self._circuit_open_time = time.time() * 1000
                logger.warning(
                    f"Circuit breaker OPENED after {self._circuit_failure_count} failures"
                )

    def _normalize_error(
        self, error: Exception, response: Optional[requests.Response] = None
    ) -> FiscalError:
        """Normalize error from various sources into a classified ProviderError"""
        if isinstance(error, FiscalError):
            return error

        if isinstance(error, requests.exceptions.Timeout):
            return NetworkError.timeout()

        if isinstance(error, requests.exceptions.SSLError):
            return NetworkError.ssl_error(f"SSL/TLS error: {str(error)}")

        if isinstance(error, requests.exceptions.ConnectionError):
            return NetworkError.connection_refused(f"Connection error: {str(error)}")

        if isinstance(error, requests.exceptions.HTTPError) and response is not None:
            try:
                data = response.json()
            except ValueError:
                data = None

            message = str(error)
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or message
            return ProviderError.from_status(message, response.status_code, raw=data)

        if isinstance(error, requests.exceptions.RequestException):
            return NetworkError(f"Request error: {str(error)}", cause=error)

        return ProviderError(f"Unexpected transport error: {str(error)}", cause=error)

    def _record_audit(
        self,
        method: str,
        url: str,
        request_id: str,
        body: Optional[Any],
        start_time: float,
        response: Optional[requests.Response] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Write an audit entry for the request"""
        if self._audit is None:
            return

        response_data = None
        if response is not None:
            try:
                response_body = response.json()
            except ValueError:
                response_body = response.text[:500] if response.text else None

            response_data = {
                "status_code": response.status_code,
                "body": redact_sensitive_data(response_body),
            }

        self._audit.record(
            "http.request",
            entity_id=request_id,
            method=method,
            url=url,
            body=body,
            response=response_data,
            duration=int((time.time() - start_time) * 1000),
            success=error is None,
            error=str(error) if error else None,
        )

    def _execute(
        self,
        method: HttpMethod,
        url: str,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> HttpResponse[Any]:
        """Execute a single HTTP request"""
        self._check_circuit_breaker()

        full_url = f"{self._base_url}{url}"
        timeout_seconds = (timeout or self.timeout) / 1000.0
        request_id = self._generate_request_id()

        request_headers = {"X-Request-ID": request_id}
        if headers:
            request_headers.update(headers)

        start_time = time.time()
        response: Optional[requests.Response] = None

        try:
            response = self._session.request(
                method.value,
                full_url,
                headers=request_headers,
                json=data,
                timeout=timeout_seconds,
            )
            response.raise_for_status()
        except Exception as e:
            normalized = self._normalize_error(e, response)
            if isinstance(normalized, ProviderError) and normalized.retryable:
                self._record_circuit_failure()
            self._record_audit(
                method.value, full_url, request_id, data, start_time, response, e
            )
            logger.warning(
                f"{method.value} {url} failed [{request_id}]: {normalized.get_description()}"
            )
            raise normalized from e

        self._record_circuit_success()
        self._record_audit(method.value, full_url, request_id, data, start_time, response)

        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        return HttpResponse(
            data=response_data,
            status=response.status_code,
            headers=dict(response.headers),
            duration=int((time.time() - start_time) * 1000),
            request_id=request_id,
        )

    def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> HttpResponse[Any]:
        """
        Perform GET request

        Args:
            url: Request URL (relative to base URL)
            headers: Extra request headers
            timeout: Timeout override in milliseconds

        Returns:
            HTTP response wrapper
        """
        return self._execute(HttpMethod.GET, url, None, headers, timeout)

    def post(
        self,
        url: str,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> HttpResponse[Any]:
        """
        Perform POST request

        Args:
            url: Request URL (relative to base URL)
            data: Request body data
            headers: Extra request headers
            timeout: Timeout override in milliseconds

        Returns:
            HTTP response wrapper
        """
        return self._execute(HttpMethod.POST, url, data, headers, timeout)

    @property
    def circuit_state(self) -> CircuitState:
        """Get current circuit breaker state"""
        return self._circuit_state

    def reset_circuit_breaker(self) -> None:
        """Reset circuit breaker to closed state"""
        self._circuit_state = CircuitState.CLOSED
        self._circuit_failure_count = 0
        self._circuit_success_count = 0
        self._circuit_open_time = 0.0
        logger.info("Circuit breaker manually reset to CLOSED state")

    @property
    def base_url(self) -> str:
        """Get base URL"""
        return self._base_url

    def close(self) -> None:
        """Close the HTTP session"""
        self._session.close()

    def __enter__(self) -> "HttpClient":
        """Context manager entry"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit"""
        self.close()
