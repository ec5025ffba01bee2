"""Client module initialization"""

from vendhub_fiscal.client.http_client import (
    CircuitBreakerConfig,
    CircuitState,
    HttpClient,
    HttpMethod,
    HttpResponse,
)

__all__ = [
    "CircuitBreakerConfig",
    "CircuitState",
    "HttpClient",
    "HttpMethod",
    "HttpResponse",
]
