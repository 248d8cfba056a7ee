"""Settlement provider gateways."""
from .http_providers import (
    CircuitBreaker,
    HttpCollectionProvider,
    HttpDisbursementProvider,
    build_http_providers,
)
from .providers import (
    CollectionProvider,
    CollectionResult,
    DisbursementProvider,
    HealthStatus,
    ReversalResult,
    TransferResult,
)
from .stand_ins import StandInCollectionProvider, StandInDisbursementProvider

__all__ = [
    "CircuitBreaker",
    "CollectionProvider",
    "CollectionResult",
    "DisbursementProvider",
    "HealthStatus",
    "HttpCollectionProvider",
    "HttpDisbursementProvider",
    "ReversalResult",
    "StandInCollectionProvider",
    "StandInDisbursementProvider",
    "TransferResult",
    "build_http_providers",
]
