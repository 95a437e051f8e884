"""cfn_custom_resources — Shared runtime for Lambda-backed CloudFormation custom resources.

Provides:
    - Inbound request model and status callback (cfn_response)
    - Per-resource request serialization (request_queue)
    - Continuation through one-shot EventBridge rules (continuation)
    - The request lifecycle engine and handler contract (custom_resource)
    - Environment-derived configuration (config)
"""

from .cfn_response import (
    CREATE,
    DELETE,
    FAILED,
    SUCCESS,
    UPDATE,
    InvalidRequestError,
    LifecycleRequest,
    ResponseDeliveryError,
    ResponseReporter,
)
from .config import CertificateConfig, ContinuationConfig, ReporterConfig, configure_logging
from .continuation import ContinuationError, ContinuationScheduler
from .custom_resource import (
    CONTINUED,
    ContinuationRequired,
    CustomResource,
    ProcessResult,
    ResourceHandler,
    ResourceRegistry,
    Response,
)
from .request_queue import RequestQueue

__version__ = "0.6.0"

__all__ = [
    "CONTINUED",
    "CREATE",
    "DELETE",
    "FAILED",
    "SUCCESS",
    "UPDATE",
    "CertificateConfig",
    "ContinuationConfig",
    "ContinuationError",
    "ContinuationRequired",
    "ContinuationScheduler",
    "CustomResource",
    "InvalidRequestError",
    "LifecycleRequest",
    "ProcessResult",
    "ReporterConfig",
    "RequestQueue",
    "ResourceHandler",
    "ResourceRegistry",
    "Response",
    "ResponseDeliveryError",
    "ResponseReporter",
    "configure_logging",
]
