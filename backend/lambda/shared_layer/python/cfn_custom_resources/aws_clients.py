"""cfn_custom_resources.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first use and cached per region for the lifetime of
the Lambda container, so cold starts only pay for the clients a resource
actually needs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

_clients: Dict[Tuple[str, Optional[str]], Any] = {}

_RETRY_ATTEMPTS = {
    "acm": 5,
    "route53": 5,
    "events": 3,
    "cognito-idp": 3,
}


def _get_client(service: str, region: Optional[str] = None):
    key = (service, region)
    client = _clients.get(key)
    if client is None:
        client = boto3.client(
            service,
            region_name=region,
            config=Config(retries={"max_attempts": _RETRY_ATTEMPTS.get(service, 3), "mode": "standard"}),
        )
        _clients[key] = client
    return client


def _get_acm(region: Optional[str] = None):
    """Get (or create) the ACM client singleton."""
    return _get_client("acm", region)


def _get_route53():
    """Get (or create) the Route53 client singleton (global service)."""
    return _get_client("route53")


def _get_events(region: Optional[str] = None):
    """Get (or create) the EventBridge client singleton."""
    return _get_client("events", region)


def _get_cognito_idp(region: Optional[str] = None):
    """Get (or create) the Cognito user pools client singleton."""
    return _get_client("cognito-idp", region)


def _reset_clients() -> None:
    _clients.clear()
