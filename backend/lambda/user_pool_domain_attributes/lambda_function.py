"""user_pool_domain_attributes/lambda_function.py

CloudFormation custom resource exposing attributes of a Cognito user pool
domain that AWS::Cognito::UserPoolDomain does not return, most importantly
the CloudFront distribution a custom domain's alias record must point to.

Properties:
    UserPoolDomain   (required) the domain prefix or custom domain name

Attributes:
    CloudFrontDistribution

Nothing is created or deleted; Create and Update read the domain
description, Delete is a no-op.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from cfn_custom_resources.aws_clients import _get_cognito_idp
from cfn_custom_resources.cfn_response import LifecycleRequest, ResponseReporter
from cfn_custom_resources.config import ContinuationConfig, ReporterConfig, configure_logging
from cfn_custom_resources.continuation import ContinuationScheduler
from cfn_custom_resources.custom_resource import CustomResource, ResourceRegistry, Response

logger = configure_logging()


class UnknownUserPoolDomainError(RuntimeError):
    """Raised when Cognito has no description for the requested domain."""


class UserPoolDomainAttributes:
    def __init__(self, logical_resource_id: str, cognito_idp: Any = None):
        self.logical_resource_id = logical_resource_id
        self._cognito_idp = cognito_idp

    @property
    def cognito_idp(self):
        if self._cognito_idp is None:
            self._cognito_idp = _get_cognito_idp()
        return self._cognito_idp

    async def create_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Response:
        return Response(physical_resource_id, self.get_attributes(params.get("UserPoolDomain")))

    async def update_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        old_params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Response:
        return Response(physical_resource_id, self.get_attributes(params.get("UserPoolDomain")))

    async def delete_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Response:
        return Response(physical_resource_id)

    def get_attributes(self, user_pool_domain: Optional[str]) -> Dict[str, Any]:
        if not user_pool_domain:
            raise ValueError("Missing required property UserPoolDomain")
        resp = self.cognito_idp.describe_user_pool_domain(Domain=user_pool_domain)
        # Unknown domains come back as an empty description rather than an error.
        description = resp.get("DomainDescription") or {}
        if not description:
            raise UnknownUserPoolDomainError(f"Unknown Cognito user pool domain {user_pool_domain}")
        logger.info("Resolved user pool domain %s", user_pool_domain)
        return {"CloudFrontDistribution": description.get("CloudFrontDistribution")}


def _build_engine(request: LifecycleRequest) -> CustomResource:
    return CustomResource(
        UserPoolDomainAttributes(request.logical_resource_id),
        scheduler=ContinuationScheduler(ContinuationConfig.from_env()),
        reporter=ResponseReporter(ReporterConfig.from_env()),
    )


_registry = ResourceRegistry(_build_engine, reporter=ResponseReporter(ReporterConfig.from_env()))


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    return _registry.handle_event(event)
