"""Unit tests for the Cognito user pool domain attributes resource."""

from __future__ import annotations

import asyncio
import importlib.util
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(_HERE, "..", "shared_layer", "python"))

from cfn_custom_resources.cfn_response import FAILED, SUCCESS

_SPEC = importlib.util.spec_from_file_location(
    "user_pool_domain_attributes_lambda",
    os.path.join(_HERE, "lambda_function.py"),
)
user_pool_domain_attributes = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = user_pool_domain_attributes
_SPEC.loader.exec_module(user_pool_domain_attributes)

STACK_ID = "arn:aws:cloudformation:eu-west-1:123456789012:stack/auth-stack/0c7d2f40-1b2c-11ef-8d1f-0a3b4c5d6e7f"


def _event(request_type="Create", **properties):
    event = {
        "RequestType": request_type,
        "ServiceToken": "arn:aws:lambda:eu-west-1:123456789012:function:user-pool-domain",
        "ResponseURL": "https://example.invalid/signed",
        "StackId": STACK_ID,
        "RequestId": "req-1",
        "LogicalResourceId": "UserPoolDomainAttributes",
        "ResourceType": "Custom::UserPoolDomainAttributes",
        "ResourceProperties": dict(properties),
    }
    if request_type != "Create":
        event["PhysicalResourceId"] = "auth-domain-attributes"
    return event


class UserPoolDomainAttributesTests(unittest.TestCase):
    def setUp(self):
        self.cognito = MagicMock()
        self.cognito.describe_user_pool_domain.return_value = {
            "DomainDescription": {
                "Domain": "auth.example.com",
                "CloudFrontDistribution": "d111111abcdef8.cloudfront.net",
                "Status": "ACTIVE",
            }
        }
        self.resource = user_pool_domain_attributes.UserPoolDomainAttributes(
            "UserPoolDomainAttributes", cognito_idp=self.cognito
        )

    def test_create_returns_distribution(self):
        outcome = asyncio.run(self.resource.create_resource("pid", {"UserPoolDomain": "auth.example.com"}))
        self.cognito.describe_user_pool_domain.assert_called_once_with(Domain="auth.example.com")
        self.assertEqual(outcome.physical_resource_id, "pid")
        self.assertEqual(outcome.attributes, {"CloudFrontDistribution": "d111111abcdef8.cloudfront.net"})

    def test_update_reads_new_domain(self):
        outcome = asyncio.run(
            self.resource.update_resource("pid", {"UserPoolDomain": "login.example.com"}, {"UserPoolDomain": "auth.example.com"})
        )
        self.cognito.describe_user_pool_domain.assert_called_once_with(Domain="login.example.com")
        self.assertEqual(outcome.attributes["CloudFrontDistribution"], "d111111abcdef8.cloudfront.net")

    def test_delete_is_a_no_op(self):
        outcome = asyncio.run(self.resource.delete_resource("pid", {"UserPoolDomain": "auth.example.com"}))
        self.cognito.describe_user_pool_domain.assert_not_called()
        self.assertEqual(outcome.physical_resource_id, "pid")
        self.assertIsNone(outcome.attributes)

    def test_unknown_domain_fails(self):
        self.cognito.describe_user_pool_domain.return_value = {"DomainDescription": {}}
        with self.assertRaises(user_pool_domain_attributes.UnknownUserPoolDomainError):
            self.resource.get_attributes("missing.example.com")

    def test_missing_property_fails(self):
        with self.assertRaises(ValueError):
            self.resource.get_attributes(None)


class LambdaHandlerTests(unittest.TestCase):
    def setUp(self):
        self.cognito = MagicMock()
        self.cognito.describe_user_pool_domain.return_value = {
            "DomainDescription": {"CloudFrontDistribution": "d111111abcdef8.cloudfront.net"}
        }
        self.registry = user_pool_domain_attributes.ResourceRegistry(self._engine)
        self.reporter = MagicMock()

    def _engine(self, request):
        return user_pool_domain_attributes.CustomResource(
            user_pool_domain_attributes.UserPoolDomainAttributes(request.logical_resource_id, cognito_idp=self.cognito),
            scheduler=MagicMock(),
            reporter=self.reporter,
        )

    def test_handler_reports_success_with_attributes(self):
        with patch.object(user_pool_domain_attributes, "_registry", self.registry):
            summary = user_pool_domain_attributes.lambda_handler(_event(UserPoolDomain="auth.example.com"), None)

        self.assertEqual(summary["Status"], SUCCESS)
        self.assertEqual(summary["PhysicalResourceId"], f"{STACK_ID}/UserPoolDomainAttributes/req-1")
        args = self.reporter.send.call_args[0]
        self.assertEqual(args[1], SUCCESS)
        self.assertEqual(args[4], {"CloudFrontDistribution": "d111111abcdef8.cloudfront.net"})

    def test_handler_reports_failure_for_missing_domain(self):
        with patch.object(user_pool_domain_attributes, "_registry", self.registry):
            summary = user_pool_domain_attributes.lambda_handler(_event("Update"), None)

        self.assertEqual(summary["Status"], FAILED)
        self.assertEqual(summary["PhysicalResourceId"], "auth-domain-attributes")
        args = self.reporter.send.call_args[0]
        self.assertEqual(args[1], FAILED)
        self.assertEqual(args[2], "Missing required property UserPoolDomain")


if __name__ == "__main__":
    unittest.main()
