"""cfn_custom_resources.cfn_response — Inbound request model and status callback.

Based on the cfn-response module AWS publishes for Lambda-backed custom
resources:
https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/cfn-lambda-function-code-cfnresponsemodule.html

Request fields are documented at
https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/crpg-ref-requests.html
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .config import ReporterConfig

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"

CREATE = "Create"
UPDATE = "Update"
DELETE = "Delete"
REQUEST_TYPES = (CREATE, UPDATE, DELETE)

# CloudFormation rejects response bodies of 4 KiB or more.
MAX_RESPONSE_BODY_BYTES = 4096

_REQUIRED_FIELDS = ("RequestType", "ResponseURL", "StackId", "RequestId", "LogicalResourceId")


class InvalidRequestError(ValueError):
    """Raised when an inbound event is not a usable custom resource request."""


class ResponseDeliveryError(RuntimeError):
    """Raised when the status document could not be delivered to CloudFormation."""


def _without_service_token(properties: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (properties or {}).items() if k != "ServiceToken"}


@dataclass(frozen=True)
class LifecycleRequest:
    """One Create/Update/Delete event for a single resource instance.

    ``continuation_attributes`` is only set when the event was re-delivered by
    the continuation schedule rather than by CloudFormation itself.
    """

    request_type: str
    response_url: str
    stack_id: str
    request_id: str
    logical_resource_id: str
    service_token: str = ""
    physical_resource_id: str = ""
    resource_type: str = ""
    resource_properties: Dict[str, Any] = field(default_factory=dict)
    old_resource_properties: Optional[Dict[str, Any]] = None
    continuation_attributes: Optional[Dict[str, Any]] = None

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "LifecycleRequest":
        if not isinstance(event, Mapping):
            raise InvalidRequestError(f"Unsupported event type: {type(event).__name__}")
        missing = [name for name in _REQUIRED_FIELDS if not event.get(name)]
        if missing:
            raise InvalidRequestError(f"Event is missing required fields: {', '.join(missing)}")
        request_type = event["RequestType"]
        if request_type not in REQUEST_TYPES:
            raise InvalidRequestError(f"Unknown RequestType {request_type!r}")

        old_properties = event.get("OldResourceProperties")
        continuation_attributes = event.get("ContinuationAttributes")
        return cls(
            request_type=request_type,
            response_url=event["ResponseURL"],
            stack_id=event["StackId"],
            request_id=event["RequestId"],
            logical_resource_id=event["LogicalResourceId"],
            service_token=event.get("ServiceToken") or "",
            physical_resource_id=event.get("PhysicalResourceId") or "",
            resource_type=event.get("ResourceType") or "",
            resource_properties=dict(event.get("ResourceProperties") or {}),
            old_resource_properties=dict(old_properties) if old_properties is not None else None,
            continuation_attributes=dict(continuation_attributes) if continuation_attributes is not None else None,
        )

    @property
    def is_continuation(self) -> bool:
        return self.continuation_attributes is not None

    @property
    def stack_name(self) -> str:
        # arn:aws:cloudformation:<region>:<account>:stack/<name>/<guid>
        parts = self.stack_id.split("/")
        return parts[1] if len(parts) >= 2 else self.stack_id

    @property
    def properties(self) -> Dict[str, Any]:
        return _without_service_token(self.resource_properties)

    @property
    def old_properties(self) -> Dict[str, Any]:
        return _without_service_token(self.old_resource_properties)

    def to_event(self, continuation_attributes: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Rebuild the inbound event, optionally carrying continuation attributes."""
        event: Dict[str, Any] = {
            "RequestType": self.request_type,
            "ServiceToken": self.service_token,
            "ResponseURL": self.response_url,
            "StackId": self.stack_id,
            "RequestId": self.request_id,
            "LogicalResourceId": self.logical_resource_id,
            "PhysicalResourceId": self.physical_resource_id,
            "ResourceType": self.resource_type,
            "ResourceProperties": dict(self.resource_properties),
        }
        if self.old_resource_properties is not None:
            event["OldResourceProperties"] = dict(self.old_resource_properties)
        if continuation_attributes is not None:
            event["ContinuationAttributes"] = dict(continuation_attributes)
        return event


def build_response_body(
    request: LifecycleRequest,
    status: str,
    reason: Optional[str] = None,
    physical_resource_id: Optional[str] = None,
    data: Optional[Mapping[str, Any]] = None,
    no_echo: bool = False,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"Status": status}
    reason = reason or ("Unknown error" if status == FAILED else None)
    if reason is not None:
        body["Reason"] = reason
    body.update(
        {
            "PhysicalResourceId": physical_resource_id or request.physical_resource_id,
            "StackId": request.stack_id,
            "RequestId": request.request_id,
            "LogicalResourceId": request.logical_resource_id,
            "NoEcho": no_echo,
            "Data": dict(data or {}),
        }
    )
    return body


class ResponseReporter:
    """Delivers the final status document to the request's pre-signed URL."""

    def __init__(self, config: Optional[ReporterConfig] = None):
        self.config = config or ReporterConfig()

    def send(
        self,
        request: LifecycleRequest,
        status: str,
        reason: Optional[str] = None,
        physical_resource_id: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
        no_echo: bool = False,
    ) -> None:
        body = json.dumps(
            build_response_body(request, status, reason, physical_resource_id, data, no_echo),
            default=str,
        ).encode("utf-8")
        if len(body) >= MAX_RESPONSE_BODY_BYTES:
            # Nothing can be shortened at this point; CloudFormation will fail the
            # resource and roll back. Log the whole body so the operator can see
            # what needs trimming.
            # See https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/crpg-ref-responses.html
            logger.warning(
                "Response body length of %d bytes exceeds CloudFormation limit of 4KiB: %s",
                len(body),
                body.decode("utf-8"),
            )

        req = urllib.request.Request(
            request.response_url,
            data=body,
            method="PUT",
            headers={
                # Pre-signed S3 URLs do not sign a content type.
                "content-type": "",
                "content-length": str(len(body)),
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.config.timeout_seconds) as resp:
                status_code = getattr(resp, "status", None) or resp.getcode()
                resp.read()
        except urllib.error.HTTPError as exc:
            message = f"Unexpected status code {exc.code}"
            self._log_problem(request, body, message)
            raise ResponseDeliveryError(message) from exc
        except (urllib.error.URLError, OSError) as exc:
            reason_text = getattr(exc, "reason", None) or str(exc)
            self._log_problem(request, body, str(reason_text))
            raise ResponseDeliveryError(f"Failed to deliver response: {reason_text}") from exc

        if not status_code or status_code >= 400:
            message = f"Unexpected status code {status_code}"
            self._log_problem(request, body, message)
            raise ResponseDeliveryError(message)
        logger.info("Reported %s for %s (%s)", status, request.logical_resource_id, request.request_id)

    @staticmethod
    def _log_problem(request: LifecycleRequest, body: bytes, message: str) -> None:
        # Enough detail for a human to replay the report with curl.
        logger.error(
            "Failed to report status '%s' to '%s': %s",
            body.decode("utf-8"),
            request.response_url,
            message,
        )
