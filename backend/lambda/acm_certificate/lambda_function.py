"""acm_certificate/lambda_function.py

CloudFormation custom resource for ACM certificates that CloudFront can use.

Unlike AWS::CertificateManager::Certificate this resource publishes the DNS
validation records itself and only reports success once ACM has validated
the certificate, so downstream resources can rely on it immediately.

Flow (Create):
    RequestCertificate (email-style validation options only)
    → poll DescribeCertificate until every DNS option has a resource record
    → UPSERT the records into the hosted zone of the DNS option (TTL 300)
    → wait for validation (continues through EventBridge if it takes longer)

Update:
    - only CertificateTransparencyLoggingPreference changed → UpdateCertificateOptions
    - only Tags changed → add/remove tag differences
    - anything else, an empty change set included → request a replacement
      certificate; CloudFormation deletes the old one with a separate Delete
      once the new id is reported

Delete:
    DeleteCertificate only. DNS validation records stay in place so that a
    later re-create (for instance after a rollback) can reuse them.

Physical resource id: "<default id>/<certificate id>". Attributes: Arn, CertificateId.

Environment variables:
    ACM_REGION                     default: us-east-1
    VALIDATION_POLL_INTERVAL_MS    default: 5000
    VALIDATION_POLL_MAX_ATTEMPTS   default: 120
    VALIDATION_WAIT_DELAY_SECONDS  default: 15
    VALIDATION_WAIT_MAX_ATTEMPTS   default: 40
    CONTINUATION_DELAY_SECONDS     default: 60
    CONTINUATION_RULE_ROLE_ARN     optional
    CONTINUATION_TARGET_ROLE_ARN   optional
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import WaiterError

from cfn_custom_resources.aws_clients import _get_acm, _get_route53
from cfn_custom_resources.cfn_response import LifecycleRequest, ResponseReporter
from cfn_custom_resources.config import (
    CertificateConfig,
    ContinuationConfig,
    ReporterConfig,
    configure_logging,
)
from cfn_custom_resources.continuation import ContinuationScheduler
from cfn_custom_resources.custom_resource import (
    ContinuationRequired,
    CustomResource,
    ResourceRegistry,
    Response,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = configure_logging()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Short enough to revoke a certificate quickly; these records are rarely queried.
VALIDATION_RECORD_TTL = 300

# Keys RequestCertificate understands; other template properties are ours.
_REQUEST_CERTIFICATE_KEYS = (
    "DomainName",
    "SubjectAlternativeNames",
    "ValidationMethod",
    "CertificateAuthorityArn",
    "KeyAlgorithm",
    "Tags",
)

_IDEMPOTENCY_TOKEN_INVALID = re.compile(r"\W", re.ASCII)
_IDEMPOTENCY_TOKEN_MAX_LENGTH = 32

CT_LOGGING_PREFERENCE = "CertificateTransparencyLoggingPreference"
TAGS = "Tags"

_MISSING = object()


class CertificateError(RuntimeError):
    """Base class for certificate resource failures."""


class CertificateValidationError(CertificateError):
    """Raised for malformed or contradictory certificate properties."""


class CertificateNotFoundError(CertificateError):
    """Raised when the certificate behind a physical resource id cannot be found."""


class ValidationTimeoutError(CertificateError):
    """Raised when ACM never attaches the DNS validation records."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_email_validation_option(option: Dict[str, Any]) -> bool:
    return "ValidationDomain" in option


def is_dns_validation_option(option: Dict[str, Any]) -> bool:
    return "HostedZoneId" in option


def get_certificate_id(certificate_arn: str) -> str:
    return certificate_arn[certificate_arn.rfind("/") + 1:]


def strip_certificate_id(physical_resource_id: str, certificate_id: str) -> str:
    """Return the physical id without its ``/<certificate id>`` suffix, if present."""
    suffix = f"/{certificate_id}"
    if certificate_id and physical_resource_id.endswith(suffix):
        return physical_resource_id[: -len(suffix)]
    return physical_resource_id


def replace_certificate_id(physical_resource_id: str, old_certificate_id: str, new_certificate_id: str) -> str:
    # Legacy ids carry no certificate id suffix; those get one appended.
    prefix = strip_certificate_id(physical_resource_id, old_certificate_id)
    return f"{prefix}/{new_certificate_id}"


def sanitize_idempotency_token(raw_token: str) -> str:
    return _IDEMPOTENCY_TOKEN_INVALID.sub("", raw_token)[:_IDEMPOTENCY_TOKEN_MAX_LENGTH]


def _is_changed(to: Any, from_: Any) -> bool:
    if from_ is _MISSING:
        return to is not _MISSING
    if to is _MISSING:
        return True
    if isinstance(from_, dict):
        if not isinstance(to, dict):
            return True
        return any(
            _is_changed(to.get(key, _MISSING), from_.get(key, _MISSING))
            for key in set(from_) | set(to)
        )
    if isinstance(from_, list):
        if not isinstance(to, list) or len(to) != len(from_):
            return True
        return any(_is_changed(t, f) for t, f in zip(to, from_))
    return from_ != to


def find_changed_attributes(params: Dict[str, Any], old_params: Any) -> List[str]:
    """Top-level property names whose values differ between old and new."""
    old = old_params if isinstance(old_params, dict) else {}
    keys = list(params) + [key for key in old if key not in params]
    return [key for key in keys if _is_changed(params.get(key, _MISSING), old.get(key, _MISSING))]


def _tag_key(tag: Dict[str, Any]) -> Tuple[Any, Any]:
    return tag.get("Key"), tag.get("Value")


def diff_tags(
    existing: Sequence[Dict[str, Any]],
    desired: Sequence[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Return (tags to add, tags to remove), comparing tags by key and value."""
    existing_keys = {_tag_key(tag) for tag in existing}
    desired_keys = {_tag_key(tag) for tag in desired}
    to_add = [tag for tag in desired if _tag_key(tag) not in existing_keys]
    to_remove = [tag for tag in existing if _tag_key(tag) not in desired_keys]
    return to_add, to_remove


def _attributes(certificate_arn: str) -> Dict[str, str]:
    return {"Arn": certificate_arn, "CertificateId": get_certificate_id(certificate_arn)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


class ACMCloudfrontCertificate:
    # XXX: AWS::CertificateManager::Certificate uses the ARN as Ref and has no
    # Arn attribute; this resource exposes both the id and the ARN instead.

    def __init__(
        self,
        logical_resource_id: str,
        config: Optional[CertificateConfig] = None,
        acm: Any = None,
        route53: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.logical_resource_id = logical_resource_id
        self.config = config or CertificateConfig()
        self._acm = acm
        self._route53 = route53
        self._sleep = sleep
        self._clock = clock

    @property
    def acm(self):
        if self._acm is None:
            self._acm = _get_acm(self.config.acm_region)
        return self._acm

    @property
    def route53(self):
        if self._route53 is None:
            self._route53 = _get_route53()
        return self._route53

    # -- lifecycle operations ------------------------------------------------

    async def create_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ):
        resumed = await self._resume_validation(continuation_attributes)
        if resumed is not None:
            return resumed

        certificate_arn = await self.create_certificate(params)
        new_physical_resource_id = f"{physical_resource_id}/{get_certificate_id(certificate_arn)}"
        return await self.wait_for_validation(certificate_arn, new_physical_resource_id)

    async def update_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        old_params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ):
        resumed = await self._resume_validation(continuation_attributes)
        if resumed is not None:
            return resumed

        domain_name = self._domain_name(params)
        changed = find_changed_attributes(params, old_params)
        certificate_arn = self.require_certificate_arn(physical_resource_id, domain_name)

        if changed == [CT_LOGGING_PREFERENCE]:
            self.acm.update_certificate_options(
                CertificateArn=certificate_arn,
                Options={CT_LOGGING_PREFERENCE: params.get(CT_LOGGING_PREFERENCE) or "ENABLED"},
            )
            return Response(physical_resource_id, _attributes(certificate_arn))

        if changed == [TAGS]:
            self.reconcile_tags(certificate_arn, params.get(TAGS) or [])
            return Response(physical_resource_id, _attributes(certificate_arn))

        logger.info(
            "Replacing certificate %s, changed properties: %s",
            certificate_arn,
            ", ".join(changed) or "none",
        )
        new_certificate_arn = await self.create_certificate(params)
        # CloudFormation deletes the old certificate once it sees the new id.
        new_physical_resource_id = replace_certificate_id(
            physical_resource_id,
            get_certificate_id(certificate_arn),
            get_certificate_id(new_certificate_arn),
        )
        logger.info("Replaced certificate %s with %s", physical_resource_id, new_physical_resource_id)
        return await self.wait_for_validation(new_certificate_arn, new_physical_resource_id)

    async def delete_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ):
        # XXX: With several certificates for the same domain and no id suffix, the first match wins.
        certificate_arn = self.require_certificate_arn(physical_resource_id, params.get("DomainName"))

        # Route53 validation records are kept: if this delete is part of a
        # rollback, the next attempt can reuse them. AWS::CertificateManager::Certificate
        # behaves the same way.
        self.acm.delete_certificate(CertificateArn=certificate_arn)
        return Response(physical_resource_id, _attributes(certificate_arn))

    # -- certificate lookup --------------------------------------------------

    def list_certificates(self) -> List[Dict[str, Any]]:
        certificates: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {}
        while True:
            resp = self.acm.list_certificates(**kwargs)
            certificates.extend(resp.get("CertificateSummaryList") or [])
            next_token = resp.get("NextToken")
            if not next_token:
                break
            kwargs["NextToken"] = next_token
        return certificates

    def find_certificate_arn(self, physical_resource_id: str, domain_name: Optional[str]) -> Optional[str]:
        """Find the certificate for a physical id, falling back to the domain name.

        Scans every certificate in the account; fine for the handful a
        typical account holds.
        """
        certificates = self.list_certificates()
        for certificate in certificates:
            certificate_arn = certificate.get("CertificateArn") or ""
            if not certificate_arn:
                continue
            if physical_resource_id.endswith(f"/{get_certificate_id(certificate_arn)}"):
                if certificate.get("DomainName") != domain_name:
                    logger.warning(
                        "Certificate %s contains unexpected domain: %s (should be %s)",
                        certificate_arn,
                        certificate.get("DomainName"),
                        domain_name,
                    )
                return certificate_arn

        # Legacy physical ids carry no certificate id.
        logger.warning("Cannot find certificate by id, falling back to search by domain name")
        for certificate in certificates:
            if certificate.get("DomainName") == domain_name and certificate.get("CertificateArn"):
                return certificate["CertificateArn"]
        return None

    def require_certificate_arn(self, physical_resource_id: str, domain_name: Optional[str]) -> str:
        certificate_arn = self.find_certificate_arn(physical_resource_id, domain_name)
        if not certificate_arn:
            raise CertificateNotFoundError(
                f"Cannot find certificate {physical_resource_id} (domain {domain_name})"
            )
        return certificate_arn

    # -- tags ----------------------------------------------------------------

    def reconcile_tags(self, certificate_arn: str, tags: Sequence[Dict[str, Any]]) -> None:
        existing = self.acm.list_tags_for_certificate(CertificateArn=certificate_arn).get("Tags") or []
        to_add, to_remove = diff_tags(existing, tags)
        # Add first: a new value for an existing key overwrites it, and the
        # removal of the old key/value pair then no longer matches.
        if to_add:
            self.acm.add_tags_to_certificate(CertificateArn=certificate_arn, Tags=to_add)
        if to_remove:
            self.acm.remove_tags_from_certificate(CertificateArn=certificate_arn, Tags=to_remove)
        logger.info(
            "Reconciled tags on %s: %d added, %d removed", certificate_arn, len(to_add), len(to_remove)
        )

    # -- issuance and validation ---------------------------------------------

    @staticmethod
    def _domain_name(params: Dict[str, Any]) -> str:
        domain_name = params.get("DomainName")
        if not domain_name:
            raise CertificateValidationError("Missing required property DomainName")
        return domain_name

    def _split_validation_options(
        self, params: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        options = params.get("DomainValidationOptions") or []
        email_options = [option for option in options if is_email_validation_option(option)]
        dns_options = [option for option in options if is_dns_validation_option(option)]
        # ACM takes no DNS options itself; we handle at most one, for the certificate's own domain.
        if len(dns_options) > 1 or (
            len(dns_options) == 1 and dns_options[0].get("DomainName") != params.get("DomainName")
        ):
            raise CertificateValidationError("Invalid DNS domain validation options")
        return email_options, dns_options

    async def create_certificate(self, params: Dict[str, Any], raw_idempotency_token: Optional[str] = None) -> str:
        """Request a certificate and publish its DNS validation records.

        Returns the certificate ARN. Does not wait for validation.
        """
        self._domain_name(params)
        email_options, dns_options = self._split_validation_options(params)

        if raw_idempotency_token is None:
            raw_idempotency_token = f"{self.logical_resource_id}-{int(self._clock() * 1000)}"
        request: Dict[str, Any] = {key: params[key] for key in _REQUEST_CERTIFICATE_KEYS if key in params}
        request["IdempotencyToken"] = sanitize_idempotency_token(raw_idempotency_token)
        if email_options:
            request["DomainValidationOptions"] = email_options
        if params.get(CT_LOGGING_PREFERENCE):
            request["Options"] = {CT_LOGGING_PREFERENCE: params[CT_LOGGING_PREFERENCE]}

        certificate_arn = self.acm.request_certificate(**request).get("CertificateArn")
        if not certificate_arn:
            # CloudTrail should have the details.
            raise CertificateError("Failed to request certificate: No certificate ARN returned")
        logger.info("Certificate requested: %s", certificate_arn)

        # Email validation (or no DNS option) leaves the rest to the recipient.
        if dns_options:
            resource_records = await self.get_validation_resource_records(certificate_arn)
            self.upsert_validation_records(dns_options[0]["HostedZoneId"], resource_records)
        return certificate_arn

    async def get_validation_resource_records(self, certificate_arn: str) -> List[Dict[str, Any]]:
        """Poll ACM until every DNS validation option carries its resource record.

        ACM attaches the records some time after RequestCertificate returns.
        """
        for attempt in range(1, self.config.poll_max_attempts + 1):
            await self._sleep(self.config.poll_interval_seconds)
            resp = await asyncio.to_thread(self.acm.describe_certificate, CertificateArn=certificate_arn)
            certificate = resp.get("Certificate")
            if not certificate:
                raise CertificateNotFoundError(f"Cannot find certificate {certificate_arn}")

            dns_options = [
                option
                for option in certificate.get("DomainValidationOptions") or []
                if option.get("ValidationMethod") == "DNS"
            ]
            if not dns_options:
                # Fatal: nothing documents that DNS options appear later on their own.
                raise CertificateError(
                    f"Cannot find DNS domain validation option in certificate {certificate_arn}: "
                    f"{json.dumps(certificate, default=str)}"
                )

            resource_records = [option["ResourceRecord"] for option in dns_options if option.get("ResourceRecord")]
            missing = len(dns_options) - len(resource_records)
            if missing > 0:
                logger.warning(
                    "Missing resource records in %d DNS validation options in certificate %s after %d attempts",
                    missing,
                    certificate_arn,
                    attempt,
                )
                continue

            logger.info(
                "Found all validation resource records in certificate %s: %s",
                certificate_arn,
                json.dumps(resource_records),
            )
            return resource_records

        raise ValidationTimeoutError(
            f"DNS validation records for certificate {certificate_arn} did not appear "
            f"after {self.config.poll_max_attempts} attempts"
        )

    def upsert_validation_records(self, hosted_zone_id: str, resource_records: Sequence[Dict[str, Any]]) -> None:
        result = self.route53.change_resource_record_sets(
            HostedZoneId=hosted_zone_id,
            ChangeBatch={
                "Changes": [
                    {
                        "Action": "UPSERT",
                        "ResourceRecordSet": {
                            "Name": record["Name"],
                            "Type": record["Type"],
                            "TTL": VALIDATION_RECORD_TTL,
                            "ResourceRecords": [{"Value": record["Value"]}],
                        },
                    }
                    for record in resource_records
                ]
            },
        )
        logger.info("Route53 change set: %s", (result.get("ChangeInfo") or {}).get("Id"))

    async def wait_for_validation(self, certificate_arn: str, physical_resource_id: str):
        """Block until ACM reports the certificate validated.

        Returning earlier would hand out a certificate that is not issued yet.
        When the waiter runs out while validation is still pending, the wait
        continues in a later invocation.
        """
        waiter = self.acm.get_waiter("certificate_validated")
        try:
            # The waiter blocks for minutes; keep it off the event loop.
            await asyncio.to_thread(
                waiter.wait,
                CertificateArn=certificate_arn,
                WaiterConfig={
                    "Delay": self.config.wait_delay_seconds,
                    "MaxAttempts": self.config.wait_max_attempts,
                },
            )
        except WaiterError as exc:
            last_response = exc.last_response or {}
            status = (last_response.get("Certificate") or {}).get("Status")
            if status != "PENDING_VALIDATION":
                raise
            logger.info(
                "Certificate %s still pending validation, continuing in %ds",
                certificate_arn,
                self.config.continuation_delay_seconds,
            )
            return ContinuationRequired(
                self.config.continuation_delay_seconds,
                {"CertificateArn": certificate_arn, "PhysicalResourceId": physical_resource_id},
            )
        return Response(physical_resource_id, _attributes(certificate_arn))

    async def _resume_validation(self, continuation_attributes: Optional[Dict[str, Any]]):
        if not continuation_attributes or not continuation_attributes.get("CertificateArn"):
            return None
        certificate_arn = continuation_attributes["CertificateArn"]
        physical_resource_id = continuation_attributes["PhysicalResourceId"]
        logger.info("Resuming validation wait for %s", certificate_arn)
        return await self.wait_for_validation(certificate_arn, physical_resource_id)


# ---------------------------------------------------------------------------
# Lambda entry point
# ---------------------------------------------------------------------------


def _build_engine(request: LifecycleRequest) -> CustomResource:
    return CustomResource(
        ACMCloudfrontCertificate(request.logical_resource_id, CertificateConfig.from_env()),
        scheduler=ContinuationScheduler(ContinuationConfig.from_env()),
        reporter=ResponseReporter(ReporterConfig.from_env()),
    )


_registry = ResourceRegistry(_build_engine, reporter=ResponseReporter(ReporterConfig.from_env()))


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    return _registry.handle_event(event)
