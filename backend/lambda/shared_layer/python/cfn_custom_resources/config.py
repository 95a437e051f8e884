"""cfn_custom_resources.config — Environment-derived configuration.

Each Lambda reads its configuration once per container and hands the
resulting structs to the constructors that need them; business logic never
reads the environment directly.

Environment variables:
    CONTINUATION_RULE_ROLE_ARN      role attached to the continuation rule
    CONTINUATION_TARGET_ROLE_ARN    role attached to the continuation target
    EVENTS_REGION                   default: AWS_REGION of the function
    RESPONSE_TIMEOUT_SECONDS        default: 30
    ACM_REGION                      default: us-east-1
    VALIDATION_POLL_INTERVAL_MS     default: 5000 (falls back to SLS_AWS_MONITORING_FREQUENCY)
    VALIDATION_POLL_MAX_ATTEMPTS    default: 120
    VALIDATION_WAIT_DELAY_SECONDS   default: 15
    VALIDATION_WAIT_MAX_ATTEMPTS    default: 40
    CONTINUATION_DELAY_SECONDS      default: 60
    LOG_LEVEL                       default: INFO
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

# CloudFront only accepts ACM certificates issued in us-east-1.
DEFAULT_ACM_REGION = "us-east-1"
DEFAULT_POLL_INTERVAL_MS = 5000


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = str(environ.get(name) or "").strip()
    return value or None


def configure_logging(environ: Optional[Mapping[str, str]] = None) -> logging.Logger:
    """Set the root logger level from LOG_LEVEL and return the root logger."""
    environ = os.environ if environ is None else environ
    root = logging.getLogger()
    level = str(environ.get("LOG_LEVEL") or "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))
    return root


@dataclass(frozen=True)
class ContinuationConfig:
    rule_role_arn: Optional[str] = None
    target_role_arn: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ContinuationConfig":
        environ = os.environ if environ is None else environ
        return cls(
            rule_role_arn=_env_str(environ, "CONTINUATION_RULE_ROLE_ARN"),
            target_role_arn=_env_str(environ, "CONTINUATION_TARGET_ROLE_ARN"),
            region=_env_str(environ, "EVENTS_REGION") or _env_str(environ, "AWS_REGION"),
        )


@dataclass(frozen=True)
class ReporterConfig:
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ReporterConfig":
        environ = os.environ if environ is None else environ
        return cls(timeout_seconds=_env_int(environ, "RESPONSE_TIMEOUT_SECONDS", 30))


@dataclass(frozen=True)
class CertificateConfig:
    acm_region: str = DEFAULT_ACM_REGION
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_MS / 1000
    poll_max_attempts: int = 120
    wait_delay_seconds: int = 15
    wait_max_attempts: int = 40
    continuation_delay_seconds: int = 60

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CertificateConfig":
        environ = os.environ if environ is None else environ
        # SLS_AWS_MONITORING_FREQUENCY is the name older deployments used for the same knob.
        legacy_interval = _env_int(environ, "SLS_AWS_MONITORING_FREQUENCY", DEFAULT_POLL_INTERVAL_MS)
        interval_ms = _env_int(environ, "VALIDATION_POLL_INTERVAL_MS", legacy_interval)
        return cls(
            acm_region=_env_str(environ, "ACM_REGION") or DEFAULT_ACM_REGION,
            poll_interval_seconds=max(0, interval_ms) / 1000,
            poll_max_attempts=max(1, _env_int(environ, "VALIDATION_POLL_MAX_ATTEMPTS", 120)),
            wait_delay_seconds=max(1, _env_int(environ, "VALIDATION_WAIT_DELAY_SECONDS", 15)),
            wait_max_attempts=max(1, _env_int(environ, "VALIDATION_WAIT_MAX_ATTEMPTS", 40)),
            continuation_delay_seconds=max(0, _env_int(environ, "CONTINUATION_DELAY_SECONDS", 60)),
        )
