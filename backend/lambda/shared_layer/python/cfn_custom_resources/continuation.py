"""cfn_custom_resources.continuation — Re-invocation through a one-shot EventBridge rule.

A handler that needs more time than one Lambda invocation allows returns a
continuation. The engine then arms a scheduled rule whose single target
re-invokes the function with the original event plus the handler's
continuation attributes.

Arming order matters: the rule is created disabled with a schedule in the
past, the target is attached, and only then is the rule enabled with the
real schedule. The rule can therefore never fire without a target.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
import zlib
from typing import Any, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .aws_clients import _get_events
from .cfn_response import LifecycleRequest
from .config import ContinuationConfig

logger = logging.getLogger(__name__)

# EventBridge rule names: at most 64 characters of [.\-_A-Za-z0-9].
MAX_RULE_NAME_LENGTH = 64
_RULE_NAME_INVALID = re.compile(r"[^A-Za-z0-9._-]")

DISABLED_SCHEDULE_EXPRESSION = "cron(0 0 1 1 ? 1970)"
TARGET_ID = "continuation"


class ContinuationError(RuntimeError):
    """Raised when a continuation rule could not be armed."""


def _checksum(value: str) -> str:
    return format(zlib.crc32(value.encode("utf-8")) & 0xFFFFFFFF, "08x")


def rule_name_for(request: LifecycleRequest) -> str:
    """Deterministic rule name for one request, stable across retries."""
    suffix = f"-{_checksum(request.request_id)}"
    prefix = _RULE_NAME_INVALID.sub("", f"{request.stack_name}-{request.logical_resource_id}")
    return prefix[: MAX_RULE_NAME_LENGTH - len(suffix)] + suffix


def schedule_expression_for(delay_seconds: float, now: Optional[dt.datetime] = None) -> str:
    """Cron expression for the first whole minute strictly after now + delay."""
    now = now or dt.datetime.now(dt.timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(dt.timezone.utc)
    when = now + dt.timedelta(seconds=max(0, delay_seconds))
    when = when.replace(second=0, microsecond=0) + dt.timedelta(minutes=1)
    return f"cron({when.minute} {when.hour} {when.day} {when.month} ? {when.year})"


class ContinuationScheduler:
    def __init__(self, config: Optional[ContinuationConfig] = None, events: Any = None):
        self.config = config or ContinuationConfig()
        self._events = events

    @property
    def events(self):
        if self._events is None:
            self._events = _get_events(self.config.region)
        return self._events

    def _put_rule(self, name: str, request: LifecycleRequest, schedule: str, state: str) -> None:
        kwargs = {
            "Name": name,
            "ScheduleExpression": schedule,
            "State": state,
            "Description": (
                f"Continuation of {request.request_type} for "
                f"{request.logical_resource_id} ({request.request_id})"
            )[:512],
        }
        if self.config.rule_role_arn:
            kwargs["RoleArn"] = self.config.rule_role_arn
        self.events.put_rule(**kwargs)

    def schedule(
        self,
        request: LifecycleRequest,
        delay_seconds: float,
        attributes: Mapping[str, Any],
        now: Optional[dt.datetime] = None,
    ) -> str:
        """Arm the continuation rule for ``request`` and return its name."""
        if not request.service_token:
            raise ContinuationError("Cannot schedule a continuation without a ServiceToken target")
        name = rule_name_for(request)
        self._put_rule(name, request, DISABLED_SCHEDULE_EXPRESSION, "DISABLED")

        target = {
            "Id": TARGET_ID,
            "Arn": request.service_token,
            "Input": json.dumps(request.to_event(attributes), default=str),
        }
        if self.config.target_role_arn:
            target["RoleArn"] = self.config.target_role_arn
        resp = self.events.put_targets(Rule=name, Targets=[target])
        if resp.get("FailedEntryCount"):
            raise ContinuationError(
                f"Failed to attach continuation target to rule {name}: {resp.get('FailedEntries')}"
            )

        schedule = schedule_expression_for(delay_seconds, now)
        self._put_rule(name, request, schedule, "ENABLED")
        logger.info(
            "Scheduled continuation of %s %s via rule %s at %s",
            request.request_type,
            request.logical_resource_id,
            name,
            schedule,
        )
        return name

    def teardown(self, request: LifecycleRequest) -> None:
        """Remove the continuation rule for ``request``; failures are only logged."""
        name = rule_name_for(request)
        try:
            self.events.remove_targets(Rule=name, Ids=[TARGET_ID])
            self.events.delete_rule(Name=name)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Failed to remove continuation rule %s: %s", name, exc)
