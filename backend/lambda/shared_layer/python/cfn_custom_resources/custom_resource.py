"""cfn_custom_resources.custom_resource — Request lifecycle for custom resources.

A concrete resource implements the ``ResourceHandler`` contract. The
``CustomResource`` engine wraps it with:

- per-instance serialization (``RequestQueue``),
- the continuation protocol (``ContinuationScheduler``),
- the single terminal status report (``ResponseReporter``).

Flow for one event:
    submit -> queue -> handler operation
        -> Response              : report SUCCESS, tear down continuation rule if any
        -> ContinuationRequired  : arm rule, report nothing
        -> exception             : report FAILED with the exception message
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple, Union

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
from .continuation import ContinuationScheduler
from .request_queue import RequestQueue

logger = logging.getLogger(__name__)

# Result status for an invocation that handed off to a continuation. Never sent to CloudFormation.
CONTINUED = "CONTINUED"


@dataclass
class Response:
    physical_resource_id: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None


@dataclass
class ContinuationRequired:
    delay_seconds: int
    attributes: Dict[str, Any] = field(default_factory=dict)


Outcome = Union[Response, ContinuationRequired]


@dataclass
class ProcessResult:
    status: str
    reason: Optional[str] = None
    physical_resource_id: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None


class ResourceHandler(Protocol):
    """Operations a concrete custom resource provides.

    Every operation must be safe to call again with the same physical id and
    continuation attributes; the engine never retries on its own.
    """

    async def create_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Outcome: ...

    async def update_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        old_params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Outcome: ...

    async def delete_resource(
        self,
        physical_resource_id: str,
        params: Dict[str, Any],
        continuation_attributes: Optional[Dict[str, Any]] = None,
    ) -> Outcome: ...


def default_physical_resource_id(request: LifecycleRequest) -> str:
    return "/".join([request.stack_id, request.logical_resource_id, request.request_id])


class CustomResource:
    def __init__(
        self,
        handler: ResourceHandler,
        scheduler: Optional[ContinuationScheduler] = None,
        reporter: Optional[ResponseReporter] = None,
        queue: Optional[RequestQueue] = None,
    ):
        self.handler = handler
        self.scheduler = scheduler or ContinuationScheduler()
        self.reporter = reporter or ResponseReporter()
        self.queue = queue or RequestQueue()

    def handle_request(self, request: LifecycleRequest) -> asyncio.Future:
        """Queue ``request`` behind any in-flight request and return its result future."""
        return self.queue.submit(lambda: self.process_request(request))

    def _dispatch(self, request: LifecycleRequest, physical_resource_id: str) -> Awaitable[Outcome]:
        continuation_attributes = request.continuation_attributes
        operations: Dict[str, Callable[[], Awaitable[Outcome]]] = {
            CREATE: lambda: self.handler.create_resource(
                physical_resource_id, request.properties, continuation_attributes
            ),
            UPDATE: lambda: self.handler.update_resource(
                # The old properties may follow a different schema; the template
                # author is responsible for compatible changes.
                physical_resource_id,
                request.properties,
                request.old_properties,
                continuation_attributes,
            ),
            DELETE: lambda: self.handler.delete_resource(
                physical_resource_id, request.properties, continuation_attributes
            ),
        }
        return operations[request.request_type]()

    async def process_request(self, request: LifecycleRequest) -> ProcessResult:
        started = time.monotonic()
        physical_resource_id = request.physical_resource_id or default_physical_resource_id(request)

        status = FAILED
        reason: Optional[str] = None
        response: Optional[Response] = None
        try:
            outcome = await self._dispatch(request, physical_resource_id)
            if isinstance(outcome, ContinuationRequired):
                self.scheduler.schedule(request, outcome.delay_seconds, outcome.attributes)
                result = ProcessResult(status=CONTINUED, physical_resource_id=physical_resource_id)
                self._log_outcome(request, result, started)
                return result
            response = outcome or Response()
            status = SUCCESS
        except Exception as exc:
            logger.warning("Uncaught error when handling request %r: %s", request.request_type, exc)
            reason = str(exc) or type(exc).__name__

        response_physical_resource_id = (response and response.physical_resource_id) or physical_resource_id
        attributes = response.attributes if response else None
        try:
            self.reporter.send(request, status, reason, response_physical_resource_id, attributes)
        finally:
            if request.is_continuation:
                self.scheduler.teardown(request)

        result = ProcessResult(
            status=status,
            reason=reason,
            physical_resource_id=response_physical_resource_id,
            attributes=attributes,
        )
        self._log_outcome(request, result, started)
        return result

    @staticmethod
    def _log_outcome(request: LifecycleRequest, result: ProcessResult, started: float) -> None:
        payload = {
            "request_id": request.request_id,
            "request_type": request.request_type,
            "logical_resource_id": request.logical_resource_id,
            "resource_type": request.resource_type,
            "continuation": request.is_continuation,
            "status": result.status,
            "reason": result.reason or "",
            "physical_resource_id": result.physical_resource_id or "",
            "latency_ms": int(max(0.0, time.monotonic() - started) * 1000),
        }
        logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))


class ResourceRegistry:
    """Engines keyed by resource instance (stack id, logical id).

    Lives for the lifetime of the Lambda container so warm invocations reuse
    clients and every resource instance keeps its own request queue.
    """

    def __init__(
        self,
        factory: Callable[[LifecycleRequest], CustomResource],
        reporter: Optional[ResponseReporter] = None,
    ):
        self._factory = factory
        self._engines: Dict[Tuple[str, str], CustomResource] = {}
        self.reporter = reporter or ResponseReporter()

    def engine_for(self, request: LifecycleRequest) -> CustomResource:
        key = (request.stack_id, request.logical_resource_id)
        engine = self._engines.get(key)
        if engine is None:
            engine = self._factory(request)
            self._engines[key] = engine
        return engine

    async def submit(self, request: LifecycleRequest) -> ProcessResult:
        return await self.engine_for(request).handle_request(request)

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Entry point for ``lambda_handler``: parse, process, summarize.

        A malformed event still gets a FAILED report when it carries a
        ResponseURL, so CloudFormation does not wait for its timeout.
        """
        try:
            request = LifecycleRequest.from_event(event)
        except InvalidRequestError as exc:
            self._reject(event, exc)
            raise
        logger.info(
            "Received %s%s for %s (%s)",
            request.request_type,
            " continuation" if request.is_continuation else "",
            request.logical_resource_id,
            request.request_id,
        )
        result = asyncio.run(self.submit(request))
        return {"Status": result.status, "PhysicalResourceId": result.physical_resource_id}

    def _reject(self, event: Any, exc: InvalidRequestError) -> None:
        if not isinstance(event, Mapping) or not event.get("ResponseURL"):
            logger.error("Dropping malformed event without ResponseURL: %s", exc)
            return

        def text(name: str) -> str:
            value = event.get(name)
            return value if isinstance(value, str) else ""

        partial = LifecycleRequest(
            request_type=text("RequestType"),
            response_url=text("ResponseURL"),
            stack_id=text("StackId"),
            request_id=text("RequestId"),
            logical_resource_id=text("LogicalResourceId"),
            physical_resource_id=text("PhysicalResourceId"),
        )
        physical_resource_id = partial.physical_resource_id or "/".join(
            part for part in (partial.stack_id, partial.logical_resource_id, partial.request_id) if part
        )
        logger.warning("Rejecting malformed event: %s", exc)
        try:
            self.reporter.send(partial, FAILED, str(exc), physical_resource_id or "invalid-request")
        except ResponseDeliveryError as delivery_exc:
            logger.error("Could not report rejection of malformed event: %s", delivery_exc)
