"""In-process gRPC-style app callback server: dispatches invocations, bindings and topic events."""

from __future__ import annotations

import enum
import json
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    BindingEvent,
    BindingInvocationHandler,
    InvocationEvent,
    ServiceError,
    ServiceInvocationHandler,
    Subscription,
    TopicEvent,
    TopicEventHandler,
)
from .topics import TopicRegistrar, TopicSubscription


class TopicEventStatus(enum.IntEnum):
    """Status returned to Dapr for a delivered topic event."""

    SUCCESS = 0
    RETRY = 1
    DROP = 2


class TopicEventError(ServiceError):
    """A topic event could not be handled; ``status`` tells Dapr what to do with it."""

    def __init__(self, message: str, status: TopicEventStatus) -> None:
        super().__init__(message, retry=status is TopicEventStatus.RETRY)
        self.status = status

    @property
    def response(self) -> "TopicEventResponse":
        return TopicEventResponse(status=self.status)


@dataclass
class BindingEventRequest:
    """An event fired by an input binding."""

    name: str = ""
    data: Optional[bytes] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class BindingEventResponse:
    """Data returned from a binding handler."""

    data: Optional[bytes] = None


@dataclass
class HTTPExtension:
    """HTTP details carried along with a service invocation."""

    verb: str = "NONE"
    querystring: str = ""


@dataclass
class InvokeRequest:
    """A service invocation request."""

    method: str = ""
    data: Optional[bytes] = None
    data_type_url: str = ""
    content_type: str = ""
    http_extension: Optional[HTTPExtension] = None


@dataclass
class InvokeResponse:
    """A service invocation response."""

    content_type: str = ""
    data: Optional[bytes] = None
    data_type_url: str = ""


@dataclass
class TopicEventRequest:
    """A message published to a subscribed topic (CloudEvents envelope)."""

    id: str = ""
    source: str = ""
    type: str = ""
    spec_version: str = ""
    data_content_type: str = ""
    data: bytes = b""
    topic: str = ""
    pubsub_name: str = ""
    path: str = ""


@dataclass
class TopicEventResponse:
    """Outcome of a delivered topic event."""

    status: TopicEventStatus = TopicEventStatus.SUCCESS


def _media_type(content_type: str) -> Optional[str]:
    media = content_type.split(";", 1)[0].strip().lower()
    return media or None


def _try_json(data: bytes) -> tuple[bool, Any]:
    try:
        return True, json.loads(data)
    except ValueError:
        return False, None


def _event_data(data: bytes, content_type: str) -> Any:
    if not data:
        return data
    media = _media_type(content_type)
    if media is None:
        return data
    if media == "application/json" or (
        media.startswith("application/") and media.endswith("+json")
    ):
        ok, value = _try_json(data)
        return value if ok else data
    if media == "text/plain":
        return data.decode("utf-8", errors="replace")
    return data


MetadataValue = Union[str, Sequence[str]]


def _first_metadata_value(metadata: Mapping[str, MetadataValue], key: str) -> Optional[str]:
    for name, value in metadata.items():
        if name.lower() != key:
            continue
        if isinstance(value, str):
            return value
        values = list(value)
        if values:
            return values[0]
    return None


class Server:
    """App callback server that Dapr talks to over its gRPC callback protocol."""

    def __init__(self, auth_token: Optional[str] = None) -> None:
        self._invoke_handlers: dict[str, ServiceInvocationHandler] = {}
        self._binding_handlers: dict[str, BindingInvocationHandler] = {}
        self._topic_registrar = TopicRegistrar()
        self._auth_token = (
            auth_token if auth_token is not None else os.environ.get(APP_API_TOKEN_ENV_VAR, "")
        )

    @property
    def topic_registrar(self) -> TopicRegistrar:
        return self._topic_registrar

    def add_service_invocation_handler(
        self, method: str, fn: Optional[ServiceInvocationHandler]
    ) -> None:
        """Register an invocation handler for ``method`` (a leading slash is dropped)."""
        if method in ("", "/"):
            raise ServiceError("service name required")
        method = method.removeprefix("/") if method.startswith("/") else method
        if fn is None:
            raise ServiceError("invocation handler required")
        self._invoke_handlers[method] = fn

    def add_topic_event_handler(
        self, sub: Optional[Subscription], fn: Optional[TopicEventHandler]
    ) -> None:
        """Register a topic event handler for the subscription."""
        if sub is None:
            raise ServiceError("subscription required")
        self._topic_registrar.add_subscription(sub, fn)

    def add_binding_invocation_handler(
        self, name: str, fn: Optional[BindingInvocationHandler]
    ) -> None:
        """Register an input binding handler under ``name``."""
        if not name:
            raise ServiceError("binding name required")
        if fn is None:
            raise ServiceError("binding handler required")
        self._binding_handlers[name] = fn

    def list_input_bindings(self) -> list[str]:
        """Names of the bindings the app wants to be invoked by."""
        return list(self._binding_handlers)

    def on_binding_event(self, request: Optional[BindingEventRequest]) -> BindingEventResponse:
        """Dispatch a binding event to its handler."""
        if request is None:
            raise ServiceError("nil binding event request")
        fn = self._binding_handlers.get(request.name)
        if fn is None:
            raise ServiceError(f"binding not implemented: {request.name}")
        event = BindingEvent(data=request.data, metadata=dict(request.metadata or {}))
        try:
            data = fn(event)
        except Exception as err:
            raise ServiceError(f"error executing {request.name} binding: {err}") from err
        return BindingEventResponse(data=data)

    def _authenticate(self, metadata: Optional[Mapping[str, MetadataValue]]) -> None:
        if not self._auth_token:
            return
        if metadata is None:
            raise ServiceError("authentication failed")
        token = _first_metadata_value(metadata, API_TOKEN_KEY)
        if token is None:
            raise ServiceError("authentication failed. app token key not exist")
        if token != self._auth_token:
            raise ServiceError("authentication failed: app token mismatch")

    def on_invoke(
        self,
        request: Optional[InvokeRequest],
        metadata: Optional[Mapping[str, MetadataValue]] = None,
    ) -> InvokeResponse:
        """Dispatch a service invocation, checking the app token when one is configured."""
        if request is None:
            raise ServiceError("nil invoke request")
        self._authenticate(metadata)
        fn = self._invoke_handlers.get(request.method)
        if fn is None:
            raise ServiceError(f"method not implemented: {request.method}")

        event = InvocationEvent(content_type=request.content_type)
        if request.data is not None:
            event.data = request.data
            event.data_type_url = request.data_type_url
        if request.http_extension is not None:
            event.verb = request.http_extension.verb
            event.query_string = request.http_extension.querystring

        content = fn(event)
        if content is None:
            return InvokeResponse()
        return InvokeResponse(
            content_type=content.content_type,
            data=content.data,
            data_type_url=content.data_type_url,
        )

    def list_topic_subscriptions(self) -> list[TopicSubscription]:
        """Subscriptions the app wants Dapr to deliver."""
        return self._topic_registrar.subscriptions()

    def on_topic_event(self, request: Optional[TopicEventRequest]) -> TopicEventResponse:
        """Dispatch a topic event; raises TopicEventError carrying RETRY or DROP on failure."""
        if request is None or not request.topic or not request.pubsub_name:
            raise TopicEventError("pub/sub and topic names required", TopicEventStatus.DROP)

        registration = self._topic_registrar.lookup(request.pubsub_name, request.topic)
        if registration is None:
            raise TopicEventError(
                "pub/sub and topic combination not configured: "
                f"{request.pubsub_name}/{request.topic}",
                TopicEventStatus.RETRY,
            )

        event = TopicEvent(
            id=request.id,
            source=request.source,
            type=request.type,
            spec_version=request.spec_version,
            data_content_type=request.data_content_type,
            data=_event_data(request.data, request.data_content_type),
            raw_data=request.data,
            topic=request.topic,
            pubsub_name=request.pubsub_name,
        )

        handler = registration.default_handler
        if request.path and request.path in registration.route_handlers:
            handler = registration.route_handlers[request.path]
        if handler is None:
            raise TopicEventError(
                f"route {request.path} for pub/sub and topic combination not configured: "
                f"{request.pubsub_name}/{request.topic}",
                TopicEventStatus.RETRY,
            )

        try:
            handler(event)
        except Exception as err:
            retry = isinstance(err, ServiceError) and err.retry
            status = TopicEventStatus.RETRY if retry else TopicEventStatus.DROP
            raise TopicEventError(str(err), status) from err
        return TopicEventResponse(status=TopicEventStatus.SUCCESS)