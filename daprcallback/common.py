"""Shared types for Dapr callback services: events, subscriptions and the service contract."""

from __future__ import annotations

import enum
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

APP_API_TOKEN_ENV_VAR = "APP_API_TOKEN"
API_TOKEN_KEY = "dapr-api-token"


class ServiceError(Exception):
    """Error raised by a callback service.

    Topic event handlers may raise it with ``retry=True`` to ask Dapr to
    redeliver the message; any other failure drops the message.
    """

    def __init__(self, message: str, *, retry: bool = False) -> None:
        super().__init__(message)
        self.retry = retry


class SubscriptionStatus(str, enum.Enum):
    """Handling hint a subscriber returns to Dapr."""

    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    DROP = "DROP"


@dataclass
class TopicEvent:
    """Content of an inbound topic message (a CloudEvents envelope)."""

    id: str = ""
    spec_version: str = ""
    type: str = ""
    source: str = ""
    data_content_type: str = ""
    data: Any = None
    raw_data: Optional[bytes] = None
    data_base64: str = ""
    subject: str = ""
    topic: str = ""
    pubsub_name: str = ""

    def decode(self) -> Any:
        """Parse the raw event payload as JSON; raises ValueError if it is not JSON."""
        return json.loads(self.raw_data or b"")


@dataclass
class InvocationEvent:
    """Input of a service invocation."""

    data: Optional[bytes] = None
    content_type: str = ""
    data_type_url: str = ""
    verb: str = ""
    query_string: str = ""


@dataclass
class Content:
    """Generic data content returned by an invocation handler."""

    data: Optional[bytes] = None
    content_type: str = ""
    data_type_url: str = ""


@dataclass
class BindingEvent:
    """Input of a binding invocation handler."""

    data: Optional[bytes] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class Subscription:
    """A single topic subscription."""

    pubsub_name: str = ""
    topic: str = ""
    metadata: Optional[dict[str, str]] = None
    route: str = ""
    match: str = ""
    priority: int = 0
    disable_topic_validation: bool = False


@dataclass
class SubscriptionResponse:
    """Response body telling Dapr how a message was handled."""

    status: SubscriptionStatus

    def to_dict(self) -> dict[str, str]:
        """Return the JSON-ready form of the response."""
        return {"status": SubscriptionStatus(self.status).value}


ServiceInvocationHandler = Callable[[InvocationEvent], Optional[Content]]
TopicEventHandler = Callable[[TopicEvent], None]
BindingInvocationHandler = Callable[[BindingEvent], Optional[bytes]]


class Service(ABC):
    """A Dapr callback service."""

    @abstractmethod
    def add_service_invocation_handler(self, name: str, fn: ServiceInvocationHandler) -> None:
        """Register a service invocation handler under ``name``."""

    @abstractmethod
    def add_topic_event_handler(self, sub: Subscription, fn: TopicEventHandler) -> None:
        """Register a topic event handler for the subscription."""

    @abstractmethod
    def add_binding_invocation_handler(self, name: str, fn: BindingInvocationHandler) -> None:
        """Register an input binding handler under ``name``."""

    @abstractmethod
    def start(self) -> None:
        """Start serving; blocks while the service runs."""

    @abstractmethod
    def stop(self) -> None:
        """Stop a previously started service."""

    @abstractmethod
    def graceful_stop(self) -> None:
        """Stop a previously started service, letting pending work finish."""