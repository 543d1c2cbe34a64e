"""Topic subscriptions, routing rules and the registrar that collects them."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from .common import ServiceError, Subscription, TopicEventHandler


@dataclass
class TopicRule:
    """A single routing rule: events matching ``match`` go to ``path``."""

    match: str
    path: str
    priority: int = 0

    def to_dict(self) -> dict[str, str]:
        return {"match": self.match, "path": self.path}


@dataclass
class TopicRoutes:
    """Default route plus ordered routing rules."""

    rules: list[TopicRule] = field(default_factory=list)
    default: str = ""
    _priorities: set[int] = field(default_factory=set, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form, leaving out empty fields."""
        out: dict[str, Any] = {}
        if self.rules:
            out["rules"] = [rule.to_dict() for rule in self.rules]
        if self.default:
            out["default"] = self.default
        return out


@dataclass
class TopicSubscription:
    """Internal representation of one topic subscription."""

    pubsub_name: str
    topic: str
    route: str = ""
    routes: Optional[TopicRoutes] = None
    metadata: Optional[dict[str, str]] = None

    def set_metadata(self, metadata: Optional[dict[str, str]]) -> None:
        """Set the metadata; raises ServiceError if it is already set."""
        if self.metadata is not None:
            raise ServiceError(
                f"subscription for topic {self.topic} on pubsub {self.pubsub_name} "
                "already has metadata set"
            )
        self.metadata = metadata

    def set_default_route(self, path: str) -> None:
        """Set the default route; raises ServiceError if one is already set."""
        if self.routes is None:
            if self.route:
                raise self._route_taken(self.route)
            self.route = path
        else:
            if self.routes.default:
                raise self._route_taken(self.routes.default)
            self.routes.default = path

    def add_routing_rule(self, path: str, match: str, priority: int) -> None:
        """Add a routing rule, keeping rules ordered by priority (low to high)."""
        if not path:
            raise ServiceError("path is required for routing rules")
        if self.routes is None:
            self.routes = TopicRoutes(default=self.route)
            self.route = ""
        if priority > 0 and priority in self.routes._priorities:
            raise ServiceError(
                f"subscription for topic {self.topic} on pubsub {self.pubsub_name} "
                f"already has a routing rule with priority {priority}"
            )
        self.routes.rules.append(TopicRule(match=match, path=path, priority=priority))
        self.routes.rules.sort(key=lambda rule: rule.priority)
        if priority > 0:
            self.routes._priorities.add(priority)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form, leaving out empty optional fields."""
        out: dict[str, Any] = {"pubsubname": self.pubsub_name, "topic": self.topic}
        if self.route:
            out["route"] = self.route
        if self.routes is not None:
            out["routes"] = self.routes.to_dict()
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    def _route_taken(self, existing: str) -> ServiceError:
        return ServiceError(
            f"subscription for topic {self.topic} on pubsub {self.pubsub_name} "
            f"already has route {existing}"
        )


@dataclass
class TopicRegistration:
    """A subscription together with its default and per-route handlers."""

    subscription: TopicSubscription
    default_handler: Optional[TopicEventHandler] = None
    route_handlers: dict[str, TopicEventHandler] = field(default_factory=dict)


class TopicRegistrar(Mapping[str, TopicRegistration]):
    """Registrations keyed by ``<pubsubname>-<topic>``, or by pubsub name alone
    when topic validation is disabled."""

    def __init__(self) -> None:
        self._registrations: dict[str, TopicRegistration] = {}

    def __getitem__(self, key: str) -> TopicRegistration:
        return self._registrations[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)

    def add_subscription(self, sub: Subscription, fn: Optional[TopicEventHandler]) -> None:
        """Register ``fn`` for the subscription; raises ServiceError on invalid input."""
        if not sub.topic:
            raise ServiceError("topic name required")
        if not sub.pubsub_name:
            raise ServiceError("pub/sub name required")
        if fn is None:
            raise ServiceError("topic handler required")

        key = sub.pubsub_name if sub.disable_topic_validation else f"{sub.pubsub_name}-{sub.topic}"

        registration = self._registrations.get(key)
        if registration is None:
            subscription = TopicSubscription(sub.pubsub_name, sub.topic)
            subscription.set_metadata(sub.metadata)
            registration = TopicRegistration(subscription=subscription)
            self._registrations[key] = registration

        if sub.match:
            registration.subscription.add_routing_rule(sub.route, sub.match, sub.priority)
        else:
            registration.subscription.set_default_route(sub.route)
            registration.default_handler = fn
        registration.route_handlers[sub.route] = fn

    def lookup(self, pubsub_name: str, topic: str) -> Optional[TopicRegistration]:
        """Find the registration for a pubsub/topic pair, falling back to the
        pubsub-wide registration; None if neither exists."""
        registration = self._registrations.get(f"{pubsub_name}-{topic}")
        if registration is None:
            registration = self._registrations.get(pubsub_name)
        return registration

    def subscriptions(self) -> list[TopicSubscription]:
        """All registered subscriptions."""
        return [registration.subscription for registration in self._registrations.values()]