"""Example HTTP callback service with a topic, an echo method and an input binding."""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from .common import BindingEvent, Content, InvocationEvent, ServiceError, Subscription, TopicEvent
from .http_service import Server

log = logging.getLogger(__name__)


def event_handler(event: TopicEvent) -> None:
    """Log a received topic event."""
    log.info(
        "event - PubsubName:%s, Topic:%s, ID:%s, Data: %s",
        event.pubsub_name, event.topic, event.id, event.data,
    )


def echo_handler(event: Optional[InvocationEvent]) -> Content:
    """Return the invocation's data unchanged."""
    if event is None:
        raise ServiceError("invocation parameter required")
    log.info(
        "echo - ContentType:%s, Verb:%s, QueryString:%s, %s",
        event.content_type, event.verb, event.query_string, event.data,
    )
    return Content(
        data=event.data, content_type=event.content_type, data_type_url=event.data_type_url
    )


def run_handler(event: BindingEvent) -> Optional[bytes]:
    """Log a binding event; returns no data."""
    log.info("binding - Data:%s, Meta:%s", event.data, event.metadata)
    return None


def build_service(address: str) -> Server:
    """Create the example service with its handlers registered."""
    service = Server(address)
    service.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="topic1", route="/events"), event_handler
    )
    service.add_service_invocation_handler("/echo", echo_handler)
    service.add_binding_invocation_handler("/run", run_handler)
    return service


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the example callback service.")
    parser.add_argument("--address", default=":8080", help="address to listen on")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        service = build_service(args.address)
    except ServiceError as err:
        log.error("error adding handlers: %s", err)
        return 1
    try:
        service.start()
    except KeyboardInterrupt:
        service.stop()
    except (ServiceError, OSError) as err:
        log.error("error listening: %s", err)
        return 1
    return 0