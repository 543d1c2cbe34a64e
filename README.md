# daprcallback

The application side of a Dapr deployment: the callback service the Dapr
sidecar calls when another service invokes yours, when a message arrives on a
pub/sub topic, or when an input binding fires.

Two servers share one handler model:

- `daprcallback.http_service.Server` — a WSGI application built on Werkzeug.
  `start()` serves it on the configured address and blocks until `stop()`.
- `daprcallback.grpc_service.Server` — the app-callback operations
  (`on_invoke`, `on_topic_event`, `on_binding_event`,
  `list_topic_subscriptions`, `list_input_bindings`) as plain Python methods
  taking and returning dataclasses (`InvokeRequest`, `TopicEventRequest`,
  `BindingEventRequest`, ...).

## Installing

```
pip install daprcallback
```

## Handlers

Handlers take a single event argument:

- `add_service_invocation_handler(route, fn)` — `fn` receives an
  `InvocationEvent` (`data`, `content_type`, `data_type_url`, `verb`,
  `query_string`) and returns a `Content` or `None`.
- `add_topic_event_handler(sub, fn)` — `sub` is a `Subscription`
  (`pubsub_name`, `topic`, `route`, optional `match`, `priority`, `metadata`,
  `disable_topic_validation`); `fn` receives a `TopicEvent`. Returning
  normally acknowledges the message. Raising `ServiceError(..., retry=True)`
  asks Dapr to redeliver it; any other exception drops it.
- `add_binding_invocation_handler(route, fn)` — `fn` receives a
  `BindingEvent` (`data`, `metadata`) and returns the response bytes or
  `None`.

Invalid registrations (empty route or name, missing handler, missing topic or
pub/sub name) raise `ServiceError`.

```python
from daprcallback.common import Content, ServiceError, Subscription
from daprcallback.http_service import Server

def echo(event):
    return Content(data=event.data, content_type=event.content_type)

def on_order(event):
    if event.data is None:
        raise ServiceError("empty order", retry=False)

service = Server(":8080")
service.add_service_invocation_handler("echo", echo)
service.add_topic_event_handler(
    Subscription(pubsub_name="messages", topic="orders", route="/orders"), on_order
)
service.start()
```

### Routing rules

Several subscriptions to the same pub/sub and topic share one entry: one
default route (a subscription without `match`) plus routing rules (a
subscription with `match`). Rules are kept ordered by `priority`, lowest
first, in the order they were added for equal priorities. A repeated non-zero
priority, a second default route, or a rule without a route raises
`ServiceError`. The registry itself is `daprcallback.topics.TopicRegistrar`.

### Topic events

A `TopicEvent` carries the CloudEvent envelope fields, the decoded `data`
and the raw payload bytes in `raw_data`; `TopicEvent.decode()` parses the raw
bytes as JSON.

Over HTTP, `data` is the envelope's JSON `data` value; a JSON string is in
turn parsed as JSON, or as base64-encoded JSON, when that works. A
`data_base64` field is decoded to bytes, and to JSON when the content type is
`application/json`. The helpers are `daprcallback.http_events.parse_topic_event`
and `decode_event_data`.

With the gRPC-style server, `data` is parsed as JSON for `application/json`
and `application/*+json`, decoded as text for `text/plain`, and left as bytes
otherwise.

## HTTP server details

- `register_base_handler()` (called by `start()`) adds `/dapr/subscribe`,
  which lists the subscriptions as JSON, and `/healthz` (GET only).
- The server object is itself a WSGI callable (`wsgi_app`), so it can be run
  under any WSGI server; call `register_base_handler()` first in that case.
- `OPTIONS` requests to handler routes are answered with CORS headers
  (`set_options`).
- Topic routes answer 303 for an empty or malformed envelope, otherwise 200
  with a body of `{"status":"SUCCESS"}`, `"RETRY"` or `"DROP"`.
- A binding handler that returns `None` produces the body `{}`.
- `stop()` shuts the server down; a stopped server cannot be started again.

## gRPC-style server details

`on_topic_event` returns a `TopicEventResponse` with status `SUCCESS`, or
raises `TopicEventError` whose `status` is `RETRY` (unknown pub/sub/topic or
route, retryable handler error) or `DROP` (missing names, other handler
errors). `on_invoke(request, metadata)` and `on_binding_event` raise
`ServiceError` for unknown methods or bindings.

## App API token

When the environment variable `APP_API_TOKEN` is set (or `auth_token` is
passed to a server), service invocation requests must carry the same value in
the `dapr-api-token` header (HTTP, refused with status 203) or metadata key
(gRPC-style server, refused with `ServiceError`).

## Example service

`daprcallback.demo` builds a service with an echo handler on `/echo`, a
subscription to `messages`/`topic1` routed to `/events`, and an input binding
on `/run`. `build_service(address)` returns it; to run it:

```
daprcallback-demo --address :8080
```

## What this package does not do

- The gRPC-style server does not open a network listener or speak the gRPC
  wire protocol; its methods must be wired to a transport by the caller.
- There is no actor runtime: actor registration and the actor invocation,
  reminder and timer endpoints are not served.
- There is no client for calling the Dapr sidecar (state, publishing, output
  bindings); this package only receives callbacks.