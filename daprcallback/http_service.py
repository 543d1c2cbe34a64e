"""HTTP app callback server for Dapr, served as a WSGI application."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

from werkzeug.datastructures import Headers
from werkzeug.serving import BaseWSGIServer, make_server
from werkzeug.wrappers import Request, Response

from .common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    BindingEvent,
    BindingInvocationHandler,
    InvocationEvent,
    Service,
    ServiceError,
    ServiceInvocationHandler,
    Subscription,
    SubscriptionStatus,
    TopicEventHandler,
)
from .http_events import parse_topic_event, status_body
from .topics import TopicRegistrar

PUB_SUB_HANDLER_SUCCESS_STATUS_CODE = 200
PUB_SUB_HANDLER_RETRY_STATUS_CODE = 500
PUB_SUB_HANDLER_DROP_STATUS_CODE = 303

_View = Callable[[Request], Response]


@dataclass(frozen=True)
class _Route:
    view: _View
    methods: Optional[frozenset[str]] = None


def set_options(headers: MutableMapping[str, str] | Headers) -> None:
    """Set the CORS headers answered to an OPTIONS request."""
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "authorization, origin, content-type, accept"
    headers["Allow"] = "POST,OPTIONS"


def _error(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status, content_type="text/plain; charset=utf-8")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def _with_options(view: _View) -> _View:
    def handle(request: Request) -> Response:
        if request.method == "OPTIONS":
            response = Response(status=200)
            set_options(response.headers)
            return response
        return view(request)

    return handle


def _body(request: Request) -> Optional[bytes]:
    if request.content_length and request.content_length > 0:
        return request.get_data()
    return None


class Server(Service):
    """HTTP server dispatching Dapr callbacks to registered handlers."""

    def __init__(self, address: str = "", auth_token: Optional[str] = None) -> None:
        self.address = address
        self._routes: dict[str, _Route] = {}
        self._topic_registrar = TopicRegistrar()
        self._auth_token = (
            auth_token if auth_token is not None else os.environ.get(APP_API_TOKEN_ENV_VAR, "")
        )
        self._lock = threading.Lock()
        self._http_server: Optional[BaseWSGIServer] = None
        self._stopped = False

    @property
    def topic_registrar(self) -> TopicRegistrar:
        return self._topic_registrar

    @property
    def bound_port(self) -> Optional[int]:
        """Port the running server listens on, or None when it is not running."""
        server = self._http_server
        return server.server_port if server is not None else None

    def _add_route(self, path: str, view: _View, methods: Optional[Iterable[str]] = None) -> None:
        # The first route registered for a path wins, as in a mux that matches in order.
        allowed = frozenset(methods) if methods is not None else None
        self._routes.setdefault(path, _Route(view, allowed))

    def add_service_invocation_handler(
        self, route: str, fn: Optional[ServiceInvocationHandler]
    ) -> None:
        """Serve ``fn`` at ``route`` (a leading slash is added if missing)."""
        if route in ("", "/"):
            raise ServiceError("service route required")
        if fn is None:
            raise ServiceError("invocation handler required")
        if not route.startswith("/"):
            route = "/" + route

        def view(request: Request) -> Response:
            if self._auth_token:
                token = request.headers.get(API_TOKEN_KEY, "")
                if not token or token != self._auth_token:
                    return _error("authentication failed.", 203)
            event = InvocationEvent(
                verb=request.method,
                query_string=request.query_string.decode("latin-1"),
                content_type=request.headers.get("Content-Type", ""),
                data=_body(request),
            )
            try:
                content = fn(event)
            except Exception as err:
                return _error(str(err), 500)
            response = Response(status=200)
            response.headers.pop("Content-Type", None)
            if content is not None and content.data is not None:
                if content.content_type:
                    response.headers["Content-Type"] = content.content_type
                response.set_data(content.data)
            return response

        self._add_route(route, _with_options(view))

    def add_binding_invocation_handler(
        self, route: str, fn: Optional[BindingInvocationHandler]
    ) -> None:
        """Serve an input binding handler at ``route`` (a leading slash is added if missing)."""
        if not route:
            raise ServiceError("binding route required")
        if fn is None:
            raise ServiceError("binding handler required")
        if not route.startswith("/"):
            route = "/" + route

        def view(request: Request) -> Response:
            event = BindingEvent(data=_body(request), metadata=dict(request.headers.items()))
            try:
                out = fn(event)
            except Exception as err:
                return _error(str(err), 500)
            if out is None:
                out = b"{}"
            return Response(out, status=200, content_type="application/json")

        self._add_route(route, _with_options(view))

    def add_topic_event_handler(
        self, sub: Optional[Subscription], fn: Optional[TopicEventHandler]
    ) -> None:
        """Register a topic handler and serve it at the subscription's route."""
        if sub is None:
            raise ServiceError("subscription required")
        if not sub.route:
            raise ServiceError("handler route name")
        self._topic_registrar.add_subscription(sub, fn)
        handler = fn

        def view(request: Request) -> Response:
            if not request.content_length:
                return _error("nil content", PUB_SUB_HANDLER_DROP_STATUS_CODE)
            try:
                event = parse_topic_event(request.get_data(), sub)
            except ServiceError as err:
                return _error(str(err), PUB_SUB_HANDLER_DROP_STATUS_CODE)
            try:
                handler(event)
            except Exception as err:
                retry = isinstance(err, ServiceError) and err.retry
                status = SubscriptionStatus.RETRY if retry else SubscriptionStatus.DROP
            else:
                status = SubscriptionStatus.SUCCESS
            return Response(status_body(status), status=200, content_type="application/json")

        self._add_route(sub.route, _with_options(view))

    def register_base_handler(self) -> None:
        """Serve the subscription list and the health check."""

        def subscribe(request: Request) -> Response:
            subs = [s.to_dict() for s in self._topic_registrar.subscriptions()]
            return Response(json.dumps(subs) + "\n", status=200, content_type="application/json")

        def health(request: Request) -> Response:
            response = Response(status=200)
            response.headers.pop("Content-Type", None)
            return response

        self._add_route("/dapr/subscribe", subscribe)
        self._add_route("/healthz", health, methods=("GET",))

    def _dispatch(self, request: Request) -> Response:
        route = self._routes.get(request.path)
        if route is None:
            return _error("404 page not found", 404)
        if route.methods is not None and request.method not in route.methods:
            response = Response(status=405)
            response.headers.pop("Content-Type", None)
            return response
        return route.view(request)

    def wsgi_app(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        """WSGI entry point."""
        response = self._dispatch(Request(environ))
        return response(environ, start_response)

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        return self.wsgi_app(environ, start_response)

    def _host_port(self) -> tuple[str, int]:
        host, sep, port_text = self.address.rpartition(":")
        if not sep:
            host, port_text = self.address, ""
        host = host.strip("[]") or "0.0.0.0"
        try:
            port = int(port_text) if port_text else 80
        except ValueError:
            raise ServiceError(f"invalid address: {self.address}") from None
        return host, port

    def start(self) -> None:
        """Register base handlers and serve; blocks until stopped."""
        self.register_base_handler()
        host, port = self._host_port()
        with self._lock:
            if self._stopped:
                raise ServiceError("http: Server closed")
            server = make_server(host, port, self, threaded=True)
            self._http_server = server
        try:
            server.serve_forever()
        finally:
            server.server_close()
            with self._lock:
                self._http_server = None

    def stop(self) -> None:
        """Stop a started service; a stopped service cannot be started again."""
        with self._lock:
            self._stopped = True
            server = self._http_server
        if server is not None:
            server.shutdown()

    def graceful_stop(self) -> None:
        """Same as stop: in-flight requests are let finish."""
        self.stop()