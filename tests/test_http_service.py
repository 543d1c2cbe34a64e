import json
import threading
import time
import urllib.request

import pytest
from werkzeug.datastructures import Headers
from werkzeug.test import Client

from daprcallback.common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    Content,
    ServiceError,
    Subscription,
)
from daprcallback.http_service import Server, set_options

EVENT = """{
    "specversion" : "1.0",
    "type" : "com.github.pull.create",
    "source" : "https://github.com/cloudevents/spec/pull",
    "subject" : "123",
    "id" : "A234-1234-1234",
    "time" : "2018-04-05T17:31:00Z",
    "comexampleextension1" : "value",
    "comexampleothervalue" : 5,
    "datacontenttype" : "application/json",
    "data" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="
}"""


@pytest.fixture
def server(monkeypatch):
    monkeypatch.delenv(APP_API_TOKEN_ENV_VAR, raising=False)
    return Server("")


def post(server, route, data, content_type="application/json"):
    return Client(server).post(route, data=data, headers={"Content-Type": content_type})


def topic_func(event):
    if event.data_content_type != "application/json":
        raise ServiceError(f"invalid content type: {event.data_content_type}")


def error_topic_func(event):
    raise ServiceError("error to cause a retry", retry=True)


# bindings


def test_binding_handler_without_handler(server):
    with pytest.raises(ServiceError):
        server.add_binding_invocation_handler("/", None)


def test_binding_handler_without_data(server):
    def handler(event):
        if event.data is not None:
            raise ServiceError("invalid input data")
        return None

    server.add_binding_invocation_handler("/", handler)
    resp = Client(server).post("/", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "{}"


def test_binding_handler_with_data(server):
    server.add_binding_invocation_handler("/", lambda event: b"test")
    resp = post(server, "/", '{"name": "test"}')
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "test"


def test_binding_handler_passes_metadata(server):
    seen = {}

    def handler(event):
        seen.update(event.metadata)
        return event.data

    server.add_binding_invocation_handler("run", handler)
    resp = Client(server).post("/run", data="abc", headers={"X-Custom": "v1"})
    assert resp.get_data(as_text=True) == "abc"
    assert seen["X-Custom"] == "v1"


def test_binding_handler_errors(server):
    with pytest.raises(ServiceError, match="binding route required"):
        server.add_binding_invocation_handler("", lambda e: b"test")

    def failing(event):
        raise ServiceError("intentional error")

    server.add_binding_invocation_handler("errors", failing)
    resp = post(server, "/errors", '{"name": "test"}')
    assert resp.status_code == 500


# invocation


def test_invocation_handler_without_handler(server):
    with pytest.raises(ServiceError):
        server.add_service_invocation_handler("/hello", None)
    with pytest.raises(ServiceError):
        server.add_service_invocation_handler("/", None)


def echo(event):
    if event.data is None or not event.content_type:
        raise ServiceError("nil input")
    return Content(data=event.data, content_type=event.content_type,
                   data_type_url=event.data_type_url)


def test_invocation_handler_with_token(monkeypatch):
    monkeypatch.setenv(APP_API_TOKEN_ENV_VAR, "token")
    s = Server("")
    s.add_service_invocation_handler("/hello", echo)
    data = '{"name": "test", "data": hello}'
    resp = post(s, "/hello", data)
    assert resp.status_code == 203
    resp = Client(s).post(
        "/hello", data=data,
        headers={"Content-Type": "application/json", API_TOKEN_KEY: "token"},
    )
    assert resp.status_code == 200


def test_invocation_handler_with_data(server):
    server.add_service_invocation_handler("/hello", echo)
    data = '{"name": "test", "data": hello}'
    resp = post(server, "/hello", data)
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == data
    assert resp.headers["Content-Type"] == "application/json"


def test_invocation_handler_receives_verb_and_query(server):
    seen = []

    def handler(event):
        seen.append((event.verb, event.query_string))
        return Content(data=event.query_string.encode(), content_type="text/plain")

    server.add_service_invocation_handler("q", handler)
    resp = Client(server).get("/q?a=1&b=2")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "a=1&b=2"
    assert seen == [("GET", "a=1&b=2")]


def test_invocation_handler_without_input_data(server):
    def handler(event):
        if event.data is not None:
            raise ServiceError("nil input")
        return Content()

    server.add_service_invocation_handler("/hello", handler)
    resp = Client(server).post("/hello", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == ""


def test_invocation_handler_with_invalid_route(server):
    server.add_service_invocation_handler("no-slash", lambda e: None)
    with pytest.raises(ServiceError):
        server.add_service_invocation_handler("", lambda e: None)
    server.add_service_invocation_handler("/a", lambda e: None)
    assert post(server, "/b", "").status_code == 404
    assert post(server, "/no-slash", "").status_code == 200


def test_invocation_handler_with_error(server):
    def failing(event):
        raise ServiceError("intentional test error")

    server.add_service_invocation_handler("/error", failing)
    resp = post(server, "/error", "")
    assert resp.status_code == 500
    assert "intentional test error" in resp.get_data(as_text=True)


# service


def test_stopping_unstarted_service(server):
    server.stop()
    assert server.bound_port is None


def test_starting_stopped_service(server):
    server.stop()
    with pytest.raises(ServiceError, match="http: Server closed"):
        server.start()


def test_stopping_started_service(monkeypatch):
    monkeypatch.delenv(APP_API_TOKEN_ENV_VAR, raising=False)
    s = Server("127.0.0.1:0")
    thread = threading.Thread(target=s.start, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while s.bound_port is None and time.monotonic() < deadline:
        time.sleep(0.02)
    port = s.bound_port
    assert port is not None
    with urllib.request.urlopen(f"http://127.0.0.1:{port}/healthz") as resp:
        assert resp.status == 200
    s.stop()
    thread.join(5)
    assert not thread.is_alive()


def test_setting_options():
    headers = Headers()
    set_options(headers)
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert headers["Access-Control-Allow-Methods"] == "POST,OPTIONS"
    assert headers["Access-Control-Allow-Headers"] == "authorization, origin, content-type, accept"
    assert headers["Allow"] == "POST,OPTIONS"


def test_options_request_answers_cors(server):
    server.add_service_invocation_handler("/hello", echo)
    resp = Client(server).open("/hello", method="OPTIONS")
    assert resp.status_code == 200
    assert resp.headers["Allow"] == "POST,OPTIONS"


# topics


def test_event_nil_handler(server):
    sub = Subscription(pubsub_name="messages", topic="test", route="/", metadata={})
    with pytest.raises(ServiceError, match="topic handler required"):
        server.add_topic_event_handler(sub, None)


def test_event_handler(server):
    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/", metadata={}), topic_func)
    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="errors", route="/errors", metadata={}),
        error_topic_func)
    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/other",
                     match='event.type == "other"', priority=1), topic_func)
    server.register_base_handler()

    resp = Client(server).get("/dapr/subscribe", headers={"Accept": "application/json"})
    subs = sorted(json.loads(resp.get_data()), key=lambda s: (s["pubsubname"], s["topic"]))
    assert len(subs) == 2
    assert subs[0]["pubsubname"] == "messages"
    assert subs[0]["topic"] == "errors"
    assert subs[1]["pubsubname"] == "messages"
    assert subs[1]["topic"] == "test"
    assert subs[1].get("route", "") == ""
    assert subs[1]["routes"]["default"] == "/"
    assert subs[1]["routes"]["rules"] == [{"match": 'event.type == "other"', "path": "/other"}]

    ok = post(server, "/", EVENT)
    assert ok.status_code == 200
    assert json.loads(ok.get_data()) == {"status": "SUCCESS"}
    assert post(server, "/", "").status_code == 303
    assert post(server, "/", "not JSON").status_code == 303
    retry = post(server, "/errors", EVENT)
    assert retry.status_code == 200
    assert json.loads(retry.get_data()) == {"status": "RETRY"}


def test_event_handler_drop_status(server):
    def failing(event):
        raise ServiceError("drop it")

    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="t", route="/drop"), failing)
    resp = post(server, "/drop", EVENT)
    assert json.loads(resp.get_data()) == {"status": "DROP"}


HEADER = """
    "specversion" : "1.0",
    "type" : "com.github.pull.create",
    "source" : "https://github.com/cloudevents/spec/pull",
    "subject" : "123",
    "id" : "A234-1234-1234",
    "time" : "2018-04-05T17:31:00Z",
    "comexampleextension1" : "value",
    "comexampleothervalue" : 5,
"""


@pytest.mark.parametrize(
    "body, expected",
    [
        ('{' + HEADER + '"datacontenttype" : "application/json",'
         '"data" : {"message":"hello"}}', {"message": "hello"}),
        ('{' + HEADER + '"datacontenttype" : "application/json",'
         '"data" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="}', {"message": "hello"}),
        ('{' + HEADER + '"datacontenttype" : "application/json",'
         '"data_base64" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="}', {"message": "hello"}),
        ('{' + HEADER + '"datacontenttype" : "application/octet-stream",'
         '"data_base64" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="}', b'{"message":"hello"}'),
        ('{' + HEADER + '"datacontenttype" : "application/json",'
         '"data" : "{\\"message\\":\\"hello\\"}"}', {"message": "hello"}),
    ],
    ids=["json nested", "base64 in data", "json data_base64", "binary data_base64",
         "string escaped"],
)
def test_event_data_handling(server, body, expected):
    received = []
    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/test", metadata={}),
        received.append)
    server.register_base_handler()
    assert post(server, "/test", body).status_code == 200
    assert received[0].data == expected


def test_health_check(server):
    server.register_base_handler()
    assert Client(server).get("/healthz").status_code == 200
    assert Client(server).post("/healthz").status_code == 405


def test_adding_invalid_event_handlers(server):
    with pytest.raises(ServiceError):
        server.add_topic_event_handler(None, topic_func)
    sub = Subscription(metadata={})
    with pytest.raises(ServiceError):
        server.add_topic_event_handler(sub, topic_func)
    sub.topic = "test"
    with pytest.raises(ServiceError):
        server.add_topic_event_handler(sub, topic_func)
    sub.pubsub_name = "messages"
    with pytest.raises(ServiceError, match="handler route name"):
        server.add_topic_event_handler(sub, topic_func)


def test_raw_payload_decode(server):
    received = []
    server.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="testRaw", route="/raw",
                     metadata={"rawPayload": "true"}),
        received.append)
    server.register_base_handler()
    raw = """{
        "datacontenttype" : "application/octet-stream",
        "data_base64" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="
    }"""
    resp = post(server, "/raw", raw)
    assert resp.status_code == 200
    assert received[0].data_content_type == "application/octet-stream"
    assert received[0].data_base64 == "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="