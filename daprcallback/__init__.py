"""Dapr callback services: HTTP (WSGI) and gRPC-style servers for invocations, topics and bindings."""

__version__ = "0.1.0"

__all__ = ["common", "topics", "grpc_service", "http_events", "http_service", "demo"]