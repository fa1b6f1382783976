"""Proxy host: FastAPI app, request forwarding, and admin auth."""

from coldstart.proxy.api import create_app
from coldstart.proxy.forwarder import RequestForwarder

__all__ = ["RequestForwarder", "create_app"]
