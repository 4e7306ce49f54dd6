"""
Shared pytest fixtures for the entrair tests. Nothing here touches the network.
"""

import configparser
import os
import tempfile
import time
import urllib.parse
from unittest.mock import Mock

import pytest
import requests

# keep debug.log and error.log out of the working tree
os.environ.setdefault("ENTRAIR_LOG_DIR", tempfile.mkdtemp(prefix="entrair-logs-"))

from entrair.auth import AccessToken
from entrair.fetch import FetchContext, PaginationDriver, RequestExecutor

GRAPH = "https://graph.microsoft.com/beta/"


def make_response(status=200, body=None, reason="OK"):
    response = Mock()
    response.status_code = status
    response.reason = reason
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body if body is not None else {}
    return response


def page(records, next_link=None):
    body = {"value": records}
    if next_link:
        body["@odata.nextLink"] = next_link
    return make_response(200, body)


def error(status, code="Error", message="failed"):
    return make_response(status, {"error": {"code": code, "message": message}}, reason=code)


class FakeTokenProvider:
    """
    Hands out numbered tokens and records how it was asked. Like msal, a
    silent request returns the cached token until ``expire`` is called.
    """

    def __init__(self, fail_on_interactive=False):
        self.calls = []
        self.issued = 0
        self.current = None
        self.fail_on_interactive = fail_on_interactive

    def get_token(self, tenant_id=None, login_hint=None, force_refresh=False, interactive=False, audience="graph"):
        from entrair.errors import TokenUnavailable

        self.calls.append({"tenant_id": tenant_id, "force_refresh": force_refresh,
                           "interactive": interactive, "audience": audience})
        if interactive and self.fail_on_interactive:
            raise TokenUnavailable("user cancelled sign in")
        if self.current is None or force_refresh or interactive:
            self.issued += 1
            self.current = AccessToken(f"token-{self.issued}", time.time() + 3600, "analyst@contoso.com")
        return self.current

    def expire(self):
        self.current = None

    @property
    def interactive_calls(self):
        return [x for x in self.calls if x["interactive"]]

    @property
    def forced_calls(self):
        return [x for x in self.calls if x["force_refresh"] and not x["interactive"]]


class SequenceSession:
    """Returns queued responses in order. Exceptions in the queue are raised."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {})})
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def urls(self):
        return [x["url"] for x in self.calls]


class RouteSession:
    """
    Routes requests by URL path relative to the Graph base. A route is a
    response, a list of responses consumed in order, or a callable taking
    the unquoted URL.
    """

    def __init__(self, routes, base=GRAPH):
        self.routes = dict(routes)
        self.base = base
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {})})
        path = url.split("?")[0][len(self.base):]
        if path not in self.routes:
            return error(404, "Request_ResourceNotFound", f"no route for {path}")
        route = self.routes[path]
        if callable(route) and not isinstance(route, Mock):
            return route(urllib.parse.unquote(url))
        if isinstance(route, list):
            return route.pop(0)
        return route

    def paths(self):
        return [x["url"].split("?")[0][len(self.base):] for x in self.calls]


@pytest.fixture
def token_provider():
    return FakeTokenProvider()


@pytest.fixture
def context(token_provider):
    return FetchContext(token_provider, "11111111-2222-3333-4444-555555555555").authenticate()


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr("entrair.fetch.time.sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


@pytest.fixture
def make_driver():
    def _make(session, **kwargs):
        reset = kwargs.pop("reset_retries_per_page", False)
        return PaginationDriver(RequestExecutor(session=session, **kwargs), reset_retries_per_page=reset)
    return _make


@pytest.fixture
def make_config():
    def _make(text=""):
        config = configparser.ConfigParser()
        config.read_string("[config]\ntenant=11111111-2222-3333-4444-555555555555\nus_government=false\napi_version=beta\n" + text)
        return config
    return _make


@pytest.fixture
def connection_error():
    return requests.exceptions.ConnectionError("connection reset by peer")
