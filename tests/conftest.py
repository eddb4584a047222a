"""
Shared fixtures: a scripted Transport stand-in and a file logger under tmp_path.

Run with: python -m pytest tests -v
"""

import os
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from Logger import Logger


# =============================================================================
# MOCK CLASSES
# =============================================================================

@dataclass
class Call:
    method: str
    url: str
    data: Optional[Dict[str, Any]] = None
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    params: Any = None


class FakeTransport:
    """Answers ``send`` from per-(method, url) queues and records every call.

    A queued result may be a payload, an exception instance (raised) or a
    callable taking the Call. The last queued result of a route is reused.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self.routes: Dict[tuple, list] = {}
        self.route_cookies: Dict[tuple, Dict[str, str]] = {}
        self.cookies: Dict[str, str] = {}
        self._lock = threading.Lock()

    def on(self, method, url, *results, cookies=None):
        self.routes.setdefault((method, url), []).extend(results or [None])
        if cookies:
            self.route_cookies[(method, url)] = cookies
        return self

    def send(self, method, url, *, data=None, json=None, headers=None, params=None, decode=True):
        call = Call(method, url, data, json, dict(headers or {}), params)
        with self._lock:
            self.calls.append(call)
            queue = self.routes.get((method, url))
            if not queue:
                raise AssertionError(f"unexpected request {method} {url}")
            result = queue.pop(0) if len(queue) > 1 else queue[0]
            self.cookies.update(self.route_cookies.get((method, url), {}))

        if isinstance(result, BaseException):
            raise result
        if callable(result):
            result = result(call)
        return 200, result

    def get_cookie(self, name):
        return self.cookies.get(name, "")

    def load_cookies(self, cookies):
        self.cookies.update(cookies)

    def export_cookies(self):
        return dict(self.cookies)

    def calls_to(self, method, url):
        return [call for call in self.calls if call.method == method and call.url == url]


def token_payload(suffix, expires_at="2099-01-01T00:00:00.000Z", account_id="acct-1"):
    return {
        "access_token": f"access-{suffix}",
        "refresh_token": f"refresh-{suffix}",
        "expires_at": expires_at,
        "account_id": account_id,
        "client_id": "game-client",
    }


@pytest.fixture
def logger(tmp_path):
    return Logger("tests", str(tmp_path / "logs" / "epic"))


@pytest.fixture
def transport():
    return FakeTransport()
