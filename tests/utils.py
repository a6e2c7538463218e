# tests/utils.py
from __future__ import annotations

import time
from threading import Lock

import requests


class FakeFetcher:
    """Stands in for the HTTP fetch: records every URL and returns fixed bytes."""

    def __init__(self, body: bytes = b"\x89PNG", delay: float = 0.0, fail: set[str] | None = None):
        self.body = body
        self.delay = delay
        self.fail = fail or set()
        self.calls: list[str] = []
        self._lock = Lock()

    def __call__(self, url: str) -> bytes:
        with self._lock:
            self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        if url in self.fail:
            raise requests.HTTPError(f"404 Client Error: Not Found for url: {url}")
        return self.body


def html_page(body: str) -> str:
    return f"<!DOCTYPE html><html><head><title>t</title></head><body>{body}</body></html>"
