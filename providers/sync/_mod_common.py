# /providers/sync/_mod_common.py
# StashMirror shared HTTP helpers: hit-counting session, retry/backoff, safe JSON.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import json
import time
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

import requests

from sm_platform.errors import TransientFetchError

EmitFn = Callable[[str, dict[str, Any]], None]
FeatureLabelFn = Callable[[str, str, Mapping[str, Any]], str]

UA = "StashMirror/1.0"


def default_feature_label(method: str, url: str, kw: Mapping[str, Any]) -> str:
    return f"{method.lower()}:{url.rsplit('/', 1)[-1] or 'root'}"


class HitSession(requests.Session):
    def __init__(
        self,
        provider: str,
        emit: EmitFn | None = None,
        feature_label: FeatureLabelFn | None = None,
    ):
        super().__init__()
        self._provider = provider
        self._emit = emit
        self._label = feature_label or default_feature_label
        self.hits: Counter[str] = Counter()

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:  # type: ignore[override]
        try:
            return super().request(method, url, **kwargs)
        finally:
            try:
                feature = self._label(method.upper(), url, kwargs)
            except (TypeError, ValueError, AttributeError):
                feature = "unknown"
            self.hits[feature] += 1
            if self._emit:
                self._emit("api:hit", {"provider": self._provider, "feature": feature})


def build_session(
    provider: str,
    *,
    api_key: str = "",
    emit: EmitFn | None = None,
    feature_label: FeatureLabelFn | None = None,
) -> HitSession:
    s = HitSession(provider, emit, feature_label)
    s.headers.update(
        {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": UA,
        }
    )
    if api_key:
        s.headers["ApiKey"] = api_key
    return s


def safe_json(resp: requests.Response) -> Any:
    try:
        if not (resp.text or "").strip():
            return {}
        ctype = (resp.headers.get("Content-Type") or "").lower()
        if "json" in ctype:
            return resp.json()
        return json.loads(resp.text)
    except ValueError:
        return {}


def request_with_retries(
    session: requests.Session,
    method: str,
    url: str,
    *,
    timeout: float = 10.0,
    max_retries: int = 3,
    retry_on: tuple[int, ...] = (429, 500, 502, 503, 504),
    backoff_base: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> requests.Response:
    """Send a request, retrying retryable statuses and network failures.

    A retryable status that survives every attempt is returned as-is so the
    caller can classify it; a network failure that survives every attempt
    raises TransientFetchError.
    """
    attempts = max(1, int(max_retries))
    last_exc: Exception | None = None
    for i in range(attempts):
        try:
            resp = session.request(method, url, timeout=timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            last_exc = e
            if i < attempts - 1:
                sleep(backoff_base * (2**i))
                continue
            break
        if resp.status_code in retry_on and i < attempts - 1:
            wait = backoff_base * (2**i)
            ra = resp.headers.get("Retry-After")
            if ra:
                try:
                    wait = max(wait, float(ra))
                except ValueError:
                    pass
            sleep(wait)
            continue
        return resp
    raise TransientFetchError(f"request failed after {attempts} attempt(s): {method} {url}: {last_exc}")
