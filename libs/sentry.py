# libs/sentry.py
"""Error reporting through *sentry-sdk*.

:func:`init_sentry` runs once per process and does nothing without a DSN,
so local runs and the test-suite never talk to Sentry. Every event passes
:func:`scrub_event` first: bearer tokens must not leave the process.

Usage
-----
```python
from libs.sentry import init_sentry, sentry_capture

init_sentry(release="api_gateway@0.1.0", env="prod")
...
except StorageError as exc:
    sentry_capture(exc, extras={"webhook_id": delivery_id}, tags={"category": exc.category})
```
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Optional

import sentry_sdk

from libs.config import get_settings

FILTERED = "[Filtered]"
_SENSITIVE_HEADERS = {"authorization", "cookie"}


def scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """``before_send`` hook: mask credentials in request headers."""
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SENSITIVE_HEADERS:
                headers[name] = FILTERED
    return event


@lru_cache(maxsize=1)
def init_sentry(*, release: str | None = None, env: str | None = None) -> None:
    settings = get_settings()
    dsn = os.getenv("SENTRY_DSN") or settings.sentry_dsn
    if not dsn:
        return

    sentry_sdk.init(
        dsn=dsn,
        release=release,
        environment=env or settings.environment,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2")),
        send_default_pii=False,
        before_send=scrub_event,
    )


def sentry_capture(
    exc: BaseException,
    *,
    extras: Optional[dict[str, Any]] = None,
    tags: Optional[dict[str, str]] = None,
) -> None:
    """Report *exc* when the SDK is active; a no-op otherwise.

    Parameters
    ----------
    exc
        The exception to record.
    extras
        Free-form context (delivery id, failure reason).
    tags
        Indexed, searchable values such as the error category.
    """
    if not sentry_sdk.get_client().is_active():
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extras or {}).items():
            scope.set_extra(key, value)
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        scope.capture_exception(exc)
