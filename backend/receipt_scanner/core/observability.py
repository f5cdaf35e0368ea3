"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation for API and worker so configuration
does not drift. Keeps initialisation a no-op if the DSN is missing.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.dramatiq import DramatiqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receipt_scanner.core.config import settings


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Scrub obvious PII / secrets before sending to Sentry.

	- Drop Authorization & Cookie headers
	- Remove request data/body (keep method + URL)
	"""
	try:
		req = event.get("request") or {}
		headers = req.get("headers") or {}
		for k in list(headers.keys()):
			lk = k.lower()
			if lk in ("authorization", "cookie", "set-cookie", "x-api-key", "x-schematic-api-key"):
				headers.pop(k, None)
		if "data" in req:
			# Avoid leaking raw bodies (receipts carry personal data)
			req.pop("data", None)
		event["request"] = req
	except Exception:  # best effort
		pass
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not settings.SENTRY_DSN:
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	integrations: list[Any] = [FastApiIntegration(), SqlalchemyIntegration()]
	if service == "worker":
		integrations.append(DramatiqIntegration())
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=integrations,
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on the current Sentry scope (strings only)."""
	if not settings.SENTRY_DSN:
		return
	try:
		for k, v in (tags or {}).items():
			# Avoid PII; coerce to short strings
			sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
	except Exception:
		return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	if not settings.SENTRY_DSN:
		return
	try:
		sentry_sdk.add_breadcrumb(
			category=category,
			message=message,
			level=level,
			data=data or {},
		)
	except Exception:
		return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: increment a metric using Sentry Metrics if available.

	Falls back to no-op when metrics are unavailable in the installed SDK.
	"""
	if not settings.SENTRY_DSN:
		return
	try:
		from sentry_sdk import metrics  # type: ignore[attr-defined]
		safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
		metrics.increment(name, value=value, tags=safe_tags)
	except Exception:
		return


def sentry_capture(exc: BaseException) -> None:
	"""Best-effort: report an exception that is handled (not re-raised)."""
	if not settings.SENTRY_DSN:
		return
	try:
		sentry_sdk.capture_exception(exc)
	except Exception:
		return


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "sentry_capture"]
