"""
GitHub webhook ingress.

One endpoint serves every mapping: the repository in the payload selects the
mapping, the mapping's secret (if any) authenticates the request, and the
event kind plus action select the handler.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from aiohttp import web

from .context import ContextProvider, MappingContext, extract_repository
from .errors import CorrelationMissError
from .resilience import ErrorHandler

log = logging.getLogger("red.forum_sync.webhook")
security_log = logging.getLogger("red.forum_sync.security")

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"

Handler = Callable[[MappingContext, Dict[str, Any]], Awaitable[None]]


class EventKind(str, Enum):
    ISSUES = "issues"
    ISSUE_COMMENT = "issue_comment"
    PING = "ping"
    OTHER = "other"

    @classmethod
    def parse(cls, header: Optional[str], payload: Dict[str, Any]) -> "EventKind":
        if header:
            try:
                return cls(header)
            except ValueError:
                return cls.OTHER
        if "comment" in payload:
            return cls.ISSUE_COMMENT
        if "zen" in payload or "hook_id" in payload:
            return cls.PING
        return cls.ISSUES


class WebhookAction(str, Enum):
    OPENED = "opened"
    EDITED = "edited"
    CLOSED = "closed"
    REOPENED = "reopened"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    DELETED = "deleted"
    LABELED = "labeled"
    UNLABELED = "unlabeled"
    CREATED = "created"
    PING = "ping"
    UNHANDLED = "unhandled"

    @classmethod
    def parse(cls, value: Any) -> "WebhookAction":
        try:
            return cls(value)
        except ValueError:
            return cls.UNHANDLED


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check ``sha256=<hex hmac>`` against the raw request body."""
    if not signature:
        return False
    mac = hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256)
    expected = "sha256=" + mac.hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def sign_body(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()


class WebhookRouter:
    def __init__(self, provider: ContextProvider, error_handler: ErrorHandler, health: Any = None) -> None:
        self.provider = provider
        self.error_handler = error_handler
        self.health = health
        self._handlers: Dict[Tuple[EventKind, WebhookAction], Handler] = {}

    def register(self, kind: EventKind, action: WebhookAction, handler: Handler) -> None:
        if (kind, action) in self._handlers:
            raise ValueError(f"Handler already registered for {kind.value}.{action.value}")
        self._handlers[(kind, action)] = handler

    def handler_for(self, kind: EventKind, action: WebhookAction) -> Optional[Handler]:
        return self._handlers.get((kind, action))

    async def handle(self, headers: Mapping[str, str], body: bytes) -> Tuple[int, Dict[str, Any]]:
        """Process one delivery and return ``(status, response body)``."""
        try:
            payload = json.loads(body)
        except ValueError:
            log.debug("Rejected webhook with unparsable body")
            return 400, {"error": "Invalid JSON payload"}

        ref = extract_repository(payload)
        if ref is None:
            return 400, {"error": "Invalid webhook payload: missing repository information"}

        context = self.provider.from_repository(*ref)
        if context is None:
            log.debug("No mapping found for repository %s/%s", *ref)
            return 404, {"error": "Repository not configured"}

        secret = context.mapping.webhook_secret
        if secret:
            signature = headers.get(SIGNATURE_HEADER)
            if not signature:
                security_log.warning("Missing webhook signature for mapping %s", context.mapping_id)
                return 401, {"error": "Missing signature"}
            if not verify_signature(secret, body, signature):
                security_log.warning("Invalid webhook signature for mapping %s", context.mapping_id)
                return 401, {"error": "Invalid signature"}

        if self.health is not None:
            self.health.record_activity(context.mapping_id)

        kind = EventKind.parse(headers.get(EVENT_HEADER), payload)
        action = WebhookAction.PING if kind is EventKind.PING else WebhookAction.parse(payload.get("action"))
        handler = self.handler_for(kind, action)
        if handler is None:
            context.logger.debug("No handler for %s.%s", kind.value, payload.get("action"))
            return 200, {"status": "ignored"}

        operation = f"webhook.{kind.value}.{action.value}"
        try:
            await self.error_handler.execute_with_retry(context, operation, lambda: handler(context, payload))
        except CorrelationMissError as e:
            context.logger.debug("%s: %s", operation, e)
            return 200, {"status": "ignored"}
        except Exception:
            context.logger.exception("Webhook handler %s failed", operation)
            return 500, {"error": "Internal server error"}
        return 200, {"status": "ok"}

    # ----------------------
    # aiohttp views
    # ----------------------
    async def webhook_view(self, request: web.Request) -> web.Response:
        body = await request.read()
        status, data = await self.handle(request.headers, body)
        return web.json_response(data, status=status)


def build_app(router: WebhookRouter, health: Any, *, webhook_path: str = "/webhook") -> web.Application:
    async def health_view(request: web.Request) -> web.Response:
        return web.json_response(health.get_health_check())

    async def mapping_health_view(request: web.Request) -> web.Response:
        mapping_health = health.get_mapping_health(request.match_info["mapping_id"])
        if mapping_health is None:
            return web.json_response({"error": "Mapping not found"}, status=404)
        return web.json_response(mapping_health.to_dict())

    async def metrics_view(request: web.Request) -> web.Response:
        return web.json_response(health.get_metrics())

    app = web.Application()
    app.router.add_post(webhook_path, router.webhook_view)
    app.router.add_get("/health", health_view)
    app.router.add_get("/health/{mapping_id}", mapping_health_view)
    app.router.add_get("/metrics", metrics_view)
    return app
