"""HTTP endpoint that turns GitHub webhook events into runner scale requests."""

from __future__ import annotations

import fnmatch
import hashlib
import hmac
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import parse_qs

from .batch_scale import BatchScaler
from .hra import ScaleUpTrigger
from .scheme import ObjectStore
from .targets import (
    Predicate,
    ScaleTarget,
    TargetFinder,
    VisibilityLookup,
    match_trigger_condition_against_event,
)

DEFAULT_QUEUE_LIMIT = 100
DEFAULT_NAME = "webhookbasedautoscaler"

NO_TARGET_MESSAGE = "no horizontalrunnerautoscaler to scale for this github event"

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    """Status code, body and headers of a webhook response."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=lambda: {"Content-Type": "text/plain; charset=utf-8"})


class QueueFullError(Exception):
    """Raised when the bounded queue of scale targets has no room left."""


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    return next((value for key, value in headers.items() if key.lower() == wanted), "")


def validate_payload(body: bytes, signature: str, secret: bytes | str) -> bytes:
    """Check an ``algo=hexdigest`` HMAC signature of the body; return the body if it matches."""
    if isinstance(secret, str):
        secret = secret.encode()
    if not signature:
        raise ValueError("missing signature")
    algorithm, sep, digest = signature.partition("=")
    hashes = {"sha256": hashlib.sha256, "sha1": hashlib.sha1, "sha512": hashlib.sha512}
    if not sep or algorithm not in hashes:
        raise ValueError(f"error parsing signature {signature!r}")
    try:
        expected = bytes.fromhex(digest)
    except ValueError:
        raise ValueError(f"error parsing signature {signature!r}") from None
    actual = hmac.new(secret, body, hashes[algorithm]).digest()
    if not hmac.compare_digest(actual, expected):
        raise ValueError("payload signature check failed")
    return body


def match_push_event(event: Mapping[str, Any]) -> Predicate:
    """A predicate accepting triggers configured for push events."""

    def predicate(trigger: ScaleUpTrigger) -> bool:
        return trigger.github_event is not None and trigger.github_event.push is not None

    return predicate


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)


def match_pull_request_event(event: Mapping[str, Any]) -> Predicate:
    """A predicate accepting pull_request triggers whose types and branches fit the event."""
    action = event.get("action")
    base = ((event.get("pull_request") or {}).get("base") or {}).get("ref") or ""

    def predicate(trigger: ScaleUpTrigger) -> bool:
        spec = trigger.github_event.pull_request if trigger.github_event else None
        if spec is None:
            return False
        if not match_trigger_condition_against_event(spec.types, action):
            return False
        return not spec.branches or _matches_any(base, spec.branches)

    return predicate


def match_check_run_event(event: Mapping[str, Any]) -> Predicate:
    """A predicate accepting check_run triggers whose conditions fit the event."""
    action = event.get("action")
    check_run = event.get("check_run") or {}
    status = check_run.get("status") or ""
    name = check_run.get("name") or ""
    repository = (event.get("repository") or {}).get("name") or ""

    def predicate(trigger: ScaleUpTrigger) -> bool:
        spec = trigger.github_event.check_run if trigger.github_event else None
        if spec is None:
            return False
        if not match_trigger_condition_against_event(spec.types, action):
            return False
        if spec.status and spec.status != status:
            return False
        if spec.names and not _matches_any(name, spec.names):
            return False
        return not spec.repositories or repository in spec.repositories

    return predicate


def _parse_event(event_type: str, payload: bytes) -> dict[str, Any]:
    if not event_type:
        raise ValueError(f"unknown X-Github-Event in message: {event_type}")
    event = json.loads(payload.decode("utf-8"))
    if not isinstance(event, dict):
        raise ValueError(f"{event_type} payload is not a JSON object")
    return event


class GitHubWebhook:
    """Scales autoscalers in a store on each GitHub webhook event received."""

    def __init__(
        self,
        store: ObjectStore,
        secret: bytes | str | None = None,
        namespace: str = "",
        name: str = "",
        queue_limit: int = 0,
        batch_scaler: BatchScaler | None = None,
        visible_runner_groups: VisibilityLookup | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.store = store
        self.secret = secret.encode() if isinstance(secret, str) else (secret or b"")
        self.namespace = namespace
        self.name = name or DEFAULT_NAME
        self.queue_limit = queue_limit or DEFAULT_QUEUE_LIMIT
        self.batch_scaler = batch_scaler
        self.log = log or logger
        self._finder = TargetFinder(store, namespace, visible_runner_groups, self.log)
        self._queue: queue.Queue[ScaleTarget] | None = None
        self._lock = threading.Lock()

    def _read_payload(self, headers: Mapping[str, str], body: bytes) -> bytes:
        if not self.secret:
            return body
        signature = _header(headers, "X-Hub-Signature-256") or _header(headers, "X-Hub-Signature")
        payload = validate_payload(body, signature, self.secret)
        content_type = _header(headers, "Content-Type").split(";")[0].strip()
        if content_type == "application/x-www-form-urlencoded":
            form = parse_qs(payload.decode("utf-8"))
            payload = (form.get("payload") or [""])[0].encode("utf-8")
        return payload

    def _worker(self, items: queue.Queue[ScaleTarget], scaler: BatchScaler) -> None:
        while True:
            target = items.get()
            try:
                scaler.add(target)
            except Exception:  # the worker must keep draining the queue
                self.log.exception("Failed to hand scale target %s to batch scaler", target.name)

    def _enqueue(self, target: ScaleTarget) -> None:
        with self._lock:
            if self._queue is None:
                if self.batch_scaler is None:
                    self.batch_scaler = BatchScaler(self.store, log=self.log)
                self._queue = queue.Queue(maxsize=self.queue_limit)
                threading.Thread(
                    target=self._worker,
                    args=(self._queue, self.batch_scaler),
                    name="webhook-worker",
                    daemon=True,
                ).start()
            items = self._queue
        try:
            items.put_nowait(target)
        except queue.Full:
            raise QueueFullError("scale target queue is full") from None

    def handle(self, method: str, headers: Mapping[str, str], body: bytes) -> WebhookResponse:
        """Process one webhook request and return the response to send."""
        if method.upper() == "GET":
            return WebhookResponse(HTTPStatus.OK, "webhook server is running\n")

        event_type = _header(headers, "X-GitHub-Event")
        try:
            payload = self._read_payload(headers, body)
            event = _parse_event(event_type, payload)
        except ValueError as exc:
            self.log.error("could not read webhook: type=%s error=%s", event_type, exc)
            return WebhookResponse(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))

        log = logging.LoggerAdapter(
            self.log,
            {
                "event": event_type,
                "hookID": _header(headers, "X-GitHub-Hook-ID"),
                "delivery": _header(headers, "X-GitHub-Delivery"),
            },
        )

        enterprise = event.get("enterprise")
        enterprise_slug = (enterprise.get("slug") or "") if isinstance(enterprise, dict) else ""
        repository = event.get("repository") or {}
        owner = repository.get("owner") or {}
        repo_name = repository.get("name") or ""
        owner_login = owner.get("login") or ""
        owner_type = owner.get("type") or ""

        ignored = WebhookResponse(HTTPStatus.OK, "")
        target: ScaleTarget | None

        try:
            if event_type in ("push", "pull_request", "check_run"):
                matcher = {
                    "push": match_push_event,
                    "pull_request": match_pull_request_event,
                    "check_run": match_check_run_event,
                }[event_type]
                target = self._finder.get_scale_up_target(
                    repo_name, owner_login, owner_type, enterprise_slug, matcher(event)
                )
            elif event_type == "workflow_job":
                action = event.get("action")
                job = event.get("workflow_job") or {}
                if action not in ("queued", "completed"):
                    log.debug("Ignored a workflow_job event: action=%s", action)
                    return ignored
                target = self._finder.get_job_scale_up_target(
                    repo_name, owner_login, owner_type, enterprise_slug, job.get("labels") or []
                )
                if target is not None:
                    if action == "queued":
                        target.amount = 1
                    elif job.get("conclusion") != "skipped":
                        # Erases the oldest reservation of one replica.
                        target.amount = -1
                    else:
                        log.debug("Ignored a skipped workflow_job event")
                        return ignored
            elif event_type == "ping":
                log.info("received ping event")
                return WebhookResponse(HTTPStatus.OK, "pong")
            else:
                log.info("unknown event type: %s", event_type)
                return WebhookResponse(HTTPStatus.INTERNAL_SERVER_ERROR, "")
        except (LookupError, ValueError, RuntimeError) as exc:
            log.error("handling %s event: %s", event_type, exc)
            return WebhookResponse(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))

        if target is None:
            log.debug(
                "Scale target not found. If this is unexpected, ensure that there is exactly one "
                "repository-wide or organizational runner deployment that matches this event"
            )
            return WebhookResponse(HTTPStatus.OK, NO_TARGET_MESSAGE)

        target.log = log
        try:
            self._enqueue(target)
        except QueueFullError:
            log.error("Could not scale up due to queue full")
            return WebhookResponse(HTTPStatus.INTERNAL_SERVER_ERROR, "")

        message = f"scaled {target.name} by {target.amount}"
        self.log.info(message)
        return WebhookResponse(HTTPStatus.OK, message)

    def wsgi_app(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> list[bytes]:
        """Serve :meth:`handle` as a WSGI application."""
        headers = {
            key[5:].replace("_", "-").title(): value
            for key, value in environ.items()
            if key.startswith("HTTP_")
        }
        if environ.get("CONTENT_TYPE"):
            headers["Content-Type"] = environ["CONTENT_TYPE"]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        stream = environ.get("wsgi.input")
        body = stream.read(length) if stream is not None and length > 0 else b""

        response = self.handle(environ.get("REQUEST_METHOD", "GET"), headers, body)
        data = response.body.encode("utf-8")
        status = HTTPStatus(response.status)
        start_response(
            f"{status.value} {status.phrase}",
            [*response.headers.items(), ("Content-Length", str(len(data)))],
        )
        return [data]