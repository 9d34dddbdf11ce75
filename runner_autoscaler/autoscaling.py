"""Suggesting desired runner replicas from GitHub workflow runs and runner activity."""

from __future__ import annotations

import json
import logging
import math
import re
import urllib.error
import urllib.request
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import parse_qs, quote, urlencode, urlsplit

from .deployment import (
    AUTOSCALING_METRIC_TYPE_PERCENTAGE_RUNNERS_BUSY,
    AUTOSCALING_METRIC_TYPE_TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS,
)
from .hra import HorizontalRunnerAutoscaler, MetricSpec

logger = logging.getLogger(__name__)

DEFAULT_SCALE_UP_THRESHOLD = 0.8
DEFAULT_SCALE_DOWN_THRESHOLD = 0.3
DEFAULT_SCALE_UP_FACTOR = 1.3
DEFAULT_SCALE_DOWN_FACTOR = 0.7

LABEL_KEY_RUNNER_DEPLOYMENT_NAME = "runner-deployment-name"
LABEL_KEY_RUNNER_SET_NAME = "runnerset-name"
ANNOTATION_KEY_UNREGISTRATION_FAILURE_MESSAGE = "actions-runner/unregistration-failure-message"

SELF_HOSTED_LABEL = "self-hosted"

Transport = Callable[[str, Mapping[str, str]], "tuple[int, Mapping[str, str], bytes]"]

_LINK_NEXT = re.compile(r'<([^>]*)>\s*;\s*rel="next"')


class AutoscalingError(Exception):
    """Raised when the desired replicas cannot be computed."""


def _urllib_transport(url: str, headers: Mapping[str, str]) -> tuple[int, Mapping[str, str], bytes]:
    request = urllib.request.Request(url, headers=dict(headers), method="GET")
    try:
        with urllib.request.urlopen(request) as response:
            return response.status, dict(response.headers.items()), response.read()
    except urllib.error.HTTPError as exc:
        response_headers = dict(exc.headers.items()) if exc.headers else {}
        return exc.code, response_headers, exc.read()


def _next_page(headers: Mapping[str, str]) -> int:
    link = next((v for k, v in headers.items() if k.lower() == "link"), "")
    match = _LINK_NEXT.search(link)
    if not match:
        return 0
    pages = parse_qs(urlsplit(match.group(1)).query).get("page")
    if not pages:
        return 0
    try:
        return int(pages[0])
    except ValueError:
        return 0


class GitHubClient:
    """Minimal client of the GitHub REST API used for autoscaling decisions."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        transport: Transport | None = None,
        per_page: int = 100,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transport = transport or _urllib_transport
        self.per_page = per_page

    def _get(self, path: str, params: Mapping[str, Any]) -> tuple[Any, int]:
        url = f"{self.base_url}/{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        status, response_headers, body = self.transport(url, headers)
        if status >= 400:
            text = body.decode("utf-8", "replace")[:200] if body else ""
            raise AutoscalingError(f"GET {url}: {status} {text}".rstrip())
        data = json.loads(body) if body else None
        return data, _next_page(response_headers)

    def _paginate(self, path: str, params: Mapping[str, Any], key: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            data, next_page = self._get(path, {**params, "per_page": self.per_page, "page": page})
            items.extend((data or {}).get(key) or [])
            if not next_page:
                return items
            page = next_page

    def list_repository_workflow_runs(self, owner: str, repo: str) -> list[dict[str, Any]]:
        """Queued runs followed by in-progress runs of a repository."""
        path = f"repos/{quote(owner, safe='')}/{quote(repo, safe='')}/actions/runs"
        runs: list[dict[str, Any]] = []
        for status in ("queued", "in_progress"):
            runs.extend(self._paginate(path, {"status": status}, "workflow_runs"))
        return runs

    def list_workflow_jobs(
        self, owner: str, repo: str, run_id: int, page: int = 1, per_page: int = 50
    ) -> tuple[list[dict[str, Any]], int]:
        """One page of the jobs of a workflow run and the number of the next page, or 0."""
        path = (
            f"repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
            f"/actions/runs/{int(run_id)}/jobs"
        )
        data, next_page = self._get(path, {"per_page": per_page, "page": page})
        return list((data or {}).get("jobs") or []), next_page

    def list_runners(self, enterprise: str, organization: str, repository: str) -> list[dict[str, Any]]:
        """All self-hosted runners registered to the enterprise, organization or repository."""
        if enterprise:
            path = f"enterprises/{quote(enterprise, safe='')}/actions/runners"
        elif organization:
            path = f"orgs/{quote(organization, safe='')}/actions/runners"
        elif repository:
            owner, _, name = repository.partition("/")
            if not owner or not name:
                raise AutoscalingError(f"invalid repository {repository!r}: expected owner/name")
            path = f"repos/{quote(owner, safe='')}/{quote(name, safe='')}/actions/runners"
        else:
            raise AutoscalingError("enterprise, organization or repository must be set to list runners")
        return self._paginate(path, {}, "runners")


@dataclass
class AutoscalingTarget:
    """The runner deployment or runner set whose replicas are being computed."""

    kind: str = "RunnerDeployment"
    name: str = ""
    enterprise: str = ""
    org: str = ""
    repo: str = ""
    labels: list[str] = field(default_factory=list)
    replicas: int | None = None
    runner_names: frozenset[str] = frozenset()


@dataclass
class RunnerPod:
    """A runner pod as seen in the cluster."""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


def suggest_desired_replicas(
    ghc: GitHubClient,
    target: AutoscalingTarget,
    hra: HorizontalRunnerAutoscaler,
    pods: Iterable[RunnerPod] = (),
) -> int | None:
    """Suggest replicas from the autoscaler's metrics, or None to fall back to the minimum."""
    if hra.spec.min_replicas is None:
        raise AutoscalingError(
            f"horizontalrunnerautoscaler {hra.namespace}/{hra.name} is missing minReplicas"
        )
    if hra.spec.max_replicas is None:
        raise AutoscalingError(
            f"horizontalrunnerautoscaler {hra.namespace}/{hra.name} is missing maxReplicas"
        )

    metrics = hra.spec.metrics
    if not metrics:
        return None
    if len(metrics) > 2:
        raise AutoscalingError(
            "too many autoscaling metrics configured: It must be 0 to 2, "
            f"but got {len(metrics)}"
        )

    primary = metrics[0]
    if primary.type == AUTOSCALING_METRIC_TYPE_TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS:
        suggested = suggest_replicas_by_queued_and_in_progress_workflow_runs(ghc, target, hra, primary)
    elif primary.type == AUTOSCALING_METRIC_TYPE_PERCENTAGE_RUNNERS_BUSY:
        suggested = suggest_replicas_by_percentage_runners_busy(ghc, target, hra, primary, pods)
    else:
        raise AutoscalingError(
            f'validating autoscaling metrics: unsupported metric type "{primary.type}"'
        )

    if suggested is not None and suggested > 0:
        return suggested

    if len(metrics) == 1:
        return None

    fallback = metrics[1]
    if (
        primary.type != AUTOSCALING_METRIC_TYPE_PERCENTAGE_RUNNERS_BUSY
        or fallback.type
        != AUTOSCALING_METRIC_TYPE_TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS
    ):
        raise AutoscalingError(
            f"invalid HRA Spec: Metrics[0] of {primary.type} cannot be combined with "
            f"Metrics[1] of {fallback.type}: The only allowed combination is "
            "0=PercentageRunnersBusy and 1=TotalNumberOfQueuedAndInProgressWorkflowRuns"
        )

    return suggest_replicas_by_queued_and_in_progress_workflow_runs(ghc, target, hra, fallback)


def suggest_replicas_by_queued_and_in_progress_workflow_runs(
    ghc: GitHubClient,
    target: AutoscalingTarget,
    hra: HorizontalRunnerAutoscaler,
    metric: MetricSpec | None,
) -> int | None:
    """Count queued and in-progress workflow runs, or their matching jobs where available."""
    if not target.repo:
        if not target.org:
            raise AutoscalingError(
                "asserting runner deployment spec to detect bug: "
                "spec.template.organization should not be empty on this code path"
            )
        if metric is None:
            return None
        if not metric.repository_names:
            raise AutoscalingError(
                "validating autoscaling metrics: spec.autoscaling.metrics[].repositoryNames "
                "is required and must have one more more entries for organizational runner deployment"
            )
        repos = [(target.org, name) for name in metric.repository_names]
    else:
        parts = target.repo.split("/")
        if len(parts) < 2:
            raise AutoscalingError(f"invalid repository {target.repo!r}: expected owner/name")
        repos = [(parts[0], parts[1])]

    counts: Counter[str] = Counter()
    runner_labels = set(target.labels)

    def count_jobs(owner: str, name: str, run_id: int, fallback: str) -> None:
        if not run_id:
            counts[fallback] += 1
            return
        jobs: list[dict[str, Any]] = []
        page = 1
        while True:
            try:
                batch, next_page = ghc.list_workflow_jobs(owner, name, run_id, page=page)
            except AutoscalingError:
                logger.exception("Error listing workflow jobs")
                return
            jobs.extend(batch)
            if not next_page:
                break
            page = next_page
        if not jobs:
            counts[fallback] += 1
            return
        for job in jobs:
            labels = job.get("labels") or []
            if not labels:
                logger.info(
                    "Detected job with no labels, which is not supported. Skipping anyway. "
                    "run_id=%s job_id=%s",
                    job.get("run_id", 0),
                    job.get("id", 0),
                )
                continue
            if any(l != SELF_HOSTED_LABEL and l not in runner_labels for l in labels):
                continue
            status = job.get("status") or ""
            if status == "completed":
                continue
            counts[status if status in ("in_progress", "queued") else "unknown"] += 1

    for owner, name in repos:
        for run in ghc.list_repository_workflow_runs(owner, name):
            status = run.get("status") or ""
            run_id = run.get("id") or 0
            if status == "completed":
                counts["completed"] += 1
            elif status == "in_progress":
                count_jobs(owner, name, run_id, "in_progress")
            elif status == "queued":
                count_jobs(owner, name, run_id, "queued")
            else:
                counts["unknown"] += 1

    necessary = counts["queued"] + counts["in_progress"]
    logger.debug(
        "Suggested desired replicas of %d by TotalNumberOfQueuedAndInProgressWorkflowRuns: "
        "completed=%d in_progress=%d queued=%d unknown=%d namespace=%s kind=%s name=%s hra=%s",
        necessary,
        counts["completed"],
        counts["in_progress"],
        counts["queued"],
        counts["unknown"],
        hra.namespace,
        target.kind,
        target.name,
        hra.name,
    )
    return necessary


def _parse_float(value: str, name: str) -> float:
    error = AutoscalingError(
        f"validating autoscaling metrics: spec.autoscaling.metrics[].{name} "
        "cannot be parsed into a float64"
    )
    if value != value.strip() or "_" in value:
        raise error
    try:
        return float(value)
    except ValueError:
        raise error from None


def _adjustment_and_factor(
    adjustment: int, factor: str, default_factor: float, direction: str
) -> tuple[int, float]:
    if adjustment != 0:
        if adjustment < 0:
            raise AutoscalingError(
                f"validating autoscaling metrics: spec.autoscaling.metrics[].scale{direction}Adjustment "
                "cannot be lower than 0"
            )
        if factor:
            raise AutoscalingError(
                f"validating autoscaling metrics: spec.autoscaling.metrics[]: scale{direction}Adjustment "
                f"and scale{direction}Factor cannot be specified together"
            )
        return adjustment, default_factor
    if factor:
        return 0, _parse_float(factor, f"scale{direction}Factor")
    return 0, default_factor


def suggest_replicas_by_percentage_runners_busy(
    ghc: GitHubClient,
    target: AutoscalingTarget,
    hra: HorizontalRunnerAutoscaler,
    metric: MetricSpec,
    pods: Iterable[RunnerPod] = (),
) -> int:
    """Scale by the fraction of the target's runners that are busy."""
    scale_up_threshold = (
        _parse_float(metric.scale_up_threshold, "scaleUpThreshold")
        if metric.scale_up_threshold
        else DEFAULT_SCALE_UP_THRESHOLD
    )
    scale_down_threshold = (
        _parse_float(metric.scale_down_threshold, "scaleDownThreshold")
        if metric.scale_down_threshold
        else DEFAULT_SCALE_DOWN_THRESHOLD
    )
    scale_up_adjustment, scale_up_factor = _adjustment_and_factor(
        metric.scale_up_adjustment, metric.scale_up_factor, DEFAULT_SCALE_UP_FACTOR, "Up"
    )
    scale_down_adjustment, scale_down_factor = _adjustment_and_factor(
        metric.scale_down_adjustment, metric.scale_down_factor, DEFAULT_SCALE_DOWN_FACTOR, "Down"
    )

    runner_names = set(target.runner_names)
    runners = ghc.list_runners(target.enterprise, target.org, target.repo)

    before = 1 if target.replicas is None else target.replicas

    kind_label = LABEL_KEY_RUNNER_DEPLOYMENT_NAME
    if hra.spec.scale_target_ref.kind == "RunnerSet":
        kind_label = LABEL_KEY_RUNNER_SET_NAME

    busy_terminating = {
        pod.name
        for pod in pods
        if (not hra.namespace or pod.namespace == hra.namespace)
        and pod.labels.get(kind_label) == hra.spec.scale_target_ref.name
        and pod.annotations.get(ANNOTATION_KEY_UNREGISTRATION_FAILURE_MESSAGE)
    }

    registered = busy = terminating_busy = 0
    for runner in runners:
        name = runner.get("name")
        if name not in runner_names:
            continue
        registered += 1
        if runner.get("busy"):
            busy += 1
        elif name in busy_terminating:
            terminating_busy += 1
        busy_terminating.discard(name)

    # Pods that failed unregistration but are not yet listed by the API.
    terminating_busy += len(busy_terminating)

    fraction_busy = (busy + terminating_busy) / before if before else math.inf
    if fraction_busy >= scale_up_threshold:
        if scale_up_adjustment > 0:
            desired = before + scale_up_adjustment
        else:
            desired = math.ceil(before * scale_up_factor)
    elif fraction_busy < scale_down_threshold:
        if scale_down_adjustment > 0:
            desired = before - scale_down_adjustment
        else:
            desired = int(before * scale_down_factor)
    else:
        desired = before

    logger.debug(
        "Suggested desired replicas of %d by PercentageRunnersBusy: before=%d num_runners=%d "
        "registered=%d busy=%d terminating_busy=%d namespace=%s kind=%s name=%s hra=%s",
        desired,
        before,
        len(runner_names),
        registered,
        busy,
        terminating_busy,
        hra.namespace,
        target.kind,
        target.name,
        hra.name,
    )
    return desired