"""HorizontalRunnerAutoscaler resource types."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .runner import GitHubAPICredentialsFrom
from .scheme import ObjectMeta

CACHE_ENTRY_KEY_DESIRED_REPLICAS = "desiredReplicas"


@dataclass
class CheckRunSpec:
    """Condition for scaling up on a check_run event."""

    types: list[str] = field(default_factory=list)
    status: str = ""
    names: list[str] = field(default_factory=list)
    repositories: list[str] = field(default_factory=list)


@dataclass
class PullRequestSpec:
    """Condition for scaling up on a pull_request event."""

    types: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)


@dataclass
class PushSpec:
    """Condition for scaling up on a push event."""


@dataclass
class WorkflowJobSpec:
    """Condition for scaling on workflow_job events."""


@dataclass
class GitHubEventScaleUpTriggerSpec:
    check_run: CheckRunSpec | None = None
    pull_request: PullRequestSpec | None = None
    push: PushSpec | None = None
    workflow_job: WorkflowJobSpec | None = None


@dataclass
class ScaleUpTrigger:
    github_event: GitHubEventScaleUpTriggerSpec | None = None
    amount: int = 0
    duration: timedelta = field(default_factory=timedelta)


@dataclass
class CapacityReservation:
    """Replicas temporarily added to the scale target until the expiration time."""

    name: str = ""
    expiration_time: datetime | None = None
    replicas: int = 0
    effective_time: datetime | None = None


@dataclass
class ScaleTargetRef:
    kind: str = ""
    name: str = ""


@dataclass
class MetricSpec:
    type: str = ""
    repository_names: list[str] = field(default_factory=list)
    scale_up_threshold: str = ""
    scale_down_threshold: str = ""
    scale_up_factor: str = ""
    scale_down_factor: str = ""
    scale_up_adjustment: int = 0
    scale_down_adjustment: int = 0


@dataclass
class RecurrenceRule:
    frequency: str = ""
    until_time: datetime | None = None


@dataclass
class ScheduledOverride:
    """Override of a few spec fields on a (possibly recurring) schedule."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    min_replicas: int | None = None
    recurrence_rule: RecurrenceRule = field(default_factory=RecurrenceRule)


@dataclass
class CacheEntry:
    key: str = ""
    value: int = 0
    expiration_time: datetime | None = None


@dataclass
class HorizontalRunnerAutoscalerSpec:
    scale_target_ref: ScaleTargetRef = field(default_factory=ScaleTargetRef)
    min_replicas: int | None = None
    max_replicas: int | None = None
    scale_down_delay_seconds_after_scale_up: int | None = None
    metrics: list[MetricSpec] = field(default_factory=list)
    scale_up_triggers: list[ScaleUpTrigger] = field(default_factory=list)
    capacity_reservations: list[CapacityReservation] = field(default_factory=list)
    scheduled_overrides: list[ScheduledOverride] = field(default_factory=list)
    github_api_credentials_from: GitHubAPICredentialsFrom | None = None


@dataclass
class HorizontalRunnerAutoscalerStatus:
    observed_generation: int = 0
    desired_replicas: int | None = None
    last_successful_scale_out_time: datetime | None = None
    cache_entries: list[CacheEntry] = field(default_factory=list)
    scheduled_overrides_summary: str | None = None


@dataclass
class HorizontalRunnerAutoscaler:
    """Autoscaler of a RunnerDeployment or RunnerSet."""

    KIND = "HorizontalRunnerAutoscaler"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: HorizontalRunnerAutoscalerSpec = field(default_factory=HorizontalRunnerAutoscalerSpec)
    status: HorizontalRunnerAutoscalerStatus = field(
        default_factory=HorizontalRunnerAutoscalerStatus
    )

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def deep_copy(self) -> HorizontalRunnerAutoscaler:
        """Return an independent copy of this autoscaler."""
        return copy.deepcopy(self)