"""RunnerDeployment resource types and their validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .runner import InvalidResourceError, RunnerSpec, _fill_unset_collections
from .scheme import ObjectMeta

AUTOSCALING_METRIC_TYPE_TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS = (
    "TotalNumberOfQueuedAndInProgressWorkflowRuns"
)
AUTOSCALING_METRIC_TYPE_PERCENTAGE_RUNNERS_BUSY = "PercentageRunnersBusy"

runner_deployment_log = logging.getLogger("runnerdeployment-resource")


@dataclass
class RunnerTemplate:
    """Metadata and spec of the runners to create."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSpec = field(default_factory=RunnerSpec)


@dataclass
class RunnerDeploymentSpec:
    replicas: int | None = None
    effective_time: datetime | None = None
    selector: dict[str, Any] | None = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerDeploymentStatus:
    available_replicas: int | None = None
    ready_replicas: int | None = None
    updated_replicas: int | None = None
    desired_replicas: int | None = None
    replicas: int | None = None


@dataclass
class RunnerDeployment:
    """A set of identical runners managed through replica sets."""

    KIND = "RunnerDeployment"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerDeploymentSpec = field(default_factory=RunnerDeploymentSpec)
    status: RunnerDeploymentStatus = field(default_factory=RunnerDeploymentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def default(self) -> None:
        """Fill collection fields of the runner template spec that were left unset."""
        _fill_unset_collections(self.spec.template.spec)

    def validate(self) -> None:
        """Raise InvalidResourceError if the runner template spec is invalid."""
        errors = self.spec.template.spec.validate("spec.template.spec")
        if errors:
            raise InvalidResourceError(self.KIND, self.name, errors)

    def validate_create(self) -> None:
        runner_deployment_log.info("validate resource to be created: name=%s", self.name)
        self.validate()

    def validate_update(self, old: Any) -> None:
        runner_deployment_log.info("validate resource to be updated: name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is recorded."""
        runner_deployment_log.info("validate resource to be deleted: name=%s", self.name)