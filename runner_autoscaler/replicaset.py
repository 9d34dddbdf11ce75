"""RunnerReplicaSet and RunnerSet resource types."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .deployment import RunnerTemplate
from .runner import (
    InvalidResourceError,
    RunnerConfig,
    WorkVolumeClaimTemplate,
    _fill_unset_collections,
)
from .scheme import ObjectMeta

runner_replica_set_log = logging.getLogger("runnerreplicaset-resource")


@dataclass
class RunnerReplicaSetSpec:
    """Desired state of a runner replica set.

    ``effective_time`` is the time the upstream controller requested to sync
    ``replicas``; it keeps ephemeral runners from being recreated on an
    outdated replica count.
    """

    replicas: int | None = None
    effective_time: datetime | None = None
    selector: dict[str, Any] | None = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerReplicaSetStatus:
    replicas: int | None = None
    ready_replicas: int | None = None
    available_replicas: int | None = None


@dataclass
class RunnerReplicaSet:
    """A fixed number of identical runners."""

    KIND = "RunnerReplicaSet"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerReplicaSetSpec = field(default_factory=RunnerReplicaSetSpec)
    status: RunnerReplicaSetStatus = field(default_factory=RunnerReplicaSetStatus)

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
        runner_replica_set_log.info("validate resource to be created: name=%s", self.name)
        self.validate()

    def validate_update(self, old: Any) -> None:
        runner_replica_set_log.info("validate resource to be updated: name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is recorded."""
        runner_replica_set_log.info("validate resource to be deleted: name=%s", self.name)


@dataclass
class RunnerSetSpec(RunnerConfig):
    """Desired state of a runner set: runner config plus a stateful set spec."""

    effective_time: datetime | None = None
    service_account_name: str = ""
    work_volume_claim_template: WorkVolumeClaimTemplate | None = None
    replicas: int | None = None
    selector: dict[str, Any] | None = None
    template: dict[str, Any] = field(default_factory=dict)
    volume_claim_templates: list[dict[str, Any]] = field(default_factory=list)
    service_name: str = ""
    pod_management_policy: str = ""
    update_strategy: dict[str, Any] = field(default_factory=dict)
    revision_history_limit: int | None = None
    min_ready_seconds: int = 0
    persistent_volume_claim_retention_policy: dict[str, Any] | None = None


@dataclass
class RunnerSetStatus:
    current_replicas: int | None = None
    ready_replicas: int | None = None
    updated_replicas: int | None = None
    desired_replicas: int | None = None
    replicas: int | None = None


@dataclass
class RunnerSet:
    """Runners managed as a stateful set."""

    KIND = "RunnerSet"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSetSpec = field(default_factory=RunnerSetSpec)
    status: RunnerSetStatus = field(default_factory=RunnerSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace