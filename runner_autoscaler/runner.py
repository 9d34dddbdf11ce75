"""Runner resource types and their validation."""

from __future__ import annotations

import json
import logging
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from .scheme import GROUP_VERSION, ObjectMeta

runner_log = logging.getLogger("runner-resource")

SUPPORTED_ACCESS_MODES = ("ReadWriteOnce", "ReadWriteMany")


def _format_value(value: Any) -> str:
    if value is None or isinstance(value, str):
        return json.dumps(value)
    return repr(value)


def _fill_unset_collections(obj: Any) -> None:
    """Replace collection fields left as None with their empty defaults."""
    for spec_field in fields(obj):
        if spec_field.default_factory is MISSING:
            continue
        if getattr(obj, spec_field.name) is None:
            setattr(obj, spec_field.name, spec_field.default_factory())


@dataclass
class FieldError:
    """An invalid value found at a field path."""

    path: str
    value: Any
    detail: str

    def __str__(self) -> str:
        return f"{self.path}: Invalid value: {_format_value(self.value)}: {self.detail}"


class InvalidResourceError(ValueError):
    """Raised when a resource fails validation."""

    def __init__(self, kind: str, name: str, errors: list[FieldError]) -> None:
        self.kind = kind
        self.name = name
        self.errors = list(errors)
        if len(self.errors) == 1:
            details = str(self.errors[0])
        else:
            details = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(f'{kind}.{GROUP_VERSION.group} "{name}" is invalid: {details}')


@dataclass
class SecretReference:
    name: str = ""


@dataclass
class GitHubAPICredentialsFrom:
    secret_ref: SecretReference = field(default_factory=SecretReference)


@dataclass
class WorkVolumeClaimTemplate:
    """Template of the ephemeral volume claim mounted as the runner work directory."""

    storage_class_name: str = ""
    access_modes: list[str] = field(default_factory=list)
    resources: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ValueError unless the access modes are present and supported."""
        if not self.access_modes:
            raise ValueError("Access mode should have at least one mode specified")
        for mode in self.access_modes:
            if mode not in SUPPORTED_ACCESS_MODES:
                raise ValueError(f"Access mode {mode} is not supported")

    def v1_volume(self) -> dict[str, Any]:
        """The pod volume named ``work`` built from this template."""
        return {
            "name": "work",
            "ephemeral": {
                "volumeClaimTemplate": {
                    "spec": {
                        "accessModes": list(self.access_modes),
                        "storageClassName": self.storage_class_name,
                        "resources": dict(self.resources),
                    }
                }
            },
        }

    def v1_volume_mount(self, mount_path: str) -> dict[str, str]:
        """The volume mount of the ``work`` volume at the given path."""
        return {"mountPath": mount_path, "name": "work"}


@dataclass
class RunnerConfig:
    enterprise: str = ""
    organization: str = ""
    repository: str = ""
    labels: list[str] = field(default_factory=list)
    group: str = ""
    ephemeral: bool | None = None
    image: str = ""
    work_dir: str = ""
    dockerd_within_runner_container: bool | None = None
    docker_enabled: bool | None = None
    docker_mtu: int | None = None
    docker_registry_mirror: str | None = None
    volume_size_limit: str | None = None
    volume_storage_medium: str | None = None
    container_mode: str = ""
    github_api_credentials_from: GitHubAPICredentialsFrom | None = None


@dataclass
class RunnerPodSpec:
    dockerd_container_resources: dict[str, Any] = field(default_factory=dict)
    docker_volume_mounts: list[dict[str, Any]] = field(default_factory=list)
    docker_env: list[dict[str, Any]] = field(default_factory=list)
    containers: list[dict[str, Any]] = field(default_factory=list)
    image_pull_policy: str = ""
    env: list[dict[str, Any]] = field(default_factory=list)
    env_from: list[dict[str, Any]] = field(default_factory=list)
    resources: dict[str, Any] = field(default_factory=dict)
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    enable_service_links: bool | None = None
    init_containers: list[dict[str, Any]] = field(default_factory=list)
    node_selector: dict[str, str] = field(default_factory=dict)
    service_account_name: str = ""
    automount_service_account_token: bool | None = None
    sidecar_containers: list[dict[str, Any]] = field(default_factory=list)
    security_context: dict[str, Any] | None = None
    image_pull_secrets: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    priority_class_name: str = ""
    termination_grace_period_seconds: int | None = None
    ephemeral_containers: list[dict[str, Any]] = field(default_factory=list)
    host_aliases: list[dict[str, Any]] = field(default_factory=list)
    topology_spread_constraints: list[dict[str, Any]] = field(default_factory=list)
    runtime_class_name: str | None = None
    dns_policy: str = ""
    dns_config: dict[str, Any] | None = None
    work_volume_claim_template: WorkVolumeClaimTemplate | None = None


@dataclass
class RunnerSpec(RunnerPodSpec, RunnerConfig):
    """Desired state of a runner: its registration config and its pod spec."""

    def _check_repository(self) -> None:
        found = sum(1 for v in (self.organization, self.repository, self.enterprise) if v)
        if found == 0:
            raise ValueError("Spec needs enterprise, organization or repository")
        if found > 1:
            raise ValueError(
                "Spec cannot have many fields defined enterprise, organization and repository"
            )

    def _check_work_volume_claim_template(self) -> None:
        if self.container_mode != "kubernetes":
            return
        if self.work_volume_claim_template is None:
            raise ValueError(
                "Spec.ContainerMode: kubernetes must have workVolumeClaimTemplate field specified"
            )
        self.work_volume_claim_template.validate()

    def validate(self, root_path: str) -> list[FieldError]:
        """Return the field errors of this spec, with paths under ``root_path``."""
        errors: list[FieldError] = []
        try:
            self._check_repository()
        except ValueError as exc:
            errors.append(FieldError(f"{root_path}.repository", self.repository, str(exc)))
        try:
            self._check_work_volume_claim_template()
        except ValueError as exc:
            errors.append(
                FieldError(
                    f"{root_path}.workVolumeClaimTemplate",
                    self.work_volume_claim_template,
                    str(exc),
                )
            )
        return errors


@dataclass
class RunnerStatusRegistration:
    enterprise: str = ""
    organization: str = ""
    repository: str = ""
    labels: list[str] = field(default_factory=list)
    token: str = ""
    expires_at: datetime | None = None


@dataclass
class RunnerStatus:
    ready: bool = False
    registration: RunnerStatusRegistration = field(default_factory=RunnerStatusRegistration)
    phase: str = ""
    reason: str = ""
    message: str = ""
    last_registration_check_time: datetime | None = None


@dataclass
class Runner:
    """A single self-hosted runner."""

    KIND = "Runner"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSpec = field(default_factory=RunnerSpec)
    status: RunnerStatus = field(default_factory=RunnerStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def is_registerable(self, now: datetime | None = None) -> bool:
        """True if the registration token matches the spec and has not expired."""
        registration = self.status.registration
        if registration.repository != self.spec.repository:
            return False
        if not registration.token:
            return False
        if registration.expires_at is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)
        return not registration.expires_at < now

    def default(self) -> None:
        """Fill collection fields of the spec that were left unset."""
        _fill_unset_collections(self.spec)

    def validate(self) -> None:
        """Raise InvalidResourceError if the spec is invalid."""
        errors = self.spec.validate("spec")
        if errors:
            raise InvalidResourceError(self.KIND, self.name, errors)

    def validate_create(self) -> None:
        runner_log.info("validate resource to be created: name=%s", self.name)
        self.validate()

    def validate_update(self, old: Any) -> None:
        runner_log.info("validate resource to be updated: name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is recorded."""
        runner_log.info("validate resource to be deleted: name=%s", self.name)