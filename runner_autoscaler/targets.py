"""Finding the autoscaler that a GitHub webhook event should scale."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Sequence

from .deployment import RunnerDeployment
from .hra import CapacityReservation, HorizontalRunnerAutoscaler, ScaleUpTrigger
from .replicaset import RunnerSet
from .scheme import NotFoundError, ObjectStore

SCALE_TARGET_KEY = "scaleTarget"
KEY_PREFIX_ENTERPRISE = "enterprises/"
KEY_RUNNER_GROUP = "/group/"
SELF_HOSTED_LABEL = "self-hosted"

# Reserved capacity from workflow_job events is released after this long by
# default, in case the matching "completed" event never arrives.
DEFAULT_JOB_RESERVATION_DURATION = timedelta(minutes=10)

logger = logging.getLogger(__name__)

Predicate = Callable[[ScaleUpTrigger], bool]
VisibilityLookup = Callable[[str, str, "RunnerGroups"], "RunnerGroups"]


def enterprise_key(name: str) -> str:
    """Index key of the enterprise-wide runners of an enterprise."""
    return KEY_PREFIX_ENTERPRISE + name


def organizational_runner_group_key(owner: str, group: str) -> str:
    """Index key of a custom runner group of an organization."""
    return owner + KEY_RUNNER_GROUP + group


def enterprise_runner_group_key(enterprise: str, group: str) -> str:
    """Index key of a custom runner group of an enterprise."""
    return KEY_PREFIX_ENTERPRISE + enterprise + KEY_RUNNER_GROUP + group


def match_trigger_condition_against_event(
    types: Sequence[str] | None, event_action: str | None
) -> bool:
    """True if no types are configured or the event action is one of them."""
    if not types:
        return True
    if event_action is None:
        return False
    return event_action in types


def get_valid_capacity_reservations(
    hra: HorizontalRunnerAutoscaler, now: datetime
) -> list[CapacityReservation]:
    """The capacity reservations of the autoscaler that expire after ``now``."""
    return [
        reservation
        for reservation in hra.spec.capacity_reservations
        if reservation.expiration_time is not None and reservation.expiration_time > now
    ]


def index_keys(store: ObjectStore, hra: HorizontalRunnerAutoscaler) -> list[str]:
    """The scale-target keys under which an autoscaler is found by webhook events."""
    ref = hra.spec.scale_target_ref
    if not ref.name:
        logger.debug("scale target ref name not set for hra %s", hra.name)
        return []

    if ref.kind in ("", RunnerDeployment.KIND):
        try:
            rd = store.get(RunnerDeployment.KIND, hra.namespace, ref.name)
        except NotFoundError:
            logger.debug(
                "RunnerDeployment not found with scale target ref name %s for hra %s",
                ref.name,
                hra.name,
            )
            return []
        spec = rd.spec.template.spec
        keys = []
        if spec.repository:
            keys.append(spec.repository)
        if spec.organization:
            if spec.group:
                keys.append(organizational_runner_group_key(spec.organization, spec.group))
            else:
                keys.append(spec.organization)
        if spec.enterprise:
            if spec.group:
                keys.append(enterprise_runner_group_key(spec.enterprise, spec.group))
            else:
                keys.append(enterprise_key(spec.enterprise))
        return keys

    if ref.kind == RunnerSet.KIND:
        try:
            rs = store.get(RunnerSet.KIND, hra.namespace, ref.name)
        except NotFoundError:
            logger.debug(
                "RunnerSet not found with scale target ref name %s for hra %s",
                ref.name,
                hra.name,
            )
            return []
        spec = rs.spec
        keys = []
        if spec.repository:
            keys.append(spec.repository)
        if spec.organization:
            keys.append(spec.organization)
            if spec.group:
                keys.append(organizational_runner_group_key(spec.organization, spec.group))
        if spec.enterprise:
            keys.append(enterprise_key(spec.enterprise))
            if spec.group:
                keys.append(enterprise_runner_group_key(spec.enterprise, spec.group))
        return keys

    return []


@dataclass
class ScaleTarget:
    """An autoscaler together with the trigger that selected it."""

    hra: HorizontalRunnerAutoscaler
    trigger: ScaleUpTrigger = field(default_factory=ScaleUpTrigger)
    log: Any = None

    @property
    def name(self) -> str:
        return self.hra.name

    @property
    def namespace(self) -> str:
        return self.hra.namespace

    @property
    def amount(self) -> int:
        return self.trigger.amount

    @amount.setter
    def amount(self, value: int) -> None:
        self.trigger.amount = value

    @property
    def duration(self) -> timedelta:
        return self.trigger.duration


class RunnerGroupKind(Enum):
    DEFAULT = "default"
    CUSTOM = "custom"


class RunnerGroupScope(Enum):
    ORGANIZATION = "organization"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class RunnerGroup:
    """A default or custom runner group of an organization or enterprise."""

    scope: RunnerGroupScope
    kind: RunnerGroupKind
    name: str = ""

    @staticmethod
    def from_properties(enterprise: str, organization: str, group: str) -> RunnerGroup:
        """The runner group described by a runner spec's enterprise, organization and group."""
        scope = RunnerGroupScope.ENTERPRISE if enterprise else RunnerGroupScope.ORGANIZATION
        kind = RunnerGroupKind.CUSTOM if group else RunnerGroupKind.DEFAULT
        return RunnerGroup(scope=scope, kind=kind, name=group)


def _priority(group: RunnerGroup) -> tuple[int, int]:
    scope = 0 if group.scope is RunnerGroupScope.ORGANIZATION else 1
    kind = 0 if group.kind is RunnerGroupKind.CUSTOM else 1
    return scope, kind


class RunnerGroups:
    """An ordered set of runner groups, organization groups and custom groups first."""

    def __init__(self, groups: Iterable[RunnerGroup] = ()) -> None:
        self._groups: list[RunnerGroup] = []
        for group in groups:
            self.add(group)

    def add(self, group: RunnerGroup) -> None:
        """Add a group; adding one already present has no effect."""
        if not isinstance(group, RunnerGroup):
            raise TypeError(f"expected a RunnerGroup, got {type(group).__name__}")
        if group in self._groups:
            return
        self._groups.append(group)
        self._groups.sort(key=_priority)

    def is_empty(self) -> bool:
        return not self._groups

    def traverse(self, visit: Callable[[RunnerGroup], bool]) -> bool:
        """Visit groups in order until ``visit`` returns True; report whether it did."""
        return any(visit(group) for group in list(self._groups))

    def __iter__(self) -> Iterator[RunnerGroup]:
        return iter(list(self._groups))

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        return f"RunnerGroups({self._groups!r})"


class TargetFinder:
    """Looks up the autoscalers in a store that match a webhook event."""

    def __init__(
        self,
        store: ObjectStore,
        namespace: str = "",
        visible_runner_groups: VisibilityLookup | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.visible_runner_groups = visible_runner_groups
        self.log = log or logger
        store.index_field(
            HorizontalRunnerAutoscaler.KIND,
            SCALE_TARGET_KEY,
            lambda obj: index_keys(store, obj),
        )

    def find_hras_by_key(self, value: str) -> list[HorizontalRunnerAutoscaler]:
        """Autoscalers indexed under the given scale-target key."""
        if not value:
            return []
        return self.store.list(
            HorizontalRunnerAutoscaler.KIND, self.namespace, {SCALE_TARGET_KEY: value}
        )

    def search_scale_targets(
        self, hras: Iterable[HorizontalRunnerAutoscaler], predicate: Predicate
    ) -> list[ScaleTarget]:
        """One target per live autoscaler trigger accepted by the predicate."""
        return [
            ScaleTarget(hra=hra, trigger=trigger)
            for hra in hras
            if not hra.metadata.is_deleting()
            for trigger in hra.spec.scale_up_triggers
            if predicate(trigger)
        ]

    def get_scale_target(self, name: str, predicate: Predicate) -> ScaleTarget | None:
        """The single matching target under a key, or None if there are none or several."""
        hras = self.find_hras_by_key(name)
        self.log.debug("Found %d HRAs by key %s", len(hras), name)
        targets = self.search_scale_targets(hras, predicate)
        if not targets:
            return None
        if len(targets) > 1:
            self.log.info(
                "Found too many scale targets: It must be exactly one to avoid ambiguity. "
                "Either set Namespace for the webhook-based autoscaler to let it only find HRAs "
                "in the namespace, or update Repository, Organization, or Enterprise fields in "
                "your RunnerDeployment resources to fix the ambiguity. scaleTargets=%s",
                ",".join(t.name for t in targets),
            )
            return None
        return targets[0]

    def _target_spec(self, hra: HorizontalRunnerAutoscaler, unsupported: str) -> Any:
        ref = hra.spec.scale_target_ref
        if ref.kind == RunnerSet.KIND:
            return self.store.get(RunnerSet.KIND, hra.namespace, ref.name).spec
        if ref.kind in ("", RunnerDeployment.KIND):
            rd = self.store.get(RunnerDeployment.KIND, hra.namespace, ref.name)
            return rd.spec.template.spec
        raise ValueError(f"{unsupported}: {ref.kind}")

    def get_job_scale_target(self, name: str, labels: Sequence[str]) -> ScaleTarget | None:
        """The first autoscaler under a key whose runners carry all the job's labels."""
        hras = self.find_hras_by_key(name)
        self.log.debug("Found %d HRAs by key %s", len(hras), name)

        for hra in hras:
            if hra.metadata.is_deleting():
                continue
            triggers = hra.spec.scale_up_triggers
            if len(triggers) > 1:
                self.log.debug(
                    "Skipping HRA %s as it has too many ScaleUpTriggers to be used in "
                    "workflow_job based scaling",
                    hra.name,
                )
                continue
            if not triggers:
                self.log.debug("Skipping HRA %s as it has no ScaleUpTriggers configured", hra.name)
                continue
            trigger = triggers[0]
            if trigger.github_event is None:
                self.log.debug(
                    "Skipping HRA %s as it has no `githubEvent` scale trigger configured", hra.name
                )
                continue
            if trigger.github_event.workflow_job is None:
                self.log.debug(
                    "Skipping HRA %s as it has no `githubEvent.workflowJob` scale trigger "
                    "configured",
                    hra.name,
                )
                continue

            duration = trigger.duration
            if duration <= timedelta(0):
                duration = DEFAULT_JOB_RESERVATION_DURATION

            spec = self._target_spec(hra, "unsupported scaleTargetRef.kind")
            runner_labels = set(spec.labels)
            if all(label == SELF_HOSTED_LABEL or label in runner_labels for label in labels):
                return ScaleTarget(hra=hra, trigger=ScaleUpTrigger(duration=duration))

        return None

    def get_managed_runner_groups(self, enterprise: str, org: str) -> RunnerGroups:
        """Runner groups of the enterprise or organization that some autoscaler manages."""
        groups = RunnerGroups()
        for hra in self.store.list(HorizontalRunnerAutoscaler.KIND, self.namespace):
            kind = hra.spec.scale_target_ref.kind
            spec = self._target_spec(hra, "unsupported scale target kind")
            o, e, g = spec.organization, spec.enterprise, spec.group

            if g and not e and not o:
                self.log.debug(
                    "invalid runner group config in scale target: spec.group must be set along "
                    "with either spec.enterprise or spec.organization kind=%s group=%s",
                    kind,
                    g,
                )
                continue

            if e != enterprise and o != org:
                self.log.debug(
                    "Skipped scale target irrelevant to event: organization=%s enterprise=%s "
                    "kind=%s group=%s targetEnterprise=%s targetOrganization=%s",
                    org,
                    enterprise,
                    kind,
                    g,
                    e,
                    o,
                )
                continue

            groups.add(RunnerGroup.from_properties(e, o, g))
        return groups

    def get_scale_up_target(
        self,
        repo: str,
        owner: str,
        owner_type: str,
        enterprise: str,
        predicate: Predicate,
    ) -> ScaleTarget | None:
        """The target for a push, pull_request or check_run event."""
        return self._get_scale_up_target_with(
            repo, owner, owner_type, enterprise, lambda key: self.get_scale_target(key, predicate)
        )

    def get_job_scale_up_target(
        self,
        repo: str,
        owner: str,
        owner_type: str,
        enterprise: str,
        labels: Sequence[str],
    ) -> ScaleTarget | None:
        """The target for a workflow_job event requesting the given labels."""
        return self._get_scale_up_target_with(
            repo, owner, owner_type, enterprise, lambda key: self.get_job_scale_target(key, labels)
        )

    def _get_scale_up_target_with(
        self,
        repo: str,
        owner: str,
        owner_type: str,
        enterprise: str,
        find: Callable[[str], ScaleTarget | None],
    ) -> ScaleTarget | None:
        repository_key = f"{owner}/{repo}"

        target = find(repository_key)
        if target is not None:
            self.log.info("job scale up target is repository-wide runners: repository=%s", repo)
            return target

        if owner_type == "User":
            self.log.debug("user repositories not supported: owner=%s", owner)
            return None

        managed = self.get_managed_runner_groups(enterprise, owner)
        if managed.is_empty():
            self.log.debug(
                "no repository/organizational/enterprise runner found: repository=%s "
                "organization=%s enterprise=%s",
                repository_key,
                owner,
                enterprise,
            )
        else:
            self.log.debug("Found some runner groups are managed: %r", managed)

        if self.visible_runner_groups is not None:
            try:
                visible = self.visible_runner_groups(owner, repository_key, managed)
            except Exception as exc:
                raise RuntimeError(f"error while finding visible runner groups: {exc}") from exc
        else:
            # Without GitHub access every managed group is assumed visible to all repositories.
            visible = managed

        def key_for(group: RunnerGroup) -> str:
            organizational = group.scope is RunnerGroupScope.ORGANIZATION
            if group.kind is RunnerGroupKind.DEFAULT:
                return owner if organizational else enterprise_key(enterprise)
            if organizational:
                return organizational_runner_group_key(owner, group.name)
            return enterprise_runner_group_key(enterprise, group.name)

        found: list[ScaleTarget] = []

        def visit(group: RunnerGroup) -> bool:
            key = key_for(group)
            candidate = find(key)
            if candidate is None:
                return False
            found.append(candidate)
            self.log.debug(
                "job scale up target found: enterprise=%s organization=%s repository=%s key=%s",
                enterprise,
                owner,
                repo,
                key,
            )
            return True

        visible.traverse(visit)

        if not found:
            self.log.debug(
                "no repository/organizational/enterprise runner found: repository=%s "
                "organization=%s enterprise=%s",
                repository_key,
                owner,
                enterprise,
            )
            return None
        return found[0]