import pytest

from runner_autoscaler.deployment import RunnerTemplate
from runner_autoscaler.replicaset import (
    RunnerReplicaSet,
    RunnerReplicaSetSpec,
    RunnerSet,
    RunnerSetSpec,
)
from runner_autoscaler.runner import InvalidResourceError, RunnerSpec, WorkVolumeClaimTemplate
from runner_autoscaler.scheme import ObjectMeta, ObjectStore


def _rrs(**spec_kwargs):
    return RunnerReplicaSet(
        metadata=ObjectMeta(name="example", namespace="default"),
        spec=RunnerReplicaSetSpec(
            replicas=2, template=RunnerTemplate(spec=RunnerSpec(**spec_kwargs))
        ),
    )


def test_valid_repository_spec_passes_all_validations():
    rrs = _rrs(repository="test/valid")
    assert rrs.validate() is None
    assert rrs.validate_create() is None
    assert rrs.validate_update(rrs) is None


def test_missing_target_is_rejected_with_template_path():
    rrs = _rrs()
    with pytest.raises(InvalidResourceError) as info:
        rrs.validate()
    err = info.value
    assert err.kind == "RunnerReplicaSet"
    assert err.name == "example"
    assert [e.path for e in err.errors] == ["spec.template.spec.repository"]
    assert err.errors[0].detail == "Spec needs enterprise, organization or repository"


def test_multiple_targets_are_rejected_on_create_and_update():
    rrs = _rrs(organization="org", repository="org/repo")
    with pytest.raises(InvalidResourceError, match="Spec cannot have many fields"):
        rrs.validate_create()
    with pytest.raises(InvalidResourceError, match="Spec cannot have many fields"):
        rrs.validate_update(rrs)


def test_kubernetes_mode_requires_work_volume_claim_template():
    rrs = _rrs(organization="org", container_mode="kubernetes")
    with pytest.raises(InvalidResourceError) as info:
        rrs.validate()
    assert [e.path for e in info.value.errors] == ["spec.template.spec.workVolumeClaimTemplate"]


def test_kubernetes_mode_with_supported_access_mode_is_valid():
    rrs = _rrs(
        organization="org",
        container_mode="kubernetes",
        work_volume_claim_template=WorkVolumeClaimTemplate(access_modes=["ReadWriteOnce"]),
    )
    assert rrs.validate() is None


def test_both_errors_are_reported_together():
    rrs = _rrs(container_mode="kubernetes")
    with pytest.raises(InvalidResourceError) as info:
        rrs.validate()
    assert len(info.value.errors) == 2


def test_delete_is_allowed_even_when_invalid():
    rrs = _rrs()
    assert rrs.validate_delete() is None


def test_default_leaves_spec_unchanged():
    rrs = _rrs(repository="test/valid")
    before = RunnerReplicaSet(
        metadata=ObjectMeta(name="example", namespace="default"),
        spec=RunnerReplicaSetSpec(
            replicas=2, template=RunnerTemplate(spec=RunnerSpec(repository="test/valid"))
        ),
    )
    rrs.default()
    assert rrs == before


def test_replica_set_name_and_namespace_come_from_metadata():
    rrs = _rrs(repository="test/valid")
    assert (rrs.namespace, rrs.name) == ("default", "example")


def test_runner_set_spec_inherits_runner_config():
    spec = RunnerSetSpec(organization="org", group="grp", labels=["custom"], replicas=3)
    assert spec.organization == "org"
    assert spec.group == "grp"
    assert spec.labels == ["custom"]
    assert spec.replicas == 3
    assert spec.enterprise == ""


def test_runner_set_defaults_are_empty():
    rs = RunnerSet()
    assert rs.spec.replicas is None
    assert rs.spec.work_volume_claim_template is None
    assert rs.status.desired_replicas is None
    assert rs.name == ""


def test_runner_set_round_trips_through_store():
    store = ObjectStore()
    rs = RunnerSet(
        metadata=ObjectMeta(name="rs", namespace="ns"),
        spec=RunnerSetSpec(enterprise="ent", labels=["a", "b"]),
    )
    store.add(RunnerSet.KIND, rs)
    fetched = store.get(RunnerSet.KIND, "ns", "rs")
    assert fetched == rs
    assert fetched is not rs


def test_replica_set_round_trips_through_store():
    store = ObjectStore()
    rrs = _rrs(repository="test/valid")
    store.add(RunnerReplicaSet.KIND, rrs)
    assert store.list(RunnerReplicaSet.KIND, "default") == [rrs]