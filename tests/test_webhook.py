import hashlib
import hmac
import io
import json
from datetime import timedelta

import pytest

from runner_autoscaler.batch_scale import BatchScaler
from runner_autoscaler.deployment import RunnerDeployment
from runner_autoscaler.hra import (
    CheckRunSpec,
    GitHubEventScaleUpTriggerSpec,
    HorizontalRunnerAutoscaler,
    PullRequestSpec,
    PushSpec,
    ScaleTargetRef,
    ScaleUpTrigger,
    WorkflowJobSpec,
)
from runner_autoscaler.scheme import ObjectMeta, ObjectStore
from runner_autoscaler.webhook import (
    GitHubWebhook,
    match_check_run_event,
    match_pull_request_event,
    match_push_event,
    validate_payload,
)

NO_TARGET = "no horizontalrunnerautoscaler to scale for this github event"


def post(webhook, event_type, event, extra_headers=None):
    headers = {"X-GitHub-Event": event_type, "Content-Type": "application/json"}
    headers.update(extra_headers or {})
    return webhook.handle("POST", headers, json.dumps(event).encode())


def make_store(runner_labels, template_labels=None):
    store = ObjectStore()
    hra = HorizontalRunnerAutoscaler()
    hra.metadata = ObjectMeta(name="test-name")
    hra.spec.scale_target_ref = ScaleTargetRef(name="test-name")
    hra.spec.scale_up_triggers = [
        ScaleUpTrigger(github_event=GitHubEventScaleUpTriggerSpec(workflow_job=WorkflowJobSpec()))
    ]
    rd = RunnerDeployment()
    rd.metadata = ObjectMeta(name="test-name")
    rd.spec.template.metadata = ObjectMeta(labels=dict(template_labels or {}))
    rd.spec.template.spec.organization = "MYORG"
    rd.spec.template.spec.labels = list(runner_labels)
    store.add(HorizontalRunnerAutoscaler.KIND, hra)
    store.add(RunnerDeployment.KIND, rd)
    return store


def workflow_job_event(labels, action="queued", conclusion=None):
    return {
        "action": action,
        "workflow_job": {"id": 1, "run_id": 2, "status": action, "labels": labels, "conclusion": conclusion},
        "repository": {"name": "myrepo", "owner": {"login": "MYORG", "type": "Organization"}},
        "organization": {"login": "MYORG"},
    }


def check_run_event(owner_type):
    return {
        "action": "created",
        "check_run": {"name": "build", "status": "queued"},
        "repository": {"name": "myrepo", "owner": {"login": "myorg", "type": owner_type}},
    }


@pytest.fixture
def webhook():
    return GitHubWebhook(ObjectStore(), batch_scaler=BatchScaler(ObjectStore(), autostart=False))


def test_get_request_reports_running(webhook):
    response = webhook.handle("GET", {}, b"")
    assert response.status == 200
    assert response.body == "webhook server is running\n"


@pytest.mark.parametrize("owner_type", ["Organization", "User"])
def test_check_run_without_autoscalers(webhook, owner_type):
    response = post(webhook, "check_run", check_run_event(owner_type))
    assert (response.status, response.body) == (200, NO_TARGET)


def test_pull_request_without_autoscalers(webhook):
    event = {
        "pull_request": {"base": {"ref": "main"}},
        "repository": {"name": "myorg/myrepo", "organization": {"name": "myorg"}},
        "action": "created",
    }
    response = post(webhook, "pull_request", event)
    assert (response.status, response.body) == (200, NO_TARGET)


def test_push_without_autoscalers(webhook):
    event = {"repository": {"name": "myrepo", "organization": "myorg"}}
    response = post(webhook, "push", event)
    assert (response.status, response.body) == (200, NO_TARGET)


def test_ping(webhook):
    response = post(webhook, "ping", {"zen": "zen"})
    assert (response.status, response.body) == (200, "pong")


@pytest.mark.parametrize("labels", [["label1"], ["self-hosted", "label1"]])
def test_workflow_job_successful(labels):
    store = make_store(["label1"])
    scaler = BatchScaler(store, autostart=False)
    webhook = GitHubWebhook(store, batch_scaler=scaler)
    response = post(webhook, "workflow_job", workflow_job_event(labels))
    assert (response.status, response.body) == (200, "scaled test-name by 1")

    batches = scaler.collect(timeout=2.0)
    assert len(batches) == 1
    (batch,) = batches.values()
    assert batch.namespaced_name.name == "test-name"
    assert [op.trigger.amount for op in batch.scale_ops] == [1]
    assert batch.scale_ops[0].trigger.duration == timedelta(minutes=10)


@pytest.mark.parametrize("labels", [["label1"], ["self-hosted", "label1"]])
def test_workflow_job_wrong_labels(labels):
    store = make_store(["bad-label"])
    webhook = GitHubWebhook(store, batch_scaler=BatchScaler(store, autostart=False))
    response = post(webhook, "workflow_job", workflow_job_event(labels))
    assert (response.status, response.body) == (200, NO_TARGET)


@pytest.mark.parametrize("labels", [["label1"], ["self-hosted", "label1"]])
def test_workflow_job_old_label_matching_no_longer_works(labels):
    store = make_store(["bad-label"], template_labels={"label1": "label1"})
    webhook = GitHubWebhook(store, batch_scaler=BatchScaler(store, autostart=False))
    response = post(webhook, "workflow_job", workflow_job_event(labels))
    assert (response.status, response.body) == (200, NO_TARGET)


def test_workflow_job_completed_scales_down():
    store = make_store(["label1"])
    webhook = GitHubWebhook(store, batch_scaler=BatchScaler(store, autostart=False))
    response = post(webhook, "workflow_job", workflow_job_event(["label1"], "completed", "success"))
    assert (response.status, response.body) == (200, "scaled test-name by -1")


def test_workflow_job_skipped_is_ignored():
    store = make_store(["label1"])
    webhook = GitHubWebhook(store, batch_scaler=BatchScaler(store, autostart=False))
    response = post(webhook, "workflow_job", workflow_job_event(["label1"], "completed", "skipped"))
    assert (response.status, response.body) == (200, "")


def test_workflow_job_other_action_is_ignored(webhook):
    response = post(webhook, "workflow_job", workflow_job_event(["label1"], "in_progress"))
    assert (response.status, response.body) == (200, "")


def test_unknown_event_type_fails(webhook):
    response = post(webhook, "issues", {"action": "opened"})
    assert (response.status, response.body) == (500, "")


def test_missing_event_type_fails(webhook):
    response = webhook.handle("POST", {}, b"{}")
    assert response.status == 500
    assert "unknown X-Github-Event" in response.body


def test_invalid_json_fails(webhook):
    response = webhook.handle("POST", {"X-GitHub-Event": "push"}, b"{not json")
    assert response.status == 500


def sign(body, key):
    return "sha256=" + hmac.new(key, body, hashlib.sha256).hexdigest()


def test_signed_request_accepted():
    secret = "secret"
    webhook = GitHubWebhook(ObjectStore(), secret=secret)
    body = json.dumps({"zen": "zen"}).encode()
    headers = {"X-GitHub-Event": "ping", "X-Hub-Signature-256": sign(body, b"secret")}
    response = webhook.handle("POST", headers, body)
    assert (response.status, response.body) == (200, "pong")


def test_bad_signature_rejected():
    secret = "secret"
    webhook = GitHubWebhook(ObjectStore(), secret=secret)
    body = b'{"zen": "zen"}'
    headers = {"X-GitHub-Event": "ping", "X-Hub-Signature-256": sign(b"other", b"secret")}
    response = webhook.handle("POST", headers, body)
    assert (response.status, response.body) == (500, "payload signature check failed")


def test_missing_signature_rejected():
    secret = "secret"
    webhook = GitHubWebhook(ObjectStore(), secret=secret)
    response = webhook.handle("POST", {"X-GitHub-Event": "ping"}, b"{}")
    assert (response.status, response.body) == (500, "missing signature")


def test_validate_payload_sha1_and_sha256():
    body = b"payload"
    sha1 = "sha1=" + hmac.new(b"secret", body, hashlib.sha1).hexdigest()
    assert validate_payload(body, sha1, "secret") == body
    assert validate_payload(body, sign(body, b"secret"), b"secret") == body


@pytest.mark.parametrize("signature", ["nonsense", "md5=00", "sha256=zz"])
def test_validate_payload_malformed_signature(signature):
    with pytest.raises(ValueError, match="error parsing signature"):
        validate_payload(b"x", signature, "secret")


def event_trigger(**kwargs):
    return ScaleUpTrigger(github_event=GitHubEventScaleUpTriggerSpec(**kwargs))


def test_match_push_event():
    predicate = match_push_event({})
    assert predicate(event_trigger(push=PushSpec())) is True
    assert predicate(event_trigger(workflow_job=WorkflowJobSpec())) is False
    assert predicate(ScaleUpTrigger()) is False


def test_match_pull_request_event():
    event = {"action": "opened", "pull_request": {"base": {"ref": "main"}}}
    predicate = match_pull_request_event(event)
    assert predicate(event_trigger(pull_request=PullRequestSpec())) is True
    assert predicate(event_trigger(pull_request=PullRequestSpec(types=["opened"], branches=["ma*"]))) is True
    assert predicate(event_trigger(pull_request=PullRequestSpec(types=["closed"]))) is False
    assert predicate(event_trigger(pull_request=PullRequestSpec(branches=["develop"]))) is False
    assert predicate(event_trigger(push=PushSpec())) is False


def test_match_check_run_event():
    predicate = match_check_run_event(check_run_event("Organization"))
    assert predicate(event_trigger(check_run=CheckRunSpec())) is True
    assert predicate(
        event_trigger(check_run=CheckRunSpec(types=["created"], status="queued", names=["bui*"], repositories=["myrepo"]))
    ) is True
    assert predicate(event_trigger(check_run=CheckRunSpec(status="completed"))) is False
    assert predicate(event_trigger(check_run=CheckRunSpec(names=["test"]))) is False
    assert predicate(event_trigger(check_run=CheckRunSpec(repositories=["other"]))) is False


def test_wsgi_app_ping(webhook):
    body = json.dumps({"zen": "zen"}).encode()
    environ = {
        "REQUEST_METHOD": "POST",
        "CONTENT_TYPE": "application/json",
        "CONTENT_LENGTH": str(len(body)),
        "HTTP_X_GITHUB_EVENT": "ping",
        "wsgi.input": io.BytesIO(body),
    }
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    result = webhook.wsgi_app(environ, start_response)
    assert captured["status"] == "200 OK"
    assert b"".join(result) == b"pong"
    assert captured["headers"]["Content-Length"] == "4"


def test_wsgi_app_get(webhook):
    captured = {}
    result = webhook.wsgi_app({"REQUEST_METHOD": "GET"}, lambda s, h: captured.update(status=s))
    assert captured["status"] == "200 OK"
    assert b"".join(result) == b"webhook server is running\n"