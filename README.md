# runner-autoscaler

A pure-Python library that holds the decision-making core for scaling fleets of
self-hosted CI runners. It uses only the standard library.

## Modules

- `runner_autoscaler.scheme`: `GroupVersion`, `ObjectMeta`, `NamespacedName`
  and `ObjectStore`. The store is a thread-safe, in-memory store of resources
  keyed by kind, namespace and name. It has `add`, `get`, `list`, `update` and
  `index_field`. A missing object raises `NotFoundError`. Objects are copied on
  the way in and on the way out.
- `runner_autoscaler.runner`: `Runner`, `RunnerSpec`, `RunnerConfig`,
  `RunnerPodSpec`, `WorkVolumeClaimTemplate` and the runner status types.
  `RunnerSpec.validate(root_path)` returns a list of `FieldError`. A spec must
  name exactly one of enterprise, organization or repository. The `kubernetes`
  container mode needs a `WorkVolumeClaimTemplate` whose access modes are
  `ReadWriteOnce` or `ReadWriteMany`. `Runner.validate()` raises
  `InvalidResourceError` when the spec is invalid.
- `runner_autoscaler.deployment`: `RunnerDeployment`, `RunnerTemplate` and
  their spec and status types. Validation covers the runner template spec.
- `runner_autoscaler.replicaset`: `RunnerReplicaSet`, whose validation also
  covers the runner template spec, and `RunnerSet`, which has no validation.
- `runner_autoscaler.hra`: `HorizontalRunnerAutoscaler` and its parts: scale-up
  triggers, capacity reservations, metrics, scheduled overrides and cache
  entries.
- `runner_autoscaler.autoscaling`: `suggest_desired_replicas` and the two metric
  functions it dispatches to.
  - `TotalNumberOfQueuedAndInProgressWorkflowRuns` counts queued and
    in-progress workflow runs. When a run has jobs, it counts the jobs instead,
    but only those whose labels the runners carry (`self-hosted` is ignored).
  - `PercentageRunnersBusy` scales up or down by a factor or an adjustment when
    the busy fraction crosses a threshold.

  Invalid metric configuration raises `AutoscalingError`. `GitHubClient` is a
  small REST client. It follows `Link` pagination, and its HTTP transport can
  be replaced by any callable `(url, headers) -> (status, headers, body)`.
- `runner_autoscaler.targets`: scale-target discovery.
  - `TargetFinder` finds the single autoscaler that a repository, organization,
    enterprise or runner group refers to, through an index registered on the
    store.
  - `RunnerGroups` orders runner groups: organization before enterprise, and
    custom before default.
  - Helpers: `enterprise_key`, `organizational_runner_group_key`,
    `enterprise_runner_group_key`, `match_trigger_condition_against_event`,
    `get_valid_capacity_reservations` and `index_keys`.
- `runner_autoscaler.batch_scale`: `BatchScaler`.
  - It queues scale targets and collects them for an interval (3 seconds by
    default).
  - It groups them by autoscaler and applies each group as one update of the
    autoscaler's capacity reservations. A positive amount adds a reservation. A
    negative amount removes the first reservation of that size. Expired
    reservations are dropped.
  - Failed batches are retried with backoff delays of 1, 2, 4, 8 and then 16
    seconds.
- `runner_autoscaler.webhook`: `GitHubWebhook`.
  - `handle(method, headers, body)` returns a `WebhookResponse`. When a secret
    is set, it checks `X-Hub-Signature-256` or `X-Hub-Signature` with
    `validate_payload`.
  - It answers `ping` with `pong`. It finds targets for `push`, `pull_request`,
    `check_run` and `workflow_job` (`queued` scales up by 1; `completed`, unless
    skipped, scales down by 1), and queues them to a `BatchScaler` on a
    background thread. The queue holds 100 targets by default.
  - `wsgi_app` serves `handle` as a WSGI application.

## Examples

Index keys:

```python
from runner_autoscaler.targets import (
    enterprise_key,
    enterprise_runner_group_key,
    organizational_runner_group_key,
)

enterprise_key("acme")                          # "enterprises/acme"
organizational_runner_group_key("myorg", "gpu") # "myorg/group/gpu"
enterprise_runner_group_key("acme", "gpu")      # "enterprises/acme/group/gpu"
```

Trigger conditions. An empty list of types matches every action:

```python
from runner_autoscaler.targets import match_trigger_condition_against_event

match_trigger_condition_against_event([], None)                # True
match_trigger_condition_against_event(["created"], "created")  # True
match_trigger_condition_against_event(["created"], None)       # False
```

Capacity reservations whose expiration time is not after `now` are dropped:

```python
from datetime import datetime, timedelta, timezone

from runner_autoscaler.hra import (
    CapacityReservation,
    HorizontalRunnerAutoscaler,
    HorizontalRunnerAutoscalerSpec,
)
from runner_autoscaler.targets import get_valid_capacity_reservations

now = datetime.now(timezone.utc)
hra = HorizontalRunnerAutoscaler(
    spec=HorizontalRunnerAutoscalerSpec(
        capacity_reservations=[
            CapacityReservation(expiration_time=now - timedelta(seconds=1), replicas=1),
            CapacityReservation(expiration_time=now, replicas=2),
            CapacityReservation(expiration_time=now + timedelta(seconds=1), replicas=3),
        ]
    )
)
[r.replicas for r in get_valid_capacity_reservations(hra, now)]  # [3]
```

Handling a webhook request directly:

```python
from runner_autoscaler.scheme import ObjectStore
from runner_autoscaler.webhook import GitHubWebhook

webhook = GitHubWebhook(ObjectStore())
response = webhook.handle("POST", {"X-GitHub-Event": "ping"}, b"{}")
response.status, response.body  # (200, "pong")
```

Because `wsgi_app` is a WSGI application, any WSGI server can serve it, for
example the standard library's `wsgiref.simple_server.make_server`.

## What it does not do

- The package has no command-line program and starts no server by itself.
- It does not talk to a cluster. Resources live only in the in-memory
  `ObjectStore` and are lost when the process ends.
- It runs no reconciliation loop. Nothing turns suggested replicas or capacity
  reservations into running runners; the caller has to act on them.
- Finding runner groups visible to a repository needs a `visible_runner_groups`
  callable that the caller supplies. Without one, every managed group is treated
  as visible.

## Running the tests

Install the `test` extra, then run `pytest`.