# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""Shared fixtures and Kubernetes object builders for the test suite."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from kubernetes import client

START = datetime(2020, 11, 28, 1, 2, 3, tzinfo=timezone.utc)


def make_job(name="backup-1",
             namespace="default",
             uid=None,
             created=None,
             succeeded=None,
             failed=None,
             start_time=START,
             completion_time=None,
             annotations=None,
             cronjob=None,
             backoff_limit=None) -> client.V1Job:
    """Build a V1Job the way the API server returns it."""
    owner_references = None
    if cronjob:
        owner_references = [
            client.V1OwnerReference(api_version="batch/v1",
                                    kind="CronJob",
                                    name=cronjob,
                                    uid=f"{cronjob}-uid")
        ]
    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid or f"{name}-uid",
            creation_timestamp=created or datetime.now(timezone.utc) + timedelta(seconds=5),
            owner_references=owner_references),
        spec=client.V1JobSpec(
            backoff_limit=backoff_limit,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(annotations=annotations))),
        status=client.V1JobStatus(succeeded=succeeded,
                                  failed=failed,
                                  start_time=start_time,
                                  completion_time=completion_time))


def make_pod(name="backup-1-abcde",
             namespace="default",
             created=START,
             phase="Running",
             containers=("backup",)) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name,
                                     namespace=namespace,
                                     creation_timestamp=created),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name=c) for c in containers]),
        status=client.V1PodStatus(phase=phase))


def pod_list(*pods) -> client.V1PodList:
    return client.V1PodList(items=list(pods))


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def v1_api():
    return MagicMock(spec=client.CoreV1Api)


@pytest.fixture
def batch_api():
    return MagicMock(spec=client.BatchV1Api)


@pytest.fixture
def custom_api():
    return MagicMock(spec=client.CustomObjectsApi)


@pytest.fixture
def session():
    """requests.Session stand-in whose responses default to Slack 'ok'."""
    session = MagicMock()
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {'ok': True}
    session.post.return_value = response
    return session
