# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""Tests for pod_handler module."""

import json
import threading
from datetime import timedelta
from unittest.mock import MagicMock, call

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from conftest import START, make_job, make_pod, pod_list
from errors import ParentScheduleLookupError, PodNotFoundError, PodWaitTimeout
from models import LogMode
from pod_handler import LogCollector, PodResolver, backoff_limit


@pytest.fixture
def resolver(v1_api, batch_api, custom_api, fake_clock):
    return PodResolver(v1_api,
                       batch_api,
                       custom_api,
                       poll_interval=10,
                       timeout=30,
                       clock=fake_clock,
                       sleep=fake_clock.sleep)


class TestResolvePod:

    def test_returns_most_recent_pod(self, resolver, v1_api):
        """Pods are ordered by creation time, newest wins."""
        newest = make_pod(name="p3", created=START + timedelta(minutes=2))
        oldest = make_pod(name="p1", created=START)
        middle = make_pod(name="p2", created=START + timedelta(minutes=1))
        v1_api.list_namespaced_pod.return_value = pod_list(newest, oldest, middle)

        pod = resolver.resolve_pod(make_job(uid="u-1"))

        assert pod.metadata.name == "p3"
        v1_api.list_namespaced_pod.assert_called_once_with(
            "default", label_selector="controller-uid=u-1")

    def test_falls_back_to_legacy_label(self, resolver, v1_api):
        v1_api.list_namespaced_pod.side_effect = [
            pod_list(), pod_list(make_pod(name="legacy"))
        ]

        pod = resolver.resolve_pod(make_job(name="backup-1"))

        assert pod.metadata.name == "legacy"
        assert v1_api.list_namespaced_pod.call_args_list[1] == call(
            "default", label_selector="job-name=backup-1")

    def test_no_pods(self, resolver, v1_api):
        v1_api.list_namespaced_pod.return_value = pod_list()

        with pytest.raises(PodNotFoundError):
            resolver.resolve_pod(make_job())

    def test_api_error(self, resolver, v1_api):
        v1_api.list_namespaced_pod.side_effect = ApiException(status=403,
                                                              reason="Forbidden")

        with pytest.raises(PodNotFoundError, match="Forbidden"):
            resolver.resolve_pod(make_job())


class TestWaitForPodRunning:

    def test_returns_when_not_pending(self, resolver, v1_api, fake_clock):
        v1_api.read_namespaced_pod.side_effect = [
            make_pod(phase="Pending"),
            make_pod(phase="Running"),
        ]

        pod = resolver.wait_for_pod_running(make_pod(phase="Pending"))

        assert pod.status.phase == "Running"
        assert fake_clock.sleeps == [10]
        v1_api.read_namespaced_pod.assert_called_with("backup-1-abcde", "default")

    def test_finished_pod_counts_as_started(self, resolver, v1_api):
        v1_api.read_namespaced_pod.return_value = make_pod(phase="Succeeded")

        assert resolver.wait_for_pod_running(make_pod()).status.phase == "Succeeded"

    def test_times_out(self, resolver, v1_api, fake_clock):
        v1_api.read_namespaced_pod.return_value = make_pod(phase="Pending")

        with pytest.raises(PodWaitTimeout):
            resolver.wait_for_pod_running(make_pod(phase="Pending"))

        assert v1_api.read_namespaced_pod.call_count == 3
        assert fake_clock.now == 30

    def test_stops_on_shutdown(self, v1_api, batch_api, custom_api):
        stop = threading.Event()
        stop.set()
        resolver = PodResolver(v1_api, batch_api, custom_api, stop_event=stop)

        with pytest.raises(PodWaitTimeout, match="shutdown"):
            resolver.wait_for_pod_running(make_pod(phase="Pending"))

        v1_api.read_namespaced_pod.assert_not_called()

    def test_read_error(self, resolver, v1_api):
        v1_api.read_namespaced_pod.side_effect = ApiException(status=404,
                                                              reason="Not Found")

        with pytest.raises(PodNotFoundError):
            resolver.wait_for_pod_running(make_pod())


class TestIsJobComplete:

    def test_backoff_limit_default(self):
        assert backoff_limit(make_job()) == 6
        assert backoff_limit(make_job(backoff_limit=0)) == 0
        assert backoff_limit(make_job(backoff_limit=3)) == 3

    def test_succeeded_is_complete(self, resolver, v1_api):
        assert resolver.is_job_complete(make_job(succeeded=1))
        v1_api.list_namespaced_pod.assert_not_called()

    def test_retries_remaining(self, resolver, v1_api):
        """backoffLimit=3 allows 4 attempts; 3 pods means a retry is coming."""
        v1_api.list_namespaced_pod.return_value = pod_list(
            *[make_pod(name=f"p{i}") for i in range(3)])

        assert not resolver.is_job_complete(make_job(failed=3, backoff_limit=3))
        v1_api.list_namespaced_pod.assert_called_with(
            "default", label_selector="controller-uid=backup-1-uid", limit=4)

    def test_retries_exhausted(self, resolver, v1_api):
        v1_api.list_namespaced_pod.return_value = pod_list(
            *[make_pod(name=f"p{i}") for i in range(4)])

        assert resolver.is_job_complete(make_job(failed=4, backoff_limit=3))

    def test_no_retries(self, resolver, v1_api):
        v1_api.list_namespaced_pod.return_value = pod_list(make_pod())

        assert resolver.is_job_complete(make_job(failed=1, backoff_limit=0))

    def test_listing_error_treated_as_complete(self, resolver, v1_api):
        v1_api.list_namespaced_pod.side_effect = ApiException(status=500)

        assert resolver.is_job_complete(make_job(failed=1))


class TestResolveParentSchedule:

    def test_standalone_job(self, resolver, batch_api):
        assert resolver.resolve_parent_schedule(make_job()) == ""
        batch_api.read_namespaced_cron_job.assert_not_called()

    def test_batch_v1(self, resolver, batch_api, custom_api):
        batch_api.read_namespaced_cron_job.return_value = client.V1CronJob(
            metadata=client.V1ObjectMeta(name="nightly-backup"))

        name = resolver.resolve_parent_schedule(make_job(cronjob="nightly-backup"))

        assert name == "nightly-backup"
        batch_api.read_namespaced_cron_job.assert_called_once_with(
            "nightly-backup", "default")
        custom_api.get_namespaced_custom_object.assert_not_called()

    def test_falls_back_to_v1beta1(self, resolver, batch_api, custom_api):
        batch_api.read_namespaced_cron_job.side_effect = ApiException(
            status=404, reason="Not Found")
        custom_api.get_namespaced_custom_object.return_value = {
            'metadata': {
                'name': 'nightly-backup'
            }
        }

        name = resolver.resolve_parent_schedule(make_job(cronjob="nightly-backup"))

        assert name == "nightly-backup"
        custom_api.get_namespaced_custom_object.assert_called_once_with(
            group="batch",
            version="v1beta1",
            namespace="default",
            plural="cronjobs",
            name="nightly-backup")

    def test_all_versions_fail(self, resolver, batch_api, custom_api):
        batch_api.read_namespaced_cron_job.side_effect = ApiException(status=404)
        custom_api.get_namespaced_custom_object.side_effect = ApiException(
            status=404)

        with pytest.raises(ParentScheduleLookupError):
            resolver.resolve_parent_schedule(make_job(cronjob="gone"))


class TestLogCollector:

    def test_owner_container(self, v1_api):
        v1_api.read_namespaced_pod_log.return_value = "done\n"

        log = LogCollector(v1_api).collect(make_pod(), "nightly-backup",
                                           LogMode.OWNER_CONTAINER)

        assert log == "done\n"
        v1_api.read_namespaced_pod_log.assert_called_once_with(
            "backup-1-abcde", "default", container="nightly-backup")

    def test_pod_only(self, v1_api):
        v1_api.read_namespaced_pod_log.return_value = "pod log"

        log = LogCollector(v1_api).collect(make_pod(), "ignored", LogMode.POD_ONLY)

        assert log == "pod log"
        v1_api.read_namespaced_pod_log.assert_called_once_with(
            "backup-1-abcde", "default")

    def test_pod_containers_single(self, v1_api):
        v1_api.read_namespaced_pod_log.return_value = "X"

        log = LogCollector(v1_api).collect(make_pod(containers=("c1",)), "ignored",
                                           LogMode.POD_CONTAINERS)

        assert log == "X"

    def test_pod_containers_multiple(self, v1_api):
        v1_api.read_namespaced_pod_log.return_value = "X"

        log = LogCollector(v1_api).collect(make_pod(containers=("c1", "c2")),
                                           "ignored", LogMode.POD_CONTAINERS)

        assert log == "Container c1 logs:\r\nX\r\nContainer c2 logs:\r\nX\r\n"

    def test_read_error_becomes_text(self, v1_api):
        v1_api.read_namespaced_pod_log.side_effect = ApiException(
            status=400, reason="container not found")

        log = LogCollector(v1_api).collect(make_pod(), "missing",
                                           LogMode.OWNER_CONTAINER)

        assert "container not found" in log

    def test_api_error_uses_status_message(self, v1_api):
        """The API server's Status message is the log text, not the HTTP dump."""
        message = ("a container name must be specified for pod backup-1-abcde, "
                   "choose one of: [c1 c2]")
        http_resp = MagicMock()
        http_resp.status = 400
        http_resp.reason = "Bad Request"
        http_resp.data = json.dumps({
            'kind': 'Status',
            'apiVersion': 'v1',
            'status': 'Failure',
            'message': message,
            'reason': 'BadRequest',
            'code': 400,
        }).encode()
        http_resp.getheaders.return_value = {
            'Content-Type': 'application/json',
            'Audit-Id': '1234-abcd',
        }
        v1_api.read_namespaced_pod_log.side_effect = ApiException(http_resp=http_resp)

        log = LogCollector(v1_api).collect(make_pod(containers=("c1", "c2")),
                                           "ignored", LogMode.POD_ONLY)

        assert log == message

    def test_api_error_unparseable_body(self, v1_api):
        http_resp = MagicMock()
        http_resp.status = 502
        http_resp.reason = "Bad Gateway"
        http_resp.data = b"<html>upstream error</html>"
        http_resp.getheaders.return_value = {}
        v1_api.read_namespaced_pod_log.side_effect = ApiException(http_resp=http_resp)

        log = LogCollector(v1_api).collect(make_pod(), "backup",
                                           LogMode.OWNER_CONTAINER)

        assert log == "Bad Gateway"

    def test_other_error_becomes_text(self, v1_api):
        v1_api.read_namespaced_pod_log.side_effect = ConnectionError("connection reset")

        log = LogCollector(v1_api).collect(make_pod(), "backup",
                                           LogMode.OWNER_CONTAINER)

        assert log == "connection reset"
