# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""Tests for job_monitor module."""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_job
from errors import ConfigurationError
from job_monitor import JobMonitor, KeyedEventDispatcher, build_backends, load_kube_config
from models import JobAdded, JobDeleted, JobUpdated
from notifiers import MsTeamsNotifier, SlackNotifier
from settings import BackendSpec, Settings
from subscriptions import DatadogSubscriber


class TestKeyedEventDispatcher:

    def test_same_key_in_order(self):
        handled = []
        done = threading.Event()

        def handler(event):
            time.sleep(0.01)
            handled.append(event)
            if len(handled) == 3:
                done.set()

        dispatcher = KeyedEventDispatcher(handler, max_workers=4)
        job = make_job(uid="u1")
        events = [
            JobAdded(job),
            JobUpdated(old=job, new=make_job(uid="u1", failed=1)),
            JobDeleted(job),
        ]
        for event in events:
            assert dispatcher.submit(event)

        assert done.wait(5)
        dispatcher.shutdown(wait=True)
        assert handled == events

    def test_different_keys_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)
        finished = []
        done = threading.Event()

        def handler(event):
            # Breaks the barrier unless both jobs are in flight together
            barrier.wait()
            finished.append(event.key)
            if len(finished) == 2:
                done.set()

        dispatcher = KeyedEventDispatcher(handler, max_workers=2)
        dispatcher.submit(JobAdded(make_job(uid="a")))
        dispatcher.submit(JobAdded(make_job(uid="b")))

        assert done.wait(5)
        dispatcher.shutdown(wait=True)

        assert sorted(finished) == ["a", "b"]

    def test_handler_error_does_not_stop_key(self):
        handled = []
        done = threading.Event()

        def handler(event):
            if isinstance(event, JobAdded):
                raise RuntimeError("boom")
            handled.append(event)
            done.set()

        dispatcher = KeyedEventDispatcher(handler)
        job = make_job(uid="u1")
        dispatcher.submit(JobAdded(job))
        dispatcher.submit(JobDeleted(job))

        assert done.wait(5)
        dispatcher.shutdown(wait=True)
        assert len(handled) == 1

    def test_rejects_after_shutdown(self):
        dispatcher = KeyedEventDispatcher(MagicMock())
        dispatcher.shutdown()

        assert not dispatcher.submit(JobAdded(make_job()))


def test_build_backends():
    settings = Settings(backends=[
        BackendSpec('slack', {'token': 'xoxb', 'channel': '#jobs'}),
        BackendSpec('msteamsv2', {'webhook_url': 'https://teams.test/hook'}),
        BackendSpec('datadog', {'socket_path': '/tmp/dsd.socket'}),
    ],
                        notify_timeout=5)

    notifiers, subscribers = build_backends(settings)

    assert isinstance(notifiers['slack'], SlackNotifier)
    assert notifiers['slack'].timeout == 5
    assert isinstance(notifiers['msteamsv2'], MsTeamsNotifier)
    assert isinstance(subscribers['datadog'], DatadogSubscriber)


def test_build_backends_unknown_kind():
    with pytest.raises(ConfigurationError, match="pagerduty"):
        build_backends(Settings(backends=[BackendSpec('pagerduty')]))


def test_load_kube_config_prefers_incluster():
    with patch('job_monitor.config') as config:
        config.ConfigException = Exception

        load_kube_config()

        config.load_incluster_config.assert_called_once_with()
        config.load_kube_config.assert_not_called()


def test_load_kube_config_falls_back_to_kubeconfig():
    with patch('job_monitor.config') as config:
        config.ConfigException = Exception
        config.load_incluster_config.side_effect = Exception("not in cluster")

        load_kube_config()

        config.load_kube_config.assert_called_once_with()


def test_load_kube_config_explicit_path():
    with patch('job_monitor.config') as config:
        config.ConfigException = Exception

        load_kube_config("/etc/kube/config")

        config.load_kube_config.assert_called_once_with(config_file="/etc/kube/config")
        config.load_incluster_config.assert_not_called()


def test_load_kube_config_fails():
    with patch('job_monitor.config') as config:
        config.ConfigException = Exception
        config.load_kube_config.side_effect = Exception("no kubeconfig")
        config.load_incluster_config.side_effect = Exception("not in cluster")

        with pytest.raises(ConfigurationError):
            load_kube_config()


@pytest.mark.parametrize("namespaces, watch_namespace, filter_namespaces", [
    (set(), "", set()),
    ({"ops"}, "ops", set()),
    ({"ops", "batch"}, "", {"ops", "batch"}),
])
def test_monitor_namespace_modes(namespaces, watch_namespace, filter_namespaces,
                                 v1_api, batch_api, custom_api):
    monitor = JobMonitor(Settings(namespaces=namespaces), v1_api, batch_api,
                         custom_api)

    assert monitor.watch_namespace == watch_namespace
    assert monitor.job_informer.namespace == watch_namespace
    assert monitor.job_informer.filter_namespaces == filter_namespaces
    monitor.dispatcher.shutdown()
    monitor.router.close()


def test_monitor_run_and_stop(v1_api, batch_api, custom_api):
    monitor = JobMonitor(Settings(), v1_api, batch_api, custom_api)
    monitor.job_informer = MagicMock()

    threading.Timer(0.1, monitor.stop).start()
    monitor.run()

    monitor.job_informer.start.assert_called_once()
    monitor.job_informer.stop.assert_called_once()
    assert not monitor.dispatcher.submit(JobAdded(make_job()))
