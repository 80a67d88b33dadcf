# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""Tests for the main entry point."""

import signal
from unittest.mock import MagicMock

import pytest

import main
from errors import ConfigurationError

ENV_VARS = ('SLACK_ENABLED', 'SLACK_TOKEN', 'MSTEAMSV2_ENABLED', 'DATADOG_ENABLE',
            'NAMESPACE', 'CRONJOB_REGEX')


@pytest.fixture
def env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def monitor_cls(monkeypatch):
    monitor_cls = MagicMock()
    monkeypatch.setattr(main, 'JobMonitor', monitor_cls)
    return monitor_cls


@pytest.fixture
def kube_config(monkeypatch):
    loader = MagicMock()
    monkeypatch.setattr(main, 'load_kube_config', loader)
    return loader


@pytest.fixture
def handlers(monkeypatch):
    installed = {}
    monkeypatch.setattr(main.signal, 'signal',
                        lambda signum, handler: installed.__setitem__(signum, handler))
    return installed


def test_missing_slack_token_exits(env, monitor_cls, kube_config, handlers):
    """Slack is on by default, so an empty environment is a startup error."""
    assert main.main([]) == 1

    monitor_cls.assert_not_called()
    assert handlers == {}


def test_kube_config_error_exits(env, monitor_cls, kube_config, handlers):
    env.setenv('SLACK_ENABLED', 'false')
    kube_config.side_effect = ConfigurationError("no cluster")

    assert main.main(['--kubeconfig', '/missing']) == 1

    kube_config.assert_called_once_with('/missing')
    monitor_cls.assert_not_called()


def test_backend_error_exits(env, monitor_cls, kube_config, handlers):
    """Errors raised while building backends inside JobMonitor are fatal too."""
    env.setenv('SLACK_ENABLED', 'false')
    monitor_cls.side_effect = ConfigurationError("Unknown notification backend")

    assert main.main([]) == 1

    assert handlers == {}


def test_namespace_flag_overrides_env(env, monitor_cls, kube_config, handlers):
    env.setenv('SLACK_ENABLED', 'false')
    env.setenv('NAMESPACE', 'ops')

    assert main.main(['--namespace', 'batch, reports']) == 0

    settings = monitor_cls.call_args.args[0]
    assert settings.namespaces == {'batch', 'reports'}
    monitor_cls.return_value.run.assert_called_once_with()


def test_namespace_from_env(env, monitor_cls, kube_config, handlers):
    env.setenv('SLACK_ENABLED', 'false')
    env.setenv('NAMESPACE', 'ops')

    main.main([])

    assert monitor_cls.call_args.args[0].namespaces == {'ops'}


def test_signals_stop_monitor(env, monitor_cls, kube_config, handlers):
    env.setenv('SLACK_ENABLED', 'false')

    assert main.main([]) == 0

    monitor = monitor_cls.return_value
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM}
    monitor.stop.assert_not_called()
    handlers[signal.SIGTERM](signal.SIGTERM, None)
    monitor.stop.assert_called_once_with()
    handlers[signal.SIGINT](signal.SIGINT, None)
    assert monitor.stop.call_count == 2
