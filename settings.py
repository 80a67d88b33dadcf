# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Runtime configuration for Kube Job Notifier.

All settings are read once from the process environment at startup. The
notification backends are described as a list of BackendSpec entries
(kind + settings) which job_monitor resolves into concrete Notifier and
EventSubscriber instances.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Pattern, Set

import constants
from errors import ConfigurationError

BACKEND_SLACK = "slack"
BACKEND_MSTEAMS = "msteamsv2"
BACKEND_DATADOG = "datadog"


def parse_namespaces(namespace_arg: str) -> set:
    """Parse namespace argument into a set of namespaces."""
    if not namespace_arg or namespace_arg.strip() == '':
        return set()  # Empty set means watch all namespaces

    # Split by comma and strip whitespace
    namespaces = {ns.strip() for ns in namespace_arg.split(',') if ns.strip()}
    return namespaces


def is_enabled(value: Optional[str]) -> bool:
    """Per-event switches are on unless explicitly set to 'false'."""
    return value != constants.NOTIFY_DISABLED_VALUE


def _is_true(value: Optional[str]) -> bool:
    return (value or '').strip().lower() == 'true'


def _float_setting(environ: Mapping[str, str], key: str,
                   default: float) -> float:
    raw = environ.get(key, '')
    if raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}")
    return value


@dataclass
class BackendSpec:
    """One configured notification backend."""
    kind: str
    settings: Dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    """Process-wide configuration resolved at startup."""
    namespaces: Set[str] = field(default_factory=set)
    cronjob_regex: Optional[Pattern] = None
    backends: List[BackendSpec] = field(default_factory=list)
    notify_parallel: bool = True
    notify_timeout: float = constants.NOTIFY_TIMEOUT
    pod_wait_timeout: float = constants.POD_WAIT_TIMEOUT
    pod_wait_poll_interval: float = constants.POD_WAIT_POLL_INTERVAL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: a required credential is missing or a value
                cannot be parsed.
        """
        env = os.environ if environ is None else environ

        regex = None
        regex_raw = env.get('CRONJOB_REGEX', '')
        if regex_raw:
            try:
                regex = re.compile(regex_raw)
            except re.error as e:
                raise ConfigurationError(f"CRONJOB_REGEX is invalid: {e}")

        return cls(
            namespaces=parse_namespaces(env.get('NAMESPACE', '')),
            cronjob_regex=regex,
            backends=_backends_from_env(env),
            notify_parallel=env.get('NOTIFY_PARALLEL', 'true').strip().lower()
            != 'false',
            notify_timeout=_float_setting(env, 'NOTIFY_TIMEOUT_SECONDS',
                                          constants.NOTIFY_TIMEOUT),
            pod_wait_timeout=_float_setting(env, 'POD_WAIT_TIMEOUT_SECONDS',
                                            constants.POD_WAIT_TIMEOUT),
            pod_wait_poll_interval=_float_setting(
                env, 'POD_WAIT_POLL_SECONDS',
                constants.POD_WAIT_POLL_INTERVAL),
        )


def _backends_from_env(env: Mapping[str, str]) -> List[BackendSpec]:
    backends = []

    if env.get('SLACK_ENABLED', 'true').strip().lower() != 'false':
        token = env.get('SLACK_TOKEN', '')
        if not token:
            raise ConfigurationError(
                "SLACK_TOKEN must be set when Slack notifications are enabled")
        backends.append(
            BackendSpec(kind=BACKEND_SLACK,
                        settings={
                            'token': token,
                            'channel': env.get('SLACK_CHANNEL', ''),
                            'username': env.get('SLACK_USERNAME', ''),
                            'succeed_channel': env.get('SLACK_SUCCEED_CHANNEL', ''),
                            'failed_channel': env.get('SLACK_FAILED_CHANNEL', ''),
                            'started_notify': env.get('SLACK_STARTED_NOTIFY', ''),
                            'succeeded_notify': env.get('SLACK_SUCCEEDED_NOTIFY', ''),
                            'failed_notify': env.get('SLACK_FAILED_NOTIFY', ''),
                        }))

    if _is_true(env.get('MSTEAMSV2_ENABLED')):
        webhook_url = env.get('MSTEAMSV2_WEBHOOK_URL', '')
        if not webhook_url:
            raise ConfigurationError(
                "MSTEAMSV2_WEBHOOK_URL must be set when Teams notifications are enabled")
        backends.append(
            BackendSpec(kind=BACKEND_MSTEAMS,
                        settings={
                            'webhook_url': webhook_url,
                            'started_notify': env.get('MSTEAMSV2_STARTED_NOTIFY', ''),
                            'succeeded_notify': env.get('MSTEAMSV2_SUCCEEDED_NOTIFY', ''),
                            'failed_notify': env.get('MSTEAMSV2_FAILED_NOTIFY', ''),
                        }))

    if _is_true(env.get('DATADOG_ENABLE')):
        backends.append(
            BackendSpec(kind=BACKEND_DATADOG,
                        settings={
                            'socket_path': env.get('DD_DOGSTATSD_SOCKET',
                                                   constants.DATADOG_DEFAULT_SOCKET),
                            'host': env.get('DD_AGENT_HOST', ''),
                            'port': env.get('DD_DOGSTATSD_PORT', ''),
                            'tags': env.get('DD_TAGS', ''),
                            'namespace': env.get('DD_NAMESPACE', ''),
                        }))

    return backends
