# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Metrics/alerting subscribers for Kube Job Notifier.

An EventSubscriber records job success and failure as a service-check-style
event. The tag set is derived from the job's display name (CronJob name when
present) and namespace so a failure and the following success for the same
CronJob are seen by the backend as a recovery.
"""

import abc
import logging
from typing import List, Mapping, Optional

from datadog.dogstatsd import DogStatsd

from constants import (
    DATADOG_DEFAULT_PORT,
    DATADOG_HOSTNAME,
    DATADOG_SERVICE_CHECK,
    SUPPRESS_FAILED_SUBSCRIPTION,
    SUPPRESS_SUCCESS_SUBSCRIPTION,
)
from errors import BackendDeliveryError, ConfigurationError
from models import JobInfo

logger = logging.getLogger(__name__)


def is_subscription_suppressed(annotations: Optional[Mapping[str, str]],
                               annotation_name: str) -> bool:
    return (annotations or {}).get(annotation_name) == "true"


class EventSubscriber(abc.ABC):
    """Contract for metrics/alerting backends."""

    name = "subscriber"

    @abc.abstractmethod
    def success_event(self, job_info: JobInfo) -> bool:
        """Record a succeeded job. Returns False if suppressed."""

    @abc.abstractmethod
    def fail_event(self, job_info: JobInfo) -> bool:
        """Record a failed job. Returns False if suppressed."""


def parse_tags(raw: str) -> List[str]:
    """Split a comma-separated DD_TAGS value into individual tags."""
    return [tag.strip() for tag in (raw or '').split(',') if tag.strip()]


class DatadogSubscriber(EventSubscriber):
    """Sends DogStatsD service checks for job outcomes."""

    name = "datadog"

    def __init__(self, client: DogStatsd):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> 'DatadogSubscriber':
        """
        Build a DogStatsD client from backend settings.

        A configured agent host selects UDP; otherwise the agent's Unix
        domain socket is used.
        """
        namespace = settings.get('namespace') or None
        constant_tags = parse_tags(settings.get('tags', ''))
        host = settings.get('host', '')
        if host:
            port_raw = settings.get('port') or str(DATADOG_DEFAULT_PORT)
            try:
                port = int(port_raw)
            except ValueError:
                raise ConfigurationError(
                    f"DD_DOGSTATSD_PORT must be an integer, got {port_raw!r}")
            client = DogStatsd(host=host,
                               port=port,
                               namespace=namespace,
                               constant_tags=constant_tags)
        else:
            client = DogStatsd(socket_path=settings.get('socket_path'),
                               namespace=namespace,
                               constant_tags=constant_tags)
        return cls(client)

    @staticmethod
    def tags_for(job_info: JobInfo) -> List[str]:
        return [
            f"job_name:{job_info.display_name}",
            f"namespace:{job_info.namespace}",
        ]

    def _service_check(self, job_info: JobInfo, status: int,
                       message: str) -> None:
        try:
            self.client.service_check(DATADOG_SERVICE_CHECK,
                                      status,
                                      tags=self.tags_for(job_info),
                                      hostname=DATADOG_HOSTNAME,
                                      message=message)
        except OSError as e:
            raise BackendDeliveryError(self.name,
                                       f"service check failed: {e}") from e
        logger.info(f"[SUBSCRIBE] Event subscribe successfully {job_info.display_name}")

    def success_event(self, job_info: JobInfo) -> bool:
        if is_subscription_suppressed(job_info.annotations,
                                      SUPPRESS_SUCCESS_SUBSCRIPTION):
            logger.info(f"[SUBSCRIBE] Subscription for {job_info.name} is suppressed")
            return False
        self._service_check(job_info, DogStatsd.OK, "Job succeed")
        return True

    def fail_event(self, job_info: JobInfo) -> bool:
        if is_subscription_suppressed(job_info.annotations,
                                      SUPPRESS_FAILED_SUBSCRIPTION):
            logger.info(f"[SUBSCRIBE] Subscription for {job_info.name} is suppressed")
            return False
        self._service_check(job_info, DogStatsd.CRITICAL, "Job failed")
        return True
