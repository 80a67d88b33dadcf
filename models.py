# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Data models for Kube Job Notifier.

This module contains:
- Job event variants delivered by the informer (JobAdded, JobUpdated, JobDeleted)
- Per-notification projections (MessageParam for chat backends, JobInfo for
  metrics backends)
- Log collection modes and small helpers for reading batch/v1 Job objects
"""

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Union

from kubernetes import client

from constants import LOG_MODE_ANNOTATION

# ============================================================================
# Job Events
# ============================================================================


@dataclass(frozen=True)
class JobAdded:
    """A Job appeared in the watched scope."""
    job: client.V1Job

    @property
    def key(self) -> str:
        return self.job.metadata.uid


@dataclass(frozen=True)
class JobUpdated:
    """A Job changed; old is the last version seen before this one."""
    old: client.V1Job
    new: client.V1Job

    @property
    def key(self) -> str:
        return self.new.metadata.uid


@dataclass(frozen=True)
class JobDeleted:
    """A Job was removed from the cluster."""
    job: client.V1Job

    @property
    def key(self) -> str:
        return self.job.metadata.uid


JobEvent = Union[JobAdded, JobUpdated, JobDeleted]

# ============================================================================
# Job Accessors
# ============================================================================


def template_annotations(job: client.V1Job) -> Dict[str, str]:
    """Annotations of the Job's pod template (empty dict when unset)."""
    template = job.spec.template if job.spec else None
    if template is None or template.metadata is None:
        return {}
    return dict(template.metadata.annotations or {})


def is_succeeded(job: client.V1Job) -> bool:
    status = job.status
    return bool(status and (status.succeeded or 0) >= 1)


def is_failed(job: client.V1Job) -> bool:
    status = job.status
    return bool(status and (status.failed or 0) >= 1)


# ============================================================================
# Log Modes
# ============================================================================


class LogMode(enum.Enum):
    """How container logs are gathered for a notification."""
    OWNER_CONTAINER = "OwnerContainer"
    POD_ONLY = "PodOnly"
    POD_CONTAINERS = "PodContainers"

    @classmethod
    def from_annotations(cls, annotations: Optional[Mapping[str, str]]) -> 'LogMode':
        """Read the log-mode annotation, defaulting to OwnerContainer."""
        value = (annotations or {}).get(LOG_MODE_ANNOTATION)
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.OWNER_CONTAINER


# ============================================================================
# Notification Parameters
# ============================================================================


def format_duration(duration: timedelta) -> str:
    """Render a duration as hours/minutes/seconds, e.g. 1h30m0s, 1m1s, 45s."""
    total = int(duration.total_seconds())
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


@dataclass
class MessageParam:
    """Everything a chat backend needs to render one notification."""
    job_name: str
    namespace: str
    cronjob_name: str = ""
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    execution_time: timedelta = timedelta(0)
    log: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """CronJob name when the Job has one, else the Job name."""
        return self.cronjob_name or self.job_name

    def with_execution_time(self, now: Optional[datetime] = None) -> 'MessageParam':
        """
        Return a copy with completion_time and execution_time filled in.

        A missing completion time defaults to now. The execution time is
        truncated to whole seconds and stays zero when start_time is unknown.
        """
        completion_time = self.completion_time
        execution_time = timedelta(0)
        if self.start_time is not None:
            if completion_time is None:
                completion_time = now or datetime.now(timezone.utc)
            elapsed = completion_time - self.start_time
            execution_time = timedelta(seconds=int(elapsed.total_seconds()))
        return dataclasses.replace(self,
                                   completion_time=completion_time,
                                   execution_time=execution_time)


@dataclass
class JobInfo:
    """Minimal job identity handed to metrics/alerting subscribers."""
    name: str
    namespace: str
    cronjob_name: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """Same derivation as MessageParam so failure and recovery share tags."""
        return self.cronjob_name or self.name

    @classmethod
    def from_message_param(cls, param: MessageParam) -> 'JobInfo':
        return cls(name=param.job_name,
                   namespace=param.namespace,
                   cronjob_name=param.cronjob_name,
                   annotations=dict(param.annotations))
