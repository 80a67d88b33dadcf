# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""Exception types raised by Kube Job Notifier."""


class JobNotifierError(Exception):
    """Base class for all notifier errors."""


class ConfigurationError(JobNotifierError):
    """Required configuration is missing or invalid. Fatal at startup."""


class PodNotFoundError(JobNotifierError):
    """No pod could be correlated with a Job."""


class PodWaitTimeout(JobNotifierError):
    """The correlated pod did not leave Pending in time (or shutdown began)."""


class ParentScheduleLookupError(JobNotifierError):
    """The owning CronJob could not be read under any supported API version."""


class BackendDeliveryError(JobNotifierError):
    """A Notifier or EventSubscriber call failed."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend


class LogUploadError(BackendDeliveryError):
    """Uploading job logs to the chat backend failed."""
