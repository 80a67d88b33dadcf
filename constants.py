# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Constants and configuration defaults for Kube Job Notifier.

This module contains all constants used across the application:
- Annotation keys read from Job pod templates
- Pod correlation labels
- Pod wait and notification timing defaults
- Backend defaults (Slack, Microsoft Teams, Datadog)
"""

# ============================================================================
# Annotations (read from job.spec.template.metadata.annotations)
# ============================================================================
ANNOTATION_PREFIX = "kube-job-notifier/"

LOG_MODE_ANNOTATION = ANNOTATION_PREFIX + "log-mode"

DEFAULT_CHANNEL_ANNOTATION = ANNOTATION_PREFIX + "default-channel"
SUCCESS_CHANNEL_ANNOTATION = ANNOTATION_PREFIX + "success-channel"
STARTED_CHANNEL_ANNOTATION = ANNOTATION_PREFIX + "started-channel"
FAILED_CHANNEL_ANNOTATION = ANNOTATION_PREFIX + "failed-channel"

SUPPRESS_SUCCESS_NOTIFICATION = ANNOTATION_PREFIX + "suppress-success-notification"
SUPPRESS_STARTED_NOTIFICATION = ANNOTATION_PREFIX + "suppress-started-notification"
SUPPRESS_FAILED_NOTIFICATION = ANNOTATION_PREFIX + "suppress-failed-notification"

SUPPRESS_SUCCESS_SUBSCRIPTION = ANNOTATION_PREFIX + "suppress-success-datadog-subscription"
SUPPRESS_FAILED_SUBSCRIPTION = ANNOTATION_PREFIX + "suppress-failed-datadog-subscription"

# ============================================================================
# Pod Correlation
# ============================================================================
# Current scheme: pods carry the UID of the Job that created them
POD_UID_LABEL = "controller-uid"
# Legacy scheme: pods carry the Job name
POD_NAME_LABEL = "job-name"

# Parent schedule kind in Job ownerReferences
CRONJOB_KIND = "CronJob"

# CronJob API versions, tried in order
CRONJOB_API_VERSIONS = ("v1", "v1beta1")

# Kubernetes default when job.spec.backoffLimit is unset
DEFAULT_BACKOFF_LIMIT = 6

# ============================================================================
# Event Types
# ============================================================================
EVENT_STARTED = "started"
EVENT_SUCCEEDED = "succeeded"
EVENT_FAILED = "failed"

# ============================================================================
# Pod Wait Configuration
# ============================================================================
# Poll interval while waiting for the correlated pod to leave Pending
POD_WAIT_POLL_INTERVAL: float = 10.0  # seconds

# Give up waiting for the pod after this long
POD_WAIT_TIMEOUT: float = 1200.0  # seconds (20 minutes)

POD_PENDING_PHASE = "Pending"

# ============================================================================
# Notification Delivery Configuration
# ============================================================================
NOTIFY_TIMEOUT: float = 30.0  # seconds, per backend call

DISPATCHER_WORKERS = 8

# Value of a *_NOTIFY env flag that turns an event type off
NOTIFY_DISABLED_VALUE = "false"

# ============================================================================
# Slack
# ============================================================================
SLACK_API_URL = "https://slack.com/api"
SLACK_COLORS = {
    'Normal': 'good',
    'Warning': 'warning',
    'Danger': 'danger',
}

# ============================================================================
# Microsoft Teams
# ============================================================================
TEAMS_COLOR_RED = "Attention"
TEAMS_COLOR_GREEN = "Good"
TEAMS_COLOR_GREY = "Warning"

# ============================================================================
# Datadog
# ============================================================================
DATADOG_DEFAULT_SOCKET = "/var/run/datadog/dsd.socket"
DATADOG_DEFAULT_PORT = 8125
DATADOG_HOSTNAME = "kube-job-notifier"
DATADOG_SERVICE_CHECK = "kube_job_notifier.job.status"
