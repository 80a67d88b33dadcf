# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Chat notification backends for Kube Job Notifier.

Notifier implements the behaviour every chat backend shares (per-event
enable switches, per-job suppression annotations, channel resolution, log
hosting and execution time) and leaves only the wire call to subclasses:
- SlackNotifier: Slack Web API (chat.postMessage + external file upload)
- MsTeamsNotifier: Microsoft Teams workflow webhook (Adaptive Card)
"""

import abc
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

import requests

from constants import (
    DEFAULT_CHANNEL_ANNOTATION,
    EVENT_FAILED,
    EVENT_STARTED,
    EVENT_SUCCEEDED,
    FAILED_CHANNEL_ANNOTATION,
    NOTIFY_TIMEOUT,
    SLACK_API_URL,
    SLACK_COLORS,
    STARTED_CHANNEL_ANNOTATION,
    SUCCESS_CHANNEL_ANNOTATION,
    SUPPRESS_FAILED_NOTIFICATION,
    SUPPRESS_STARTED_NOTIFICATION,
    SUPPRESS_SUCCESS_NOTIFICATION,
    TEAMS_COLOR_GREEN,
    TEAMS_COLOR_GREY,
    TEAMS_COLOR_RED,
)
from errors import BackendDeliveryError, LogUploadError
from models import MessageParam, format_duration
from settings import is_enabled

logger = logging.getLogger(__name__)

CHANNEL_ANNOTATIONS = {
    EVENT_STARTED: STARTED_CHANNEL_ANNOTATION,
    EVENT_SUCCEEDED: SUCCESS_CHANNEL_ANNOTATION,
    EVENT_FAILED: FAILED_CHANNEL_ANNOTATION,
}

SUPPRESS_ANNOTATIONS = {
    EVENT_STARTED: SUPPRESS_STARTED_NOTIFICATION,
    EVENT_SUCCEEDED: SUPPRESS_SUCCESS_NOTIFICATION,
    EVENT_FAILED: SUPPRESS_FAILED_NOTIFICATION,
}


def is_notification_suppressed(annotations: Optional[Mapping[str, str]],
                               annotation_name: str) -> bool:
    """True only when the annotation is present and exactly 'true'."""
    return (annotations or {}).get(annotation_name) == "true"


def get_annotation_channel(annotations: Optional[Mapping[str, str]],
                           annotation_name: str) -> str:
    """Event channel annotation, falling back to the default-channel one."""
    annotations = annotations or {}
    if annotation_name in annotations:
        return annotations[annotation_name]
    return annotations.get(DEFAULT_CHANNEL_ANNOTATION, "")


def event_switches(settings: Mapping[str, str]) -> Dict[str, bool]:
    """Read the started/succeeded/failed *_NOTIFY switches of a backend."""
    return {
        EVENT_STARTED: is_enabled(settings.get('started_notify')),
        EVENT_SUCCEEDED: is_enabled(settings.get('succeeded_notify')),
        EVENT_FAILED: is_enabled(settings.get('failed_notify')),
    }


# ============================================================================
# Message Rendering
# ============================================================================


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _slack_time(value: datetime) -> str:
    value = _utc(value)
    return f"{value.year}/{value.month}/{value.day} {value:%H:%M:%S} UTC"


def _teams_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    offset = int(value.utcoffset().total_seconds()) // 60
    sign = '-' if offset < 0 else '+'
    hours, minutes = divmod(abs(offset), 60)
    return f"{value:%Y-%m-%d %H:%M:%S} {sign}{hours:02d}:{minutes:02d}"


def render_slack_message(param: MessageParam) -> str:
    """Render the Slack attachment text for a notification."""
    lines = [
        "",
        f" *CronJobName*: {param.cronjob_name}" if param.cronjob_name else "",
        f" *JobName*: {param.job_name}",
        f" *Namespace*: {param.namespace}" if param.namespace else "",
        f" *StartTime*: {_slack_time(param.start_time)}"
        if param.start_time else "",
        f" *CompletionTime*: {_slack_time(param.completion_time)}"
        if param.completion_time else "",
        f" *ExecutionTime*: {format_duration(param.execution_time)}"
        if param.execution_time else "",
        f" *Loglink*: {param.log}" if param.log else "",
    ]
    return "\n".join(lines)


def render_teams_message(param: MessageParam) -> str:
    """Render the Markdown body of a Teams Adaptive Card."""
    lines = [
        "",
        f"**CronJobName**: {param.cronjob_name}" if param.cronjob_name else "",
        f"**JobName**: {param.job_name}",
        f"**Namespace**: {param.namespace}" if param.namespace else "",
        f"**StartTime**: {_teams_time(param.start_time)}"
        if param.start_time else "",
        f"**CompletionTime**: {_teams_time(param.completion_time)}"
        if param.completion_time else "",
        f"**ExecutionTime**: {format_duration(param.execution_time)}"
        if param.execution_time else "",
    ]
    return "\n".join(lines)


# ============================================================================
# Notifier Contract
# ============================================================================


class Notifier(abc.ABC):
    """
    Base class for chat notification backends.

    Every notify_* call checks, in order and before any network call:
    1. the backend's enable switch for the event type
    2. the Job's suppress-<event>-notification annotation
    Then the destination channel is resolved, logs are hosted externally
    (terminal events only) and the execution time is computed.
    """

    name = "notifier"

    def __init__(self,
                 event_enabled: Optional[Dict[str, bool]] = None,
                 timeout: float = NOTIFY_TIMEOUT):
        self.event_enabled = event_enabled or {}
        self.timeout = timeout

    def notify_start(self, param: MessageParam,
                     channel: Optional[str] = None) -> bool:
        return self._notify(EVENT_STARTED, param, channel)

    def notify_success(self, param: MessageParam,
                       channel: Optional[str] = None) -> bool:
        return self._notify(EVENT_SUCCEEDED, param, channel)

    def notify_failed(self, param: MessageParam,
                      channel: Optional[str] = None) -> bool:
        return self._notify(EVENT_FAILED, param, channel)

    def _notify(self, event: str, param: MessageParam,
                channel: Optional[str]) -> bool:
        """Returns False when the notification was skipped, True when sent."""
        if not self.event_enabled.get(event, True):
            logger.debug(
                f"[NOTIFY] {self.name} {event} notifications are disabled")
            return False

        if is_notification_suppressed(param.annotations,
                                      SUPPRESS_ANNOTATIONS[event]):
            logger.info(
                f"[NOTIFY] {self.name} {event} notification for {param.job_name} is suppressed")
            return False

        target = self.resolve_channel(event, param.annotations, channel)

        if event != EVENT_STARTED:
            if param.log:
                param = dataclasses.replace(param,
                                            log=self.host_log(param, target))
            param = param.with_execution_time()

        self.send(event, param, target)
        return True

    def resolve_channel(self,
                        event: str,
                        annotations: Optional[Mapping[str, str]],
                        override: Optional[str] = None) -> str:
        """
        Pick the destination channel.

        Precedence: explicit override, event channel annotation,
        default-channel annotation, then the backend's static default.
        """
        if override:
            return override
        annotated = get_annotation_channel(annotations,
                                           CHANNEL_ANNOTATIONS[event])
        if annotated:
            return annotated
        return self.default_channel(event)

    def default_channel(self, event: str) -> str:
        return ""

    def host_log(self, param: MessageParam, channel: str) -> str:
        """Store the log somewhere linkable; backends without storage drop it."""
        return ""

    @abc.abstractmethod
    def send(self, event: str, param: MessageParam, channel: str) -> None:
        """Deliver a rendered notification. Raises BackendDeliveryError."""


# ============================================================================
# Slack
# ============================================================================


class SlackNotifier(Notifier):
    """Posts notifications through the Slack Web API."""

    name = "slack"

    TITLES = {
        EVENT_STARTED: ("Job Start", SLACK_COLORS['Normal']),
        EVENT_SUCCEEDED: ("Job Success", SLACK_COLORS['Normal']),
        EVENT_FAILED: ("Job Failed", SLACK_COLORS['Danger']),
    }

    def __init__(self,
                 token: str,
                 channel: str = "",
                 username: str = "",
                 succeed_channel: str = "",
                 failed_channel: str = "",
                 event_enabled: Optional[Dict[str, bool]] = None,
                 session: Optional[requests.Session] = None,
                 api_url: str = SLACK_API_URL,
                 timeout: float = NOTIFY_TIMEOUT):
        super().__init__(event_enabled=event_enabled, timeout=timeout)
        self.token = token
        self.channel = channel
        self.username = username
        self.succeed_channel = succeed_channel
        self.failed_channel = failed_channel
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip('/')

    @classmethod
    def from_settings(cls, settings: Mapping[str, str],
                      timeout: float = NOTIFY_TIMEOUT) -> 'SlackNotifier':
        return cls(token=settings['token'],
                   channel=settings.get('channel', ''),
                   username=settings.get('username', ''),
                   succeed_channel=settings.get('succeed_channel', ''),
                   failed_channel=settings.get('failed_channel', ''),
                   event_enabled=event_switches(settings),
                   timeout=timeout)

    def default_channel(self, event: str) -> str:
        # Started notifications share the succeeded channel
        if event == EVENT_FAILED:
            return self.failed_channel or self.channel
        return self.succeed_channel or self.channel

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.token}"}

    def _api_call(self, method: str, error_cls=BackendDeliveryError,
                  **kwargs) -> Dict:
        """Call a Slack Web API method and return its JSON body."""
        url = f"{self.api_url}/{method}"
        try:
            response = self.session.post(url,
                                         headers=self._auth_headers(),
                                         timeout=self.timeout,
                                         **kwargs)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise error_cls(self.name, f"{method} failed: {e}") from e
        except ValueError as e:
            raise error_cls(self.name, f"{method} returned invalid JSON") from e

        if not body.get('ok'):
            raise error_cls(self.name,
                            f"{method} error: {body.get('error', 'unknown')}")
        return body

    def send(self, event: str, param: MessageParam, channel: str) -> None:
        title, color = self.TITLES[event]
        payload = {
            'channel': channel,
            'text': '',
            'attachments': [{
                'color': color,
                'title': title,
                'text': render_slack_message(param),
            }],
        }
        if self.username:
            payload['username'] = self.username

        body = self._api_call('chat.postMessage', json=payload)
        logger.info(
            f"[NOTIFY] Slack message sent to channel {body.get('channel', channel)} "
            f"at {body.get('ts', '')}")

    def host_log(self, param: MessageParam, channel: str) -> str:
        """
        Upload the log as a file shared into the channel and return its permalink.

        Uses the external upload flow: reserve an upload URL, send the bytes,
        then complete the upload into the channel.

        Raises:
            LogUploadError: any step failed
        """
        title = f"{param.namespace}_{param.job_name}.txt"
        content = param.log.encode('utf-8')

        reserved = self._api_call('files.getUploadURLExternal',
                                  error_cls=LogUploadError,
                                  data={
                                      'filename': title,
                                      'length': str(len(content)),
                                  })
        upload_url = reserved.get('upload_url')
        file_id = reserved.get('file_id')
        if not upload_url or not file_id:
            raise LogUploadError(
                self.name, "files.getUploadURLExternal returned no upload URL")

        try:
            response = self.session.post(
                upload_url,
                data=content,
                headers={'Content-Type': 'text/plain'},
                timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise LogUploadError(self.name,
                                 f"upload to upload_url failed: {e}") from e

        completed = self._api_call('files.completeUploadExternal',
                                   error_cls=LogUploadError,
                                   json={
                                       'channel_id': channel,
                                       'files': [{
                                           'id': file_id,
                                           'title': title
                                       }],
                                   })
        files = completed.get('files') or []
        if not files:
            raise LogUploadError(
                self.name, "files.completeUploadExternal returned no files")

        logger.info(f"[NOTIFY] Log uploaded for {param.job_name}: {title}")
        return files[0].get('permalink', '')


# ============================================================================
# Microsoft Teams
# ============================================================================


def teams_payload(title: str, text: str, color: str) -> Dict:
    """Build an Adaptive Card message for a Teams workflow webhook."""
    # Adaptive Cards need blank lines between paragraphs
    formatted_text = text.replace("\n", "\n\n")
    return {
        'type': 'message',
        'attachments': [{
            'contentType': 'application/vnd.microsoft.card.adaptive',
            'contentUrl': None,
            'content': {
                '$schema': 'http://adaptivecards.io/schemas/adaptive-card.json',
                'type': 'AdaptiveCard',
                'version': '1.4',
                'body': [
                    {
                        'type': 'TextBlock',
                        'text': title,
                        'weight': 'Bolder',
                        'size': 'Medium',
                        'wrap': True,
                        'style': 'heading',
                        'color': color,
                    },
                    {
                        'type': 'TextBlock',
                        'text': formatted_text,
                        'wrap': True,
                    },
                ],
                'msteams': {
                    'width': 'full'
                },
            },
        }],
    }


class MsTeamsNotifier(Notifier):
    """Posts Adaptive Card notifications to a Teams workflow webhook."""

    name = "msteamsv2"

    TITLES = {
        EVENT_STARTED: ("Job Start", TEAMS_COLOR_GREY),
        EVENT_SUCCEEDED: ("Job Succeeded", TEAMS_COLOR_GREEN),
        EVENT_FAILED: ("Job Failed", TEAMS_COLOR_RED),
    }

    def __init__(self,
                 webhook_url: str,
                 event_enabled: Optional[Dict[str, bool]] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = NOTIFY_TIMEOUT):
        super().__init__(event_enabled=event_enabled, timeout=timeout)
        self.webhook_url = webhook_url
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Mapping[str, str],
                      timeout: float = NOTIFY_TIMEOUT) -> 'MsTeamsNotifier':
        return cls(webhook_url=settings['webhook_url'],
                   event_enabled=event_switches(settings),
                   timeout=timeout)

    def send(self, event: str, param: MessageParam, channel: str) -> None:
        title, color = self.TITLES[event]
        payload = teams_payload(title, render_teams_message(param), color)
        try:
            response = self.session.post(self.webhook_url,
                                         json=payload,
                                         timeout=self.timeout)
            logger.info(f"[NOTIFY] Teams HTTP response status: {response.status_code}")
            response.raise_for_status()
        except requests.RequestException as e:
            raise BackendDeliveryError(self.name, f"webhook post failed: {e}") from e
