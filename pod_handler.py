# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Pod correlation and log collection for Kube Job Notifier.

PodResolver maps a Job to the pods it created and to its owning CronJob,
waits for a pod to leave Pending, and decides whether a Job has used up its
retry budget. LogCollector fetches container logs for the notification body.
"""

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from kubernetes import client

from constants import (
    CRONJOB_API_VERSIONS,
    CRONJOB_KIND,
    DEFAULT_BACKOFF_LIMIT,
    POD_NAME_LABEL,
    POD_PENDING_PHASE,
    POD_UID_LABEL,
    POD_WAIT_POLL_INTERVAL,
    POD_WAIT_TIMEOUT,
)
from errors import ParentScheduleLookupError, PodNotFoundError, PodWaitTimeout
from models import LogMode

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _creation_time(pod: client.V1Pod) -> datetime:
    return pod.metadata.creation_timestamp or _EPOCH


def api_error_message(e: client.exceptions.ApiException) -> str:
    """Message of the Status object returned by the API server, else the HTTP reason."""
    try:
        return json.loads(e.body)["message"]
    except (TypeError, ValueError, KeyError):
        return e.reason or str(e)


def backoff_limit(job: client.V1Job) -> int:
    """Job retry budget (Kubernetes defaults it to 6 when unset)."""
    limit = job.spec.backoff_limit if job.spec else None
    return DEFAULT_BACKOFF_LIMIT if limit is None else limit


class PodResolver:
    """Resolves the pods and parent CronJob that belong to a Job."""

    def __init__(self,
                 v1_api,
                 batch_api,
                 custom_api,
                 stop_event: Optional[threading.Event] = None,
                 poll_interval: float = POD_WAIT_POLL_INTERVAL,
                 timeout: float = POD_WAIT_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], object]] = None):
        """
        Initialize PodResolver.

        Args:
            v1_api: Kubernetes CoreV1Api client
            batch_api: Kubernetes BatchV1Api client (CronJob batch/v1)
            custom_api: Kubernetes CustomObjectsApi client (CronJob batch/v1beta1)
            stop_event: Set on shutdown; aborts wait_for_pod_running
            poll_interval: Seconds between pod phase checks
            timeout: Seconds before wait_for_pod_running gives up
            clock: Monotonic time source (injectable for tests)
            sleep: Sleep function (defaults to waiting on stop_event)
        """
        self.v1_api = v1_api
        self.batch_api = batch_api
        self.custom_api = custom_api
        self.stop_event = stop_event or threading.Event()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.clock = clock
        self.sleep = sleep or self.stop_event.wait

    # ========== Pod Correlation ==========

    def _list_pods(self, namespace: str, selector: str,
                   limit: Optional[int]) -> List[client.V1Pod]:
        kwargs = {'label_selector': selector}
        if limit:
            kwargs['limit'] = limit
        pods = self.v1_api.list_namespaced_pod(namespace, **kwargs)
        return list(pods.items or [])

    def list_job_pods(self,
                      job: client.V1Job,
                      limit: Optional[int] = None) -> List[client.V1Pod]:
        """
        List pods created by a Job, oldest first.

        Pods are matched by the Job UID label; when that finds nothing the
        legacy job-name label is tried. ApiException propagates.
        """
        namespace = job.metadata.namespace
        pods = self._list_pods(namespace,
                               f"{POD_UID_LABEL}={job.metadata.uid}", limit)
        if not pods:
            pods = self._list_pods(namespace,
                                   f"{POD_NAME_LABEL}={job.metadata.name}",
                                   limit)
        return sorted(pods, key=_creation_time)

    def resolve_pod(self, job: client.V1Job) -> client.V1Pod:
        """
        Return the most recently created pod of a Job.

        Raises:
            PodNotFoundError: no pods carry the Job's labels, or listing failed
        """
        try:
            pods = self.list_job_pods(job)
        except client.exceptions.ApiException as e:
            raise PodNotFoundError(
                f"failed to list pods for job {job.metadata.namespace}/"
                f"{job.metadata.name}: {e.reason}") from e

        if not pods:
            raise PodNotFoundError(
                f"no pods found for job {job.metadata.namespace}/{job.metadata.name}")

        pod = pods[-1]
        logger.debug(
            f"[POD] Job {job.metadata.name}: resolved pod {pod.metadata.name} "
            f"(out of {len(pods)})")
        return pod

    def wait_for_pod_running(self, pod: client.V1Pod) -> client.V1Pod:
        """
        Poll a pod until it leaves the Pending phase.

        Raises:
            PodWaitTimeout: the pod stayed Pending past the timeout, or
                shutdown was requested
            PodNotFoundError: the pod could not be read
        """
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        deadline = self.clock() + self.timeout

        while True:
            if self.stop_event.is_set():
                raise PodWaitTimeout(
                    f"shutdown while waiting for pod {namespace}/{name}")
            if self.clock() >= deadline:
                raise PodWaitTimeout(
                    f"pod {namespace}/{name} still pending after {self.timeout:.0f}s")

            try:
                current = self.v1_api.read_namespaced_pod(name, namespace)
            except client.exceptions.ApiException as e:
                raise PodNotFoundError(
                    f"error getting pod {namespace}/{name}: {e.reason}") from e

            phase = current.status.phase if current.status else None
            if phase != POD_PENDING_PHASE:
                logger.debug(f"[POD] Pod {name} is {phase}")
                return current

            logger.debug(
                f"[POD] Pod {name} pending, checking again in {self.poll_interval}s")
            self.sleep(self.poll_interval)

    # ========== Completion ==========

    def is_job_complete(self, job: client.V1Job) -> bool:
        """
        Check whether no further notifications are expected for a Job.

        True once the Job succeeded, or once it has created as many pods as
        its backoff limit allows (backoffLimit + 1). A failed pod listing is
        treated as complete so the job does not stay tracked forever.
        """
        if job.status and (job.status.succeeded or 0) >= 1:
            return True

        max_attempts = backoff_limit(job) + 1
        try:
            pods = self.list_job_pods(job, limit=max_attempts)
        except client.exceptions.ApiException as e:
            logger.warning(
                f"[POD] Job {job.metadata.name}: pod listing failed ({e.reason}), "
                "treating as complete")
            return True

        logger.debug(
            f"[POD] Job {job.metadata.name}: {len(pods)}/{max_attempts} pod attempts used")
        return len(pods) == max_attempts

    # ========== Parent Schedule ==========

    def _read_cronjob(self, api_version: str, name: str,
                      namespace: str) -> str:
        if api_version == "v1":
            cronjob = self.batch_api.read_namespaced_cron_job(name, namespace)
            return cronjob.metadata.name
        cronjob = self.custom_api.get_namespaced_custom_object(
            group="batch",
            version=api_version,
            namespace=namespace,
            plural="cronjobs",
            name=name)
        return cronjob['metadata']['name']

    def resolve_parent_schedule(self, job: client.V1Job) -> str:
        """
        Return the name of the CronJob that owns a Job.

        Standalone Jobs (no CronJob ownerReference) return an empty string.
        The CronJob is looked up under each supported API version in turn.

        Raises:
            ParentScheduleLookupError: every API version failed
        """
        owners = [
            ref for ref in (job.metadata.owner_references or [])
            if ref.kind == CRONJOB_KIND
        ]
        if not owners:
            return ""

        owner = owners[0]
        namespace = job.metadata.namespace
        last_error = None
        for api_version in CRONJOB_API_VERSIONS:
            try:
                return self._read_cronjob(api_version, owner.name, namespace)
            except client.exceptions.ApiException as e:
                logger.debug(
                    f"[POD] CronJob {namespace}/{owner.name} not readable as "
                    f"batch/{api_version}: {e.reason}")
                last_error = e

        raise ParentScheduleLookupError(
            f"failed to get cronjob {namespace}/{owner.name}: "
            f"{getattr(last_error, 'reason', last_error)}") from last_error


class LogCollector:
    """Fetches pod logs for notifications. Never raises; errors become text."""

    def __init__(self, v1_api):
        self.v1_api = v1_api

    def read_logs(self, pod: client.V1Pod, container: Optional[str]) -> str:
        """Read one container's logs, or the pod's when container is None."""
        kwargs = {}
        if container:
            kwargs['container'] = container
        try:
            return self.v1_api.read_namespaced_pod_log(
                pod.metadata.name, pod.metadata.namespace, **kwargs) or ''
        except client.exceptions.ApiException as e:
            message = api_error_message(e)
            logger.warning(
                f"[LOGS] Failed to read logs for pod {pod.metadata.name} "
                f"(container={container}): {message}")
            return message
        except Exception as e:
            logger.warning(
                f"[LOGS] Failed to read logs for pod {pod.metadata.name} "
                f"(container={container}): {e}")
            return str(e)

    def collect(self, pod: client.V1Pod, owner_container: str,
                mode: LogMode) -> str:
        """
        Gather logs according to the Job's log mode.

        Args:
            pod: The correlated pod
            owner_container: Container read in OwnerContainer mode (the
                CronJob display name)
            mode: LogMode selected by annotation
        """
        if mode is LogMode.POD_CONTAINERS:
            containers = [c.name for c in (pod.spec.containers or [])]
            if len(containers) == 1:
                return self.read_logs(pod, containers[0])
            return ''.join(
                f"Container {name} logs:\r\n{self.read_logs(pod, name)}\r\n"
                for name in containers)

        if mode is LogMode.POD_ONLY:
            return self.read_logs(pod, None)

        return self.read_logs(pod, owner_container)
