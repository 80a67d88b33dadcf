# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Job lifecycle event handling for Kube Job Notifier.

Handles batch/v1 Job events (add/update/delete), decides which lifecycle
notification (started, succeeded, failed) each one triggers, and keeps the
per-job dedup state.

Also contains JobInformer for watching Kubernetes Jobs and turning raw watch
events into JobAdded / JobUpdated / JobDeleted.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Pattern

from kubernetes import client, watch

from constants import EVENT_FAILED, EVENT_STARTED, EVENT_SUCCEEDED
from errors import ParentScheduleLookupError, PodNotFoundError, PodWaitTimeout
from models import (
    JobAdded,
    JobDeleted,
    JobEvent,
    JobUpdated,
    LogMode,
    MessageParam,
    is_failed,
    is_succeeded,
    template_annotations,
)
from notification_router import NotificationRouter
from pod_handler import LogCollector, PodResolver

logger = logging.getLogger(__name__)

# Server-side watch timeout; the loop reconnects afterwards
WATCH_TIMEOUT_SECONDS = 300


class JobInformer:
    """
    Informer for batch/v1 Job resources.

    Keeps the last seen version of every Job so that modifications can be
    delivered together with the previous object.

    Supports namespace filtering when watching all namespaces but only
    processing events from specific namespaces.
    """

    def __init__(self,
                 batch_api,
                 namespace: str,
                 handler: Callable[[JobEvent], None],
                 filter_namespaces: set = None):
        """
        Initialize JobInformer.

        Args:
            batch_api: Kubernetes BatchV1Api client
            namespace: Namespace to watch. Empty string = all namespaces.
            handler: Called with each JobAdded/JobUpdated/JobDeleted event
            filter_namespaces: Set of namespaces to filter events to.
                              Empty set or None = no filtering (process all events)
        """
        self.batch_api = batch_api
        self.namespace = namespace
        self.handler = handler
        self.filter_namespaces = filter_namespaces or set()

        self.cache: Dict[str, client.V1Job] = {}  # job UID -> V1Job
        self.resource_version: Optional[str] = None

        self.running = False
        self.watch_thread = None
        self.watcher: Optional[watch.Watch] = None
        self.initial_sync_done = False

    def _should_process_job(self, job: client.V1Job) -> bool:
        """Check if job should be processed based on namespace filtering."""
        if not self.filter_namespaces:
            return True  # No filtering, process all jobs
        return job.metadata.namespace in self.filter_namespaces

    def _list_jobs(self, **kwargs):
        if self.namespace == "":
            return self.batch_api.list_job_for_all_namespaces(**kwargs)
        return self.batch_api.list_namespaced_job(namespace=self.namespace,
                                                  **kwargs)

    def observe(self, event_type: str, job: client.V1Job):
        """Translate one raw watch event into a JobEvent and deliver it."""
        if not self._should_process_job(job):
            return

        uid = job.metadata.uid
        if not uid:
            return  # Skip jobs without a UID

        if event_type in ('ADDED', 'MODIFIED'):
            old = self.cache.get(uid)
            self.cache[uid] = job
            event = JobUpdated(old=old, new=job) if old is not None else JobAdded(job)
        elif event_type == 'DELETED':
            self.cache.pop(uid, None)
            event = JobDeleted(job)
        else:
            logger.debug(f"[INFORMER] Ignoring {event_type} event for job {job.metadata.name}")
            return

        self.handler(event)

    def _sync_cache(self):
        """List all jobs, deliver them, and drop jobs deleted while disconnected."""
        logger.info("[SYNC] Syncing Jobs...")
        jobs = self._list_jobs()

        seen = set()
        processed_count = 0
        for job in jobs.items or []:
            if self._should_process_job(job):
                seen.add(job.metadata.uid)
                self.observe('ADDED', job)
                processed_count += 1

        for uid in [uid for uid in self.cache if uid not in seen]:
            self.observe('DELETED', self.cache[uid])

        self.resource_version = jobs.metadata.resource_version if jobs.metadata else None
        self.initial_sync_done = True
        logger.info(f"[SYNC] Jobs synced: {processed_count} jobs processed")

    def _watch_loop(self):
        """Main watch loop with automatic reconnection"""
        # Log what we're watching
        if self.namespace == "":
            if self.filter_namespaces:
                logger.info(
                    f"[INFORMER] Starting Job watch loop (all namespaces, filtering to: {', '.join(sorted(self.filter_namespaces))})"
                )
            else:
                logger.info(
                    "[INFORMER] Starting Job watch loop (all namespaces)")
        else:
            logger.info(
                f"[INFORMER] Starting Job watch loop for namespace: {self.namespace}"
            )

        while self.running:
            try:
                if not self.initial_sync_done:
                    self._sync_cache()

                self.watcher = watch.Watch()
                kwargs = {'timeout_seconds': WATCH_TIMEOUT_SECONDS}
                if self.resource_version:
                    kwargs['resource_version'] = self.resource_version

                if self.namespace == "":
                    stream = self.watcher.stream(
                        self.batch_api.list_job_for_all_namespaces, **kwargs)
                else:
                    stream = self.watcher.stream(
                        self.batch_api.list_namespaced_job,
                        namespace=self.namespace,
                        **kwargs)

                for event in stream:
                    if not self.running:
                        break

                    job = event['object']
                    if job.metadata and job.metadata.resource_version:
                        self.resource_version = job.metadata.resource_version
                    self.observe(event['type'], job)

                if self.running:
                    logger.debug("Job watch stream ended, reconnecting...")
                    time.sleep(1)

            except client.exceptions.ApiException as e:
                if e.status == 410:  # Gone - resource version too old
                    logger.warning(
                        "Job resource version expired (410), resyncing...")
                    self.initial_sync_done = False
                    self.resource_version = None
                    time.sleep(1)
                else:
                    logger.error(
                        f"API error in Job watch: {e.reason}. Reconnecting in 5s...")
                    time.sleep(5)

            except Exception as e:
                if self.running:
                    logger.error(
                        f"Error in Job watch loop: {e}. Reconnecting in 5s...")
                    time.sleep(5)
                else:
                    break

    def start(self):
        """Start the informer"""
        if self.running:
            logger.warning("Job informer already running")
            return

        self.running = True
        self.watch_thread = threading.Thread(target=self._watch_loop,
                                             name="job-informer",
                                             daemon=True)
        self.watch_thread.start()
        logger.info("[INFORMER] Job informer started")

    def stop(self):
        """Stop the informer"""
        logger.info("[INFORMER] Stopping Job informer...")
        self.running = False
        if self.watcher:
            self.watcher.stop()
        if self.watch_thread:
            self.watch_thread.join(timeout=10)
        logger.info("[INFORMER] Job informer stopped")


class Tracker:
    """
    Per-job-name notification state.

    notified is set once a terminal notification went out for a job whose
    retry budget is exhausted. Entries are dropped when the Job is deleted.
    Safe to use from concurrent job callbacks.
    """

    def __init__(self, server_start_time: Optional[datetime] = None):
        self.server_start_time = server_start_time or datetime.now(timezone.utc)
        self._notified: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def created_before_start(self, job: client.V1Job) -> bool:
        created = job.metadata.creation_timestamp
        return created is not None and created < self.server_start_time

    def observe(self, job_name: str):
        with self._lock:
            self._notified.setdefault(job_name, False)

    def is_notified(self, job_name: str) -> bool:
        with self._lock:
            return self._notified.get(job_name, False)

    def mark_notified(self, job_name: str, notified: bool):
        with self._lock:
            self._notified[job_name] = notified

    def forget(self, job_name: str):
        with self._lock:
            self._notified.pop(job_name, None)

    def __contains__(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._notified

    def __len__(self) -> int:
        with self._lock:
            return len(self._notified)


class JobEventHandler:
    """Handles job lifecycle events and state transitions."""

    def __init__(self,
                 tracker: Tracker,
                 resolver: PodResolver,
                 log_collector: LogCollector,
                 router: NotificationRouter,
                 cronjob_regex: Optional[Pattern] = None):
        self.tracker = tracker
        self.resolver = resolver
        self.log_collector = log_collector
        self.router = router
        self.cronjob_regex = cronjob_regex

    def handle(self, event: JobEvent):
        """Process one JobEvent. Errors are logged, never raised."""
        try:
            if isinstance(event, JobAdded):
                self.on_job_add(event.job)
            elif isinstance(event, JobUpdated):
                self.on_job_update(event.old, event.new)
            elif isinstance(event, JobDeleted):
                self.on_job_delete(event.job)
            else:
                raise TypeError(f"unknown job event {event!r}")
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__} event: {e}",
                         exc_info=True)

    def _resolve_cronjob_name(self, job: client.V1Job) -> str:
        try:
            return self.resolver.resolve_parent_schedule(job)
        except ParentScheduleLookupError as e:
            logger.error(f"Get cronjob failed: {e}")
            return ""

    def _matches_schedule(self, cronjob_name: str) -> bool:
        if self.cronjob_regex is None:
            return True
        return self.cronjob_regex.search(cronjob_name) is not None

    @staticmethod
    def _message_param(job: client.V1Job, cronjob_name: str,
                       log: str = "") -> MessageParam:
        status = job.status
        return MessageParam(
            job_name=job.metadata.name,
            cronjob_name=cronjob_name,
            namespace=job.metadata.namespace,
            start_time=status.start_time if status else None,
            completion_time=status.completion_time if status else None,
            log=log,
            annotations=template_annotations(job),
        )

    def on_job_add(self, job: client.V1Job):
        """Handler for Job ADD events - send the started notification"""
        name = job.metadata.name

        if self.tracker.created_before_start(job):
            logger.debug(f"[JOB-ADD] Job {name} created before server start, skipping")
            return

        if self.tracker.is_notified(name):
            logger.debug(f"[JOB-ADD] Job {name} already notified, skipping")
            return

        self.tracker.observe(name)

        cronjob_name = self._resolve_cronjob_name(job)
        if not self._matches_schedule(cronjob_name):
            logger.debug(f"[JOB-ADD] Job {name} does not match CRONJOB_REGEX, skipping")
            return

        logger.info(f"[JOB-ADD] Job {name} (uid={job.metadata.uid})")

        try:
            pod = self.resolver.resolve_pod(job)
            self.resolver.wait_for_pod_running(pod)
        except (PodNotFoundError, PodWaitTimeout) as e:
            logger.error(f"[JOB-ADD] Job {name}: not sending started notification: {e}")
            return

        logger.info(f"[JOB-START] Job started: {name} in {job.metadata.namespace}")
        self.router.route(EVENT_STARTED, self._message_param(job, cronjob_name))

    def on_job_update(self, old: client.V1Job, new: client.V1Job):
        """Handler for Job UPDATE events - send succeeded/failed notifications"""
        name = new.metadata.name

        if self.tracker.created_before_start(new):
            logger.debug(
                f"[JOB-UPDATE] Job {name}: Skipping notification - Job created before server start")
            return

        if self.tracker.is_notified(name):
            logger.debug(f"[JOB-UPDATE] Job {name}: Skipping notification - Already notified")
            return

        old_succeeded, new_succeeded = is_succeeded(old), is_succeeded(new)
        old_failed, new_failed = is_failed(old), is_failed(new)

        if old_succeeded == new_succeeded and old_failed == new_failed:
            logger.debug(
                f"[JOB-UPDATE] Job {name}: Status unchanged (succeeded={new_succeeded}, "
                f"failed={new_failed}), skipping notification")
            return

        if new_succeeded and not old_succeeded:
            event = EVENT_SUCCEEDED
        elif new_failed and not old_failed:
            event = EVENT_FAILED
        else:
            return

        self.tracker.observe(name)

        cronjob_name = self._resolve_cronjob_name(new)
        if not self._matches_schedule(cronjob_name):
            logger.debug(f"[JOB-UPDATE] Job {name} does not match CRONJOB_REGEX, skipping")
            return

        logger.info(f"[JOB-FINISH] Job {event}: {name} in {new.metadata.namespace}")

        try:
            pod = self.resolver.resolve_pod(new)
        except PodNotFoundError as e:
            logger.error(f"[JOB-UPDATE] Job {name}: Get pods failed: {e}")
            return

        annotations = template_annotations(new)
        mode = LogMode.from_annotations(annotations)
        display_name = cronjob_name or name
        log = self.log_collector.collect(pod, display_name, mode)
        logger.debug(f"[JOB-FINISH] Job {name} log: {log}")

        self.router.route(event, self._message_param(new, cronjob_name, log))

        completed = self.resolver.is_job_complete(new)
        logger.info(f"[JOB-FINISH] Job {name}: Setting notified flag to {completed}")
        self.tracker.mark_notified(name, completed)

    def on_job_delete(self, job: client.V1Job):
        """Handler for Job DELETE events - drop the job's notification state"""
        name = job.metadata.name
        logger.info(f"[JOB-DELETE] Job {name}, uid={job.metadata.uid}")
        self.tracker.forget(name)
