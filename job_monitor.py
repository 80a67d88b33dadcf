# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Kube Job Notifier - Kubernetes Job Notification Service

Watches batch/v1 Jobs and sends lifecycle notifications (started, succeeded,
failed) to chat backends and metrics/alerting backends.

Features:
- Job informer with per-job ordered, cross-job concurrent event delivery
- At most one terminal notification per job once its retries are exhausted
- Pod log collection and CronJob identity for every notification
- Configuration-driven backend registry (Slack, Microsoft Teams, Datadog)
"""

import collections
import logging
import threading
from concurrent import futures
from typing import Callable, Deque, Dict, Optional, Tuple

from kubernetes import client, config

from constants import DISPATCHER_WORKERS
from errors import ConfigurationError
from job_handler import JobEventHandler, JobInformer, Tracker
from models import JobEvent
from notification_router import NotificationRouter
from notifiers import MsTeamsNotifier, Notifier, SlackNotifier
from pod_handler import LogCollector, PodResolver
from settings import BACKEND_DATADOG, BACKEND_MSTEAMS, BACKEND_SLACK, Settings
from subscriptions import DatadogSubscriber, EventSubscriber

logger = logging.getLogger(__name__)

NOTIFIER_FACTORIES: Dict[str, Callable[..., Notifier]] = {
    BACKEND_SLACK: SlackNotifier.from_settings,
    BACKEND_MSTEAMS: MsTeamsNotifier.from_settings,
}

SUBSCRIBER_FACTORIES: Dict[str, Callable[..., EventSubscriber]] = {
    BACKEND_DATADOG: DatadogSubscriber.from_settings,
}


def build_backends(
    settings: Settings
) -> Tuple[Dict[str, Notifier], Dict[str, EventSubscriber]]:
    """
    Resolve the configured BackendSpec list into backend instances.

    Raises:
        ConfigurationError: a backend kind is unknown
    """
    notifiers: Dict[str, Notifier] = {}
    subscribers: Dict[str, EventSubscriber] = {}
    for spec in settings.backends:
        if spec.kind in NOTIFIER_FACTORIES:
            notifiers[spec.kind] = NOTIFIER_FACTORIES[spec.kind](
                spec.settings, timeout=settings.notify_timeout)
        elif spec.kind in SUBSCRIBER_FACTORIES:
            subscribers[spec.kind] = SUBSCRIBER_FACTORIES[spec.kind](
                spec.settings)
        else:
            raise ConfigurationError(f"Unknown notification backend: {spec.kind}")
        logger.info(f"[INIT] Notification backend enabled: {spec.kind}")
    return notifiers, subscribers


def load_kube_config(kubeconfig: Optional[str] = None):
    """
    Load cluster credentials.

    An explicit kubeconfig path is used as given. Otherwise in-cluster
    config is tried first, then the default kubeconfig.

    Raises:
        ConfigurationError: no usable source
    """
    if kubeconfig:
        try:
            config.load_kube_config(config_file=kubeconfig)
        except (config.ConfigException, OSError) as e:
            raise ConfigurationError(f"Unable to load kubeconfig {kubeconfig}: {e}")
        logger.info(f"[INIT] Loaded kubeconfig {kubeconfig}")
        return

    try:
        config.load_incluster_config()
        logger.info("[INIT] Loaded in-cluster Kubernetes config")
        return
    except config.ConfigException as e:
        logger.debug(f"[INIT] Not running in cluster ({e}), trying kubeconfig")
    try:
        config.load_kube_config()
    except (config.ConfigException, OSError) as e:
        raise ConfigurationError(f"Unable to load Kubernetes configuration: {e}")
    logger.info("[INIT] Loaded kubeconfig")


class KeyedEventDispatcher:
    """
    Runs job events on a thread pool.

    Events with the same key (job UID) are handled one at a time, in the
    order they were submitted. Events with different keys run concurrently.
    """

    def __init__(self,
                 handler: Callable[[JobEvent], None],
                 max_workers: int = DISPATCHER_WORKERS):
        self.handler = handler
        self.executor = futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="job-event")
        self._queues: Dict[str, Deque[JobEvent]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, event: JobEvent) -> bool:
        """Queue an event. Returns False once the dispatcher is shut down."""
        key = event.key
        with self._lock:
            if self._closed:
                return False
            queue = self._queues.get(key)
            if queue is not None:
                # A worker is already draining this key
                queue.append(event)
                return True
            self._queues[key] = collections.deque([event])
            self.executor.submit(self._drain, key)
        return True

    def _drain(self, key: str):
        while True:
            with self._lock:
                queue = self._queues[key]
                if not queue or self._closed:
                    del self._queues[key]
                    return
                event = queue.popleft()
            try:
                self.handler(event)
            except Exception as e:
                logger.error(f"Unhandled error processing event for {key}: {e}",
                             exc_info=True)

    def shutdown(self, wait: bool = False):
        """Stop accepting events and drop queued ones."""
        with self._lock:
            self._closed = True
        self.executor.shutdown(wait=wait, cancel_futures=True)


class JobMonitor:
    """
    Wires the Job informer, event handler and notification router together.

    Supports multiple namespace watching modes:
    - Empty set: Watch all namespaces cluster-wide
    - Single namespace: Watch only that namespace
    - Multiple namespaces: Watch all namespaces but filter events to specified namespaces
    """

    def __init__(self,
                 settings: Settings,
                 v1_api=None,
                 batch_api=None,
                 custom_api=None,
                 stop_event: Optional[threading.Event] = None):
        """
        Initialize monitor.

        Args:
            settings: Resolved runtime configuration
            v1_api: CoreV1Api client (created from the loaded kube config if None)
            batch_api: BatchV1Api client
            custom_api: CustomObjectsApi client
            stop_event: Shared shutdown signal
        """
        self.settings = settings
        self.v1 = v1_api or client.CoreV1Api()
        self.batch_api = batch_api or client.BatchV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()
        self.stop_event = stop_event or threading.Event()

        # Store namespace configuration
        self.namespaces = settings.namespaces

        # Determine watch mode based on namespace configuration
        if len(self.namespaces) == 0:
            self.watch_namespace = ""  # Empty string = all namespaces in K8s API
            self.filter_namespaces = set()
        elif len(self.namespaces) == 1:
            self.watch_namespace = next(iter(self.namespaces))
            self.filter_namespaces = set()
        else:
            self.watch_namespace = ""  # Watch all namespaces
            self.filter_namespaces = self.namespaces

        notifiers, subscribers = build_backends(settings)
        if not notifiers and not subscribers:
            logger.warning("[INIT] No notification backends enabled")

        self.router = NotificationRouter(notifiers,
                                         subscribers,
                                         parallel=settings.notify_parallel,
                                         timeout=settings.notify_timeout,
                                         stop_event=self.stop_event)

        self.tracker = Tracker()
        self.resolver = PodResolver(self.v1,
                                    self.batch_api,
                                    self.custom_api,
                                    stop_event=self.stop_event,
                                    poll_interval=settings.pod_wait_poll_interval,
                                    timeout=settings.pod_wait_timeout)
        self.job_handler = JobEventHandler(self.tracker,
                                           self.resolver,
                                           LogCollector(self.v1),
                                           self.router,
                                           cronjob_regex=settings.cronjob_regex)

        self.dispatcher = KeyedEventDispatcher(self.job_handler.handle)
        self.job_informer = JobInformer(
            batch_api=self.batch_api,
            namespace=self.watch_namespace,
            handler=self.dispatcher.submit,
            filter_namespaces=self.filter_namespaces)

    def stop(self):
        """Request shutdown; run() returns shortly afterwards."""
        self.stop_event.set()

    def run(self):
        """Start watching jobs and block until stop() is called"""
        # Log namespace configuration
        if len(self.namespaces) == 0:
            logger.info(
                "[INIT] Starting job notifier for ALL namespaces (cluster-wide)")
        elif len(self.namespaces) == 1:
            logger.info(
                f"[INIT] Starting job notifier for namespace: {next(iter(self.namespaces))}"
            )
        else:
            logger.info(
                f"[INIT] Starting job notifier for namespaces: {', '.join(sorted(self.namespaces))} "
                "(watching all, filtering to specified)")

        if self.settings.cronjob_regex is not None:
            logger.info(f"[INIT] CronJob filter: {self.settings.cronjob_regex.pattern}")
        logger.info(f"[INIT] Server start time: {self.tracker.server_start_time.isoformat()}")

        self.job_informer.start()
        try:
            while not self.stop_event.wait(1):
                pass
        finally:
            logger.info("[SHUTDOWN] Shutting down...")
            self.stop_event.set()
            self.job_informer.stop()
            self.dispatcher.shutdown(wait=False)
            self.router.close()
            logger.info("[SHUTDOWN] Stopped")
