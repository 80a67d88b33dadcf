# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Notification fan-out for Kube Job Notifier.

NotificationRouter delivers one lifecycle event to every configured Notifier
and (for terminal events) every EventSubscriber. Each backend call runs with
its own deadline; a failing or slow backend is logged and never prevents
delivery to the others. Nothing is retried.
"""

import logging
import threading
import time
from concurrent import futures
from typing import Callable, Dict, List, Optional, Tuple

from constants import (DISPATCHER_WORKERS, EVENT_FAILED, EVENT_STARTED,
                       EVENT_SUCCEEDED, NOTIFY_TIMEOUT)
from models import JobInfo, MessageParam
from notifiers import Notifier
from subscriptions import EventSubscriber

logger = logging.getLogger(__name__)

# Granularity for noticing shutdown while waiting on a backend
_WAIT_SLICE = 0.5


class _Abandoned(Exception):
    pass


class NotificationRouter:
    """Fans lifecycle notifications out to all backends."""

    def __init__(self,
                 notifiers: Dict[str, Notifier],
                 subscribers: Dict[str, EventSubscriber],
                 parallel: bool = True,
                 timeout: float = NOTIFY_TIMEOUT,
                 stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize NotificationRouter.

        Args:
            notifiers: Chat backends by name
            subscribers: Metrics/alerting backends by name
            parallel: Call all backends at once instead of one after another
            timeout: Seconds allowed per backend call
            stop_event: Set on shutdown; pending deliveries are abandoned
        """
        self.notifiers = notifiers
        self.subscribers = subscribers
        self.parallel = parallel
        self.timeout = timeout
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        # Several jobs may be routed at once; one worker per backend per job
        workers = max(1, len(notifiers) + len(subscribers)) * DISPATCHER_WORKERS
        self.executor = futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="notify")

    def _calls(self, event: str, param: MessageParam,
               channel: Optional[str]) -> List[Tuple[str, Callable[[], object]]]:
        calls = []
        for name, notifier in self.notifiers.items():
            if event == EVENT_STARTED:
                fn = notifier.notify_start
            elif event == EVENT_SUCCEEDED:
                fn = notifier.notify_success
            else:
                fn = notifier.notify_failed
            calls.append((name, lambda fn=fn: fn(param, channel)))

        if event in (EVENT_SUCCEEDED, EVENT_FAILED):
            job_info = JobInfo.from_message_param(param)
            for name, subscriber in self.subscribers.items():
                fn = (subscriber.success_event
                      if event == EVENT_SUCCEEDED else subscriber.fail_event)
                calls.append((name, lambda fn=fn: fn(job_info)))
        return calls

    def _await(self, future: futures.Future, deadline: float):
        while True:
            if self.stop_event.is_set():
                future.cancel()
                raise _Abandoned()
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise futures.TimeoutError()
            try:
                return future.result(timeout=min(remaining, _WAIT_SLICE))
            except futures.TimeoutError:
                continue

    def _collect(self, name: str, event: str, job_name: str,
                 future: futures.Future, deadline: float) -> bool:
        try:
            self._await(future, deadline)
        except _Abandoned:
            logger.warning(
                f"[NOTIFY] Job {job_name}: {name} {event} delivery abandoned (shutdown)")
            return False
        except futures.TimeoutError:
            logger.error(
                f"[NOTIFY] Job {job_name}: {name} {event} delivery timed out "
                f"after {self.timeout}s")
            return False
        except Exception as e:
            logger.error(
                f"[NOTIFY] Failed {name} {event} notification for job {job_name}: {e}")
            return False
        logger.info(f"[NOTIFY] Job {job_name}: {name} {event} notification done")
        return True

    def route(self,
              event: str,
              param: MessageParam,
              channel: Optional[str] = None) -> Dict[str, bool]:
        """
        Deliver one event to every backend.

        Returns:
            Backend name -> True if the call completed without error
        """
        calls = self._calls(event, param, channel)
        results: Dict[str, bool] = {}
        logger.info(
            f"[NOTIFY] Job {param.job_name}: sending {event} to {len(calls)} backend(s)")

        if self.parallel:
            submitted = []
            for name, call in calls:
                if self.stop_event.is_set():
                    results[name] = False
                    continue
                submitted.append((name, self.executor.submit(call),
                                  self.clock() + self.timeout))
            for name, future, deadline in submitted:
                results[name] = self._collect(name, event, param.job_name,
                                              future, deadline)
            return results

        for name, call in calls:
            if self.stop_event.is_set():
                logger.warning(
                    f"[NOTIFY] Job {param.job_name}: skipping {name} (shutdown)")
                results[name] = False
                continue
            future = self.executor.submit(call)
            results[name] = self._collect(name, event, param.job_name, future,
                                          self.clock() + self.timeout)
        return results

    def close(self):
        """Stop accepting work; running backend calls are not waited for."""
        self.executor.shutdown(wait=False, cancel_futures=True)
