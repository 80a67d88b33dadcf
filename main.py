#!/usr/bin/env python3
# Copyright (c) 2025 Arista Networks, Inc.
# Use of this source code is governed by the Apache License 2.0
# that can be found in the LICENSE file.
"""
Kube Job Notifier - Entry Point

Main entry point for the Kubernetes Job Notification Service.
Parses command-line arguments, loads configuration and starts the JobMonitor.
"""

import argparse
import logging
import signal
import sys

from errors import ConfigurationError
from job_monitor import JobMonitor, load_kube_config
from settings import Settings, parse_namespaces

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    """Configure root logging to stdout."""
    logging.basicConfig(level=getattr(logging, level.upper()),
                        format='%(asctime)s [%(levelname)s] %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    # Suppress verbose Kubernetes client logs
    logging.getLogger('kubernetes').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=
        "Watch Kubernetes Jobs and send start/success/failure notifications "
        "to Slack, Microsoft Teams and Datadog")
    parser.add_argument(
        '--namespace',
        default=None,
        help=
        'Namespace(s) to watch. Accepts: empty/unspecified for all namespaces, '
        'single namespace (e.g., "default"), or comma-separated list (e.g., "ns1,ns2,ns3"). '
        'Overrides the NAMESPACE environment variable')
    parser.add_argument('--log-level',
                        default='info',
                        choices=[
                            'debug', 'info', 'warning', 'error', 'DEBUG',
                            'INFO', 'WARNING', 'ERROR'
                        ],
                        help='Log level (default: info)')
    parser.add_argument(
        '--kubeconfig',
        default=None,
        help='Path to a kubeconfig. Only required if out-of-cluster.')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point for Kube Job Notifier."""
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = Settings.from_env()
        if args.namespace is not None:
            settings.namespaces = parse_namespaces(args.namespace)
        load_kube_config(args.kubeconfig)
        monitor = JobMonitor(settings)
    except ConfigurationError as e:
        logger.error(f"[INIT] Configuration error: {e}")
        return 1

    def _handle_signal(signum, frame):
        logger.info(f"[SHUTDOWN] Received signal {signal.Signals(signum).name}")
        monitor.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    monitor.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
