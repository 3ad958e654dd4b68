"""
Main orchestrator for IDM Sync.

This module drives the reconciliation pass: it reads the relevant groups and
members from the identity directory, hands them to every enabled application
connector, and writes back the directory attributes the connectors changed.
"""

import sys
import json
import time
import logging
import argparse
import threading
from datetime import datetime
from typing import Dict, Any, List, Optional

from idm_sync.apps import create_connector
from idm_sync.apps.base import ApplicationConnector
from idm_sync.config import load_config, ConfigurationError
from idm_sync.decoder import GroupDecodeError
from idm_sync.directory import create_directory, DirectoryError, IdentityDirectory
from idm_sync.events import AuditSink, CompositeAuditSink, InMemoryAuditSink, LoggingAuditSink
from idm_sync.logging_setup import setup_logging
from idm_sync.models import DirectoryGroup
from idm_sync.notifications import (
    send_directory_failure,
    send_failure_notification,
    send_incomplete_pass_notification,
    send_success_summary,
    test_notification_config
)
from idm_sync import reports

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_INCOMPLETE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_FAILURE = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncOrchestrator:
    """
    Runs reconciliation passes between the identity directory and the
    configured applications.

    Components not passed in are built from the configuration.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None,
                 directory: Optional[IdentityDirectory] = None,
                 connectors: Optional[List[ApplicationConnector]] = None,
                 audit_sink: Optional[AuditSink] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration, skips loading the file
            directory: Identity directory
            connectors: Application connectors
            audit_sink: Receiver of the audit events
        """
        self.config_path = config_path
        self.config = config
        self.directory = directory
        self.connectors = connectors
        self.audit_sink = audit_sink

        self.last_sync_time = None
        self.sync_stats = self._new_stats()
        self._pass_lock = threading.Lock()
        self._stop_event = threading.Event()

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'apps_processed': 0,
            'apps_failed': 0,
            'total_events': 0,
            'directory_authenticated': None,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'app_details': {}
        }

    @property
    def sync_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('sync', {})

    def run(self, interval_seconds: Optional[int] = None, max_passes: Optional[int] = None) -> int:
        """
        Run one reconciliation pass, or passes at a fixed rate.

        Args:
            interval_seconds: Seconds between pass starts, overrides sync.interval_seconds
            max_passes: Stop after this many scheduled passes

        Returns:
            Exit code of the last pass
        """
        try:
            self._load_configuration()
            self._setup_logging()
            self._build_components()

            interval = interval_seconds if interval_seconds is not None else self.sync_config.get('interval_seconds', 0)
            if interval and interval > 0:
                return self._run_scheduled(interval, max_passes)
            return self._run_once()

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except GroupDecodeError as e:
            logger.error(f"Group name error: {e}")
            self._send_failure_notification("Group Name Error", str(e))
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _run_once(self) -> int:
        if self.run_pass():
            return EXIT_SUCCESS
        if self.sync_stats['directory_authenticated'] is False:
            return EXIT_DIRECTORY_FAILURE
        return EXIT_INCOMPLETE

    def _run_scheduled(self, interval: float, max_passes: Optional[int] = None) -> int:
        """Start a pass every ``interval`` seconds until stopped."""
        logger.info(f"Running reconciliation every {interval} seconds")
        exit_code = EXIT_SUCCESS
        passes = 0
        next_start = time.monotonic()

        while not self._stop_event.is_set():
            exit_code = self._run_once()
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break

            next_start += interval
            delay = next_start - time.monotonic()
            if delay < 0:
                logger.warning(f"Reconciliation pass overran the interval by {-delay:.1f} seconds")
                next_start = time.monotonic()
                delay = 0
            self._stop_event.wait(delay)

        return exit_code

    def stop(self):
        """Stop a scheduled run after the current pass."""
        self._stop_event.set()

    def _load_configuration(self):
        if self.config is None:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _build_components(self):
        """Create directory, connectors and audit sink not supplied by the caller."""
        if self.directory is None:
            self.directory = create_directory(self.config['directory'], self.config.get('error_handling'))

        if self.connectors is None:
            strict = self.sync_config.get('strict_group_names', False)
            self.connectors = [create_connector(app_config, strict) for app_config in self.config['apps']]

        if self.audit_sink is None:
            self.audit_sink = LoggingAuditSink()

    def enabled_connectors(self) -> List[ApplicationConnector]:
        enabled = self.sync_config.get('enabled_apps', ['*'])
        if '*' in enabled:
            return list(self.connectors)
        return [connector for connector in self.connectors if connector.id in enabled]

    def run_pass(self) -> bool:
        """
        Run a single reconciliation pass.

        Only one pass runs at a time; an overlapping call returns immediately.

        Returns:
            True if the directory was reachable and every enabled application
            synced cleanly

        Raises:
            ConfigurationError: On an unknown permission name
            GroupDecodeError: On a malformed group name in strict mode
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Reconciliation pass already running - skipping")
            return False
        try:
            return self._run_pass()
        finally:
            self._pass_lock.release()

    def _run_pass(self) -> bool:
        self.sync_stats = self._new_stats()
        self.sync_stats['start_time'] = datetime.now()
        logger.info("Starting reconciliation pass")

        if not self.directory.authenticate():
            self.sync_stats['directory_authenticated'] = False
            logger.error("Identity directory authentication failed - reconciliation pass abandoned")
            self._finish_stats()
            send_directory_failure("Authentication with the identity directory failed",
                                   self.config.get('notifications', {}))
            return False
        self.sync_stats['directory_authenticated'] = True

        failed_apps = []
        for connector in self.enabled_connectors():
            if self._process_connector(connector):
                self.sync_stats['apps_processed'] += 1
            else:
                self.sync_stats['apps_failed'] += 1
                failed_apps.append(connector.id)

        self._finish_stats()
        self._log_sync_summary()

        notifications_config = self.config.get('notifications', {})
        if failed_apps:
            logger.warning(f"Reconciliation pass incomplete - failed applications: {', '.join(failed_apps)}")
            send_incomplete_pass_notification(failed_apps, notifications_config)
            return False

        self.last_sync_time = self.sync_stats['end_time']
        logger.info("Reconciliation pass completed successfully")
        send_success_summary(self.sync_stats, notifications_config)
        return True

    def _process_connector(self, connector: ApplicationConnector) -> bool:
        """
        Sync one application.

        Returns:
            True if the application synced cleanly and its directory updates were written
        """
        start_time = datetime.now()
        recorder = InMemoryAuditSink(0)
        app_stats = {'result': False, 'groups': 0, 'runtime_seconds': 0, 'events': {}}
        self.sync_stats['app_details'][connector.id] = app_stats
        logger.info(f"Processing application: {connector.display_name}")

        try:
            groups = self._get_groups(connector)
            if groups is None:
                return False
            app_stats['groups'] = len(groups)

            synced = connector.sync(groups, CompositeAuditSink([self.audit_sink, recorder]))
            written = self._write_back_users(groups)
            app_stats['result'] = synced and written
            if not synced:
                logger.warning(f"{connector.display_name} sync did not complete cleanly")
            return app_stats['result']

        except (ConfigurationError, GroupDecodeError):
            raise
        except Exception as e:
            logger.error(f"Failed to process application {connector.display_name}: {e}", exc_info=True)
            return False
        finally:
            for event in recorder.events:
                app_stats['events'][event.type.value] = app_stats['events'].get(event.type.value, 0) + 1
            self.sync_stats['total_events'] += len(recorder)
            app_stats['runtime_seconds'] = (datetime.now() - start_time).total_seconds()
            logger.info(f"Completed application: {connector.display_name} "
                        f"in {app_stats['runtime_seconds']:.2f} seconds")

    def _get_groups(self, connector: ApplicationConnector) -> Optional[List[DirectoryGroup]]:
        """Read the application's directory groups with their members."""
        search = connector.group_search_filter()
        groups = self.directory.get_groups(search)
        if groups is None:
            logger.error(f"Could not retrieve directory groups for '{search}'")
            return None

        email_domain = self.sync_config.get('email_domain')
        for group in groups:
            members = self.directory.get_group_members(group)
            if members is None:
                logger.error(f"Could not retrieve members of directory group '{group.name}'")
                return None
            for user in members:
                if not user.email and email_domain:
                    user.email = f"{user.username}@{email_domain}"
                group.add_member(user)

        logger.info(f"Read {len(groups)} directory groups for '{search}'")
        return groups

    def _write_back_users(self, groups: List[DirectoryGroup]) -> bool:
        """Persist attributes the connector changed on directory users."""
        clear_required_actions = self.sync_config.get('clear_required_actions', False)
        success = True
        seen = set()

        for group in groups:
            for user in group.members:
                if user.id in seen or not user.attributes_modified:
                    continue
                seen.add(user.id)

                if not self.directory.update_user_attributes(user, user.attributes):
                    logger.error(f"Failed to update directory attributes of user '{user.username}'")
                    success = False
                    continue
                if clear_required_actions and not self.directory.remove_required_actions(user):
                    logger.warning(f"Failed to clear required actions of user '{user.username}'")
                user.clear_modified()
                logger.debug(f"Updated directory attributes of user '{user.username}'")

        return success

    def _finish_stats(self):
        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()

    def _send_failure_notification(self, title: str, error_message: str):
        if self.config:
            send_failure_notification(title, error_message, self.config.get('notifications', {}))

    def _log_sync_summary(self):
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Applications processed: {stats['apps_processed']}")
        logger.info(f"Applications failed: {stats['apps_failed']}")
        logger.info(f"Audit events: {stats['total_events']}")

        for app_id, app_stats in stats['app_details'].items():
            logger.info(f"--- {app_id} ---")
            logger.info(f"  Result: {'ok' if app_stats['result'] else 'incomplete'}")
            logger.info(f"  Runtime: {app_stats['runtime_seconds']:.2f}s")
            logger.info(f"  Groups: {app_stats['groups']}")
            for event_type, count in sorted(app_stats['events'].items()):
                logger.info(f"  {event_type}: {count}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._build_components()
            health_status['checks']['connectors'] = {
                'status': 'pass',
                'message': f"{len(self.connectors)} application connector(s) created"
            }
        except (ConfigurationError, ValueError) as e:
            health_status['checks']['connectors'] = {
                'status': 'fail',
                'message': f'Connector setup failed: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            authenticated = self.directory.authenticate()
        except DirectoryError as e:
            authenticated = False
            logger.error(f"Directory health check failed: {e}")
        health_status['checks']['directory'] = {
            'status': 'pass' if authenticated else 'fail',
            'message': 'Directory authentication successful' if authenticated else 'Directory authentication failed'
        }
        if not authenticated:
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f"Notification configuration invalid: missing {', '.join(missing_fields)}"
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def find_connector(self, app_id: str) -> ApplicationConnector:
        for connector in self.connectors:
            if connector.id == app_id:
                return connector
        raise SyncError(f"Unknown application: {app_id}")

    def _cleanup(self):
        if self.directory:
            self.directory.close()
        for connector in self.connectors or []:
            connector.close()


def run_report(orchestrator: SyncOrchestrator, args) -> int:
    """
    Print a read-only report.

    Returns:
        Exit code
    """
    orchestrator._load_configuration()
    orchestrator._build_components()

    if args.report == 'applications':
        rows = reports.list_applications(orchestrator.connectors)
        print(_format_rows(rows, args.format))
        return EXIT_SUCCESS

    if not args.app:
        raise SyncError(f"--app is required for the '{args.report}' report")
    connector = orchestrator.find_connector(args.app)

    if args.report == 'statistics':
        statistics = connector.statistics()
        if statistics is None:
            print(f"Could not retrieve statistics from {connector.display_name}", file=sys.stderr)
            return EXIT_INCOMPLETE
        if args.format == 'csv':
            print(reports.statistics_to_csv(statistics), end='')
        else:
            print(reports.statistics_to_json(statistics))
        return EXIT_SUCCESS

    if not orchestrator.directory.authenticate():
        print("Identity directory authentication failed", file=sys.stderr)
        return EXIT_DIRECTORY_FAILURE

    if args.report == 'organizations':
        rows = reports.list_organizations(orchestrator.directory, connector, args.search)
    elif args.report == 'members':
        if not args.organization:
            raise SyncError("--organization is required for the 'members' report")
        rows = reports.list_organization_members(orchestrator.directory, connector, args.organization)
    else:
        rows = reports.list_users(orchestrator.directory, connector, args.search)

    if rows is None:
        print("Could not read the identity directory", file=sys.stderr)
        return EXIT_INCOMPLETE
    print(_format_rows(rows, args.format))
    return EXIT_SUCCESS


def _format_rows(rows: List[Dict[str, Any]], output_format: str) -> str:
    if output_format == 'csv':
        return reports.rows_to_csv(rows).rstrip('\n')
    return json.dumps(rows, indent=2)


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='IDM Sync - identity directory to application reconciliation')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--interval', type=int,
                        help='Run a pass every INTERVAL seconds instead of once')
    parser.add_argument('--report', choices=['applications', 'organizations', 'members', 'users', 'statistics'],
                        help='Print a read-only report instead of syncing')
    parser.add_argument('--app', help='Application id for reports')
    parser.add_argument('--search', help='Case-insensitive filter for organization and user reports')
    parser.add_argument('--organization', help='Organization unit for the members report')
    parser.add_argument('--format', choices=['json', 'csv'], default='json',
                        help='Report output format')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        orchestrator._cleanup()
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION_ERROR)
        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    elif args.report:
        try:
            exit_code = run_report(orchestrator, args)
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            exit_code = EXIT_CONFIGURATION_ERROR
        except SyncError as e:
            print(f"Error: {e}", file=sys.stderr)
            exit_code = EXIT_CONFIGURATION_ERROR
        finally:
            orchestrator._cleanup()
        sys.exit(exit_code)

    else:
        sys.exit(orchestrator.run(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
