#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import smtplib
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idm_sync import notifications


class TestNotifications(unittest.TestCase):
    """Test cases for notification functions."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'idm-sync@example.com',
            'smtp_password': 'secret',
            'email_from': 'idm-sync@example.com',
            'email_to': ['ops@example.com', 'security@example.com']
        }

    def test_disabled(self):
        self.config['enable_email'] = False
        with patch('idm_sync.notifications.smtplib.SMTP') as mock_smtp:
            self.assertFalse(notifications.send_email('subject', 'body', self.config))
        mock_smtp.assert_not_called()

    def test_missing_server(self):
        del self.config['smtp_server']
        with self.assertLogs('idm_sync.notifications', level='ERROR'):
            self.assertFalse(notifications.send_email('subject', 'body', self.config))

    def test_missing_recipients(self):
        self.config['email_to'] = []
        with self.assertLogs('idm_sync.notifications', level='ERROR'):
            self.assertFalse(notifications.send_email('subject', 'body', self.config))

    @patch('idm_sync.notifications.smtplib.SMTP')
    def test_send_with_starttls(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(notifications.send_email('subject', 'body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('idm-sync@example.com', 'secret')
        from_addr, to_addrs, message = server.sendmail.call_args.args
        self.assertEqual(to_addrs, ['ops@example.com', 'security@example.com'])
        self.assertIn('Subject: subject', message)
        server.quit.assert_called_once()

    @patch('idm_sync.notifications.smtplib.SMTP_SSL')
    def test_send_with_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.config['email_to'] = 'ops@example.com'

        self.assertTrue(notifications.send_email('subject', 'body', self.config))

        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)
        self.assertEqual(mock_smtp_ssl.return_value.sendmail.call_args.args[1], ['ops@example.com'])

    @patch('idm_sync.notifications.smtplib.SMTP')
    def test_smtp_error(self, mock_smtp):
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'denied')

        with self.assertLogs('idm_sync.notifications', level='ERROR'):
            self.assertFalse(notifications.send_email('subject', 'body', self.config))

    @patch('idm_sync.notifications.smtplib.SMTP')
    def test_connection_refused(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError()
        with self.assertLogs('idm_sync.notifications', level='ERROR'):
            self.assertFalse(notifications.send_email('subject', 'body', self.config))

    @patch('idm_sync.notifications.send_email')
    def test_failure_notification(self, mock_send):
        mock_send.return_value = True

        self.assertTrue(notifications.send_incomplete_pass_notification(['gitlab', 'mattermost'], self.config))

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'IDM Sync Alert: Reconciliation Pass Incomplete')
        self.assertIn('Applications: gitlab, mattermost', body)
        self.assertIn('2 application(s) did not sync cleanly', body)

    @patch('idm_sync.notifications.send_email')
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(notifications.send_directory_failure('bad credentials', self.config))
        mock_send.assert_not_called()

    @patch('idm_sync.notifications.send_email')
    def test_directory_failure(self, mock_send):
        notifications.send_directory_failure('bad credentials', self.config)
        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'IDM Sync Alert: Directory Authentication Failed')
        self.assertIn('Error Message: bad credentials', body)

    @patch('idm_sync.notifications.send_email')
    def test_success_summary(self, mock_send):
        sync_stats = {
            'runtime_seconds': 125.0,
            'apps_processed': 2,
            'apps_failed': 0,
            'total_events': 3,
            'app_details': {
                'gitlab': {'runtime_seconds': 1.5, 'groups': 4, 'events': {'USER_CREATED': 2, 'USER_ADDED': 1}}
            }
        }

        notifications.send_success_summary(sync_stats, self.config)

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'IDM Sync: Successful Completion')
        self.assertIn('Total runtime: 2m 5.0s', body)
        self.assertIn('Audit events: 3', body)
        self.assertIn('USER_CREATED: 2', body)

    @patch('idm_sync.notifications.send_email')
    def test_success_summary_disabled(self, mock_send):
        self.config['email_on_success'] = False
        self.assertFalse(notifications.send_success_summary({}, self.config))
        mock_send.assert_not_called()

    @patch('idm_sync.notifications.send_email')
    def test_notification_config_check(self, mock_send):
        mock_send.return_value = True

        self.assertTrue(notifications.test_notification_config(self.config))

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'IDM Sync: Configuration Test')
        self.assertIn('SMTP Server: smtp.example.com', body)
        self.assertIn('Recipients: ops@example.com, security@example.com', body)


if __name__ == '__main__':
    unittest.main()
