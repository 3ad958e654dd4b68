"""
Email notification utilities for IDM Sync.

This module sends email notifications for incomplete reconciliation passes,
directory authentication failures and optional success summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed or incomplete reconciliation pass.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"IDM Sync Alert: {title}"

    body_lines = [
        "IDM Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "The next scheduled pass will retry from scratch.",
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from IDM Sync."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_directory_failure(error_message: str, config: Dict[str, Any]) -> bool:
    """Send notification for an identity directory authentication failure."""
    additional_info = {
        'Component': 'Identity Directory',
        'Impact': 'Reconciliation pass abandoned - no application processed'
    }
    return send_failure_notification("Directory Authentication Failed", error_message, config, additional_info)


def send_incomplete_pass_notification(failed_apps: List[str], config: Dict[str, Any]) -> bool:
    """Send notification for applications whose sync did not complete cleanly."""
    additional_info = {
        'Applications': ', '.join(failed_apps),
        'Impact': 'Last sync time not updated'
    }
    return send_failure_notification(
        "Reconciliation Pass Incomplete",
        f"{len(failed_apps)} application(s) did not sync cleanly",
        config,
        additional_info
    )


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a successful pass.

    Args:
        sync_stats: Dictionary containing pass statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    runtime_seconds = sync_stats.get('runtime_seconds', 0)
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        runtime_str = f"{minutes}m {seconds:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"

    body_lines = [
        "IDM Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Reconciliation pass completed successfully.",
        "",
        "Overall Statistics:",
        f"  Total runtime: {runtime_str}",
        f"  Applications processed: {sync_stats.get('apps_processed', 0)}",
        f"  Applications failed: {sync_stats.get('apps_failed', 0)}",
        f"  Audit events: {sync_stats.get('total_events', 0)}",
        ""
    ]

    app_details = sync_stats.get('app_details', {})
    if app_details:
        body_lines.append("Application Details:")
        for app_id, app_stats in app_details.items():
            body_lines.append(f"  {app_id}:")
            body_lines.append(f"    Runtime: {app_stats.get('runtime_seconds', 0):.2f}s")
            body_lines.append(f"    Groups: {app_stats.get('groups', 0)}")
            for event_type, count in sorted(app_stats.get('events', {}).items()):
                body_lines.append(f"    {event_type}: {count}")
            body_lines.append("")

    body_lines.append("This is an automated message from IDM Sync.")

    return send_email("IDM Sync: Successful Completion", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from IDM Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("IDM Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
