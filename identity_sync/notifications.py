"""
Email notification utilities for Identity Sync.

This module sends email reports of reconciliation runs: a report for every
failed or cancelled run, and an optional summary of successful runs.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10


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

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def format_runtime(runtime_seconds: float) -> str:
    """Format a run duration for humans."""
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _summary_lines(summary) -> List[str]:
    started = summary.started_at.strftime('%Y-%m-%d %H:%M:%S') if summary.started_at else 'unknown'
    lines = [
        f"Trigger: {summary.trigger}",
        f"Started (UTC): {started}",
        f"Runtime: {format_runtime(summary.runtime_seconds)}",
        f"",
        f"Directory records: {summary.total_directory_records}",
        f"Identities created: {summary.created}",
        f"Identities updated: {summary.updated}",
        f"Identities deleted: {summary.deleted}",
        f"Marked missing from directory: {summary.marked_missing}",
        f"Restored to directory: {summary.restored}",
        f"Reactivated: {summary.reactivated}",
        f"Skipped records: {len(summary.skipped_errors)}",
    ]

    if summary.skipped_errors:
        lines.extend(["", "Skipped record details:"])
        for i, error in enumerate(summary.skipped_errors[:MAX_LISTED_ERRORS], 1):
            lines.append(f"  {i}. {error}")
        if len(summary.skipped_errors) > MAX_LISTED_ERRORS:
            lines.append(f"  ... and {len(summary.skipped_errors) - MAX_LISTED_ERRORS} more")

    return lines


def send_run_failure_notification(summary, config: Dict[str, Any],
                                  title: str = "Reconciliation Failed") -> bool:
    """
    Send notification for a failed or cancelled reconciliation run.

    Args:
        summary: RunSummary of the run
        config: Notification configuration
        title: Failure title used in the subject

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        f"Identity Sync Failure Report",
        f"",
        f"Status: {summary.status}",
        f"Error: {summary.error or 'none'}",
        f"",
    ]
    body_lines.extend(_summary_lines(summary))
    body_lines.extend([
        "",
        "Local identity data was left unchanged where the run did not reach it.",
        "The next scheduled run will retry.",
        "",
        "This is an automated message from Identity Sync.",
    ])

    return send_email(f"Identity Sync Alert: {title}", '\n'.join(body_lines), config)


def send_run_summary(summary, config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed reconciliation run.

    Args:
        summary: RunSummary of the run
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = ["Identity Sync Summary Report", ""]
    body_lines.extend(_summary_lines(summary))
    body_lines.extend(["", "This is an automated message from Identity Sync."])

    return send_email("Identity Sync: Reconciliation Completed", '\n'.join(body_lines), config)


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

    body = """This is a test email from Identity Sync.

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

    result = send_email("Identity Sync: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
