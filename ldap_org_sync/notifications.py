"""
Email notifications for LDAP Org Sync.

Sends run failure alerts and run summaries over SMTP. Sending problems are
logged and reported through the boolean return value; they never raise.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send an email using the ``notifications`` configuration.

    Args:
        subject: Email subject line
        body: Plain text body
        config: Notification configuration dictionary

    Returns:
        True if the email was handed to the SMTP server
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
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not email_to:
        logger.error("No email recipients configured")
        return False

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=30)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=30)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
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
    Send an alert for a failed or partially failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional extra key/value context
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        "LDAP Org Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from LDAP Org Sync.",
    ])

    return send_email(f"LDAP Org Sync Alert: {title}", '\n'.join(body_lines), config)


def _format_runtime(duration_ms: int) -> str:
    seconds = duration_ms / 1000.0
    if seconds > 60:
        return f"{int(seconds // 60)}m {seconds % 60:.1f}s"
    return f"{seconds:.2f} seconds"


def _error_lines(errors: List[str]) -> List[str]:
    lines = [f"  {i}. {error}" for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1)]
    if len(errors) > MAX_LISTED_ERRORS:
        lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
    return lines


def format_run_summary(result, org: str) -> str:
    """Plain text report of a ``SyncResult``."""
    summary = result.summary
    body_lines = [
        "LDAP Org Sync Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Organization: {org}",
        f"Mode: {'dry run' if result.dry_run else 'live'}",
        f"Runtime: {_format_runtime(result.duration_ms)}",
        "",
        "Statistics:",
        f"  LDAP members: {summary.total_source_members}",
        f"  GitHub members: {summary.total_target_members}",
        f"  Pending invitations: {summary.pending_invitations}",
        f"  Actions planned: {summary.actions_planned}",
        f"  Actions executed: {summary.actions_executed}",
        f"  Actions failed: {summary.actions_failed}",
        f"  Invited: {summary.invited}",
        f"  Already present: {summary.already_present}",
        f"  Removed: {summary.removed}",
        f"  Role updated: {summary.role_updated}",
        f"  Invitations cancelled: {summary.cancelled_invites}",
        f"  Orphaned members: {summary.orphaned}",
        "",
    ]

    reconciliation = result.reconciliation
    if reconciliation is not None:
        body_lines.extend([
            "Invitation Reconciliation:",
            f"  New invitations saved: {reconciliation.new_saved}",
            f"  Resolved: {reconciliation.resolved}",
            f"  Failed: {reconciliation.failed}",
            f"  Expired: {reconciliation.expired}",
            f"  Cancelled: {reconciliation.cancelled}",
            f"  Members removed: {reconciliation.members_removed}",
            f"  Roles updated: {reconciliation.roles_updated}",
            f"  Already-present resolved: {reconciliation.already_present_resolved}",
            f"  Verified emails mapped: {reconciliation.verified_emails_mapped}",
            "",
        ])
        if reconciliation.errors:
            body_lines.append("Reconciliation Errors:")
            body_lines.extend(_error_lines(reconciliation.errors))
            body_lines.append("")

    action_errors = [f"{a.type.value} {a.target_identifier}: {a.error}"
                     for a in result.actions if a.error]
    if action_errors:
        body_lines.append("Action Errors:")
        body_lines.extend(_error_lines(action_errors))
        body_lines.append("")

    if result.orphaned_members:
        body_lines.append("Orphaned Members (not acted on):")
        body_lines.extend(f"  - {login}" for login in result.orphaned_members)
        body_lines.append("")

    body_lines.append("This is an automated message from LDAP Org Sync.")
    return '\n'.join(body_lines)


def send_success_summary(result, config: Dict[str, Any], org: str = '') -> bool:
    """
    Send the summary of a completed run.

    Args:
        result: SyncResult of the run
        config: Notification configuration
        org: Organization name for the report
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    subject = "LDAP Org Sync: Successful Completion"
    if result.dry_run:
        subject += " (dry run)"
    return send_email(subject, format_run_summary(result, org), config)


def send_run_failure_summary(result, config: Dict[str, Any], org: str = '') -> bool:
    """Alert for a run that completed with failed actions or reconciliation errors."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False
    return send_email("LDAP Org Sync Alert: Run Completed With Errors",
                      format_run_summary(result, org), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Send a test email to check the notification configuration.

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    body = '\n'.join([
        "This is a test email from LDAP Org Sync.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        "Test details:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
        "",
        "This is an automated test message.",
    ])

    result = send_email("LDAP Org Sync: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
