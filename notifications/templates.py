"""
Email templates — (subject, body) pairs for every notification.

Facilitator mails for log-submitted / grading-updated use the subject and
message carried in the job payload; everything else is rendered here.
"""
from __future__ import annotations

from models.schemas import LogEventPayload, OverdueReminderPayload, WeeklyReminderPayload

SIGNATURE = "Best regards,\nCourse Management Platform"

LOG_SUBMITTED_DEFAULT_SUBJECT = "Log Submission Confirmation"
GRADING_UPDATED_DEFAULT_SUBJECT = "Grading Status Updated"

Email = tuple[str, str]


# ── Facilitator ──────────────────────────────────────────────

def log_submitted_facilitator(p: LogEventPayload) -> Email:
    return p.subject or LOG_SUBMITTED_DEFAULT_SUBJECT, p.message


def grading_updated_facilitator(p: LogEventPayload) -> Email:
    return p.subject or GRADING_UPDATED_DEFAULT_SUBJECT, p.message


def overdue_facilitator(p: OverdueReminderPayload) -> Email:
    return (
        "URGENT: Overdue Activity Log Reminder",
        f"Dear {p.facilitator_name},\n\n"
        f"This is a reminder that your activity log for week {p.week} "
        f"(Allocation: {p.allocation_id}) is overdue. The deadline was {p.deadline}.\n\n"
        f"Please submit your log as soon as possible.\n\n"
        f"{SIGNATURE}",
    )


def weekly_facilitator(p: WeeklyReminderPayload) -> Email:
    return (
        "Weekly Activity Log Reminder",
        f"Dear {p.facilitator_name},\n\n"
        f"This is a friendly reminder to submit your activity log for week {p.week} "
        f"(Allocation: {p.allocation_id}).\n\n"
        f"The deadline is approaching. Please ensure all grading, moderation, "
        f"and sync tasks are completed and logged.\n\n"
        f"{SIGNATURE}",
    )


# ── Managers ─────────────────────────────────────────────────

def log_submitted_manager(p: LogEventPayload) -> Email:
    return (
        "Activity Log Submitted - Manager Notification",
        f"Facilitator {p.facilitator_name} has submitted their activity log "
        f"for week {p.week} (Allocation: {p.allocation_id})",
    )


def grading_updated_manager(p: LogEventPayload) -> Email:
    return (
        "Grading Status Updated - Manager Notification",
        f"Facilitator {p.facilitator_name} has updated grading status "
        f"for week {p.week} (Allocation: {p.allocation_id})",
    )


def overdue_manager(p: OverdueReminderPayload) -> Email:
    return (
        "URGENT: Overdue Activity Log Alert",
        f"Facilitator {p.facilitator_name} has an overdue activity log for week {p.week} "
        f"(Allocation: {p.allocation_id}). Deadline was {p.deadline}.",
    )


# ── Payload defaults set by the log handlers ─────────────────

def log_submitted_message(week: int) -> Email:
    return "Activity Log Submitted", f"Activity log submitted for week {week}"


def grading_updated_message(week: int) -> Email:
    return "Grading Status Updated", f"Grading status updated for week {week}"
