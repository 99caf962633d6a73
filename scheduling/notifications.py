"""
Reschedule notifications.

The dispatcher class is configured by ``SCHEDULING['NOTIFICATION_DISPATCHER']``.
Delivery is fire-and-forget: failures are logged and never reach the
reschedule that triggered them.
"""

import logging

from .conf import scheduling_settings

logger = logging.getLogger(__name__)


class LoggingNotificationDispatcher:
    """Records reschedule notifications in the application log."""

    def notify_reschedule(
        self,
        old_session,
        new_session,
        reason: str,
        notify_patient: bool = True,
        notify_therapist: bool = True
    ) -> None:
        recipients = []
        if notify_patient:
            recipients.append(f"patient {new_session.patient_id}")
        if notify_therapist:
            recipients.append(f"therapist {new_session.therapist_id}")

        logger.info(
            "Session %s moved from %s %s to %s %s (%s); notifying %s",
            new_session.pk,
            old_session.scheduled_date,
            old_session.time_label,
            new_session.scheduled_date,
            new_session.time_label,
            reason,
            ", ".join(recipients),
        )


def get_dispatcher():
    """Instantiate the configured dispatcher."""
    return scheduling_settings.dispatcher_class()()


def dispatch_reschedule(
    dispatcher,
    old_session,
    new_session,
    reason: str,
    notify_patient: bool,
    notify_therapist: bool
) -> bool:
    """
    Send reschedule notifications without letting a failure propagate.

    A None dispatcher is resolved from settings inside the guard, so a
    misconfigured dispatcher path is logged like any delivery failure.

    Returns:
        True if the dispatcher accepted the notification
    """
    if not (notify_patient or notify_therapist):
        return False

    try:
        dispatcher = dispatcher or get_dispatcher()
        dispatcher.notify_reschedule(
            old_session,
            new_session,
            reason,
            notify_patient=notify_patient,
            notify_therapist=notify_therapist,
        )
    except Exception:
        logger.exception("Error sending reschedule notifications for session %s", new_session.pk)
        return False
    return True
