"""
Settings for the scheduling app.

Project settings may override any of these through a ``SCHEDULING`` dict:

    SCHEDULING = {
        'SLOT_INTERVAL_MINUTES': 30,
        'DEFAULT_POLICY': {'allow_weekends': True},
    }

Dict-valued defaults are merged key by key; everything else is replaced.
Values are read on every access so ``override_settings`` works in tests.
"""

from django.conf import settings
from django.utils.module_loading import import_string


DEFAULTS = {
    'SLOT_INTERVAL_MINUTES': 15,
    'SESSION_BUFFER_MINUTES': 0,
    'DEFAULT_OCCURRENCE_CAP': 52,
    'MAX_RECURRENCE_SCAN_DAYS': 3650,
    'RECURRING_CONFLICT_MODE': 'skip',
    'LOCK_STRIPES': 64,
    'NOTIFICATION_DISPATCHER': 'scheduling.notifications.LoggingNotificationDispatcher',
    'DEFAULT_POLICY': {
        'allow_weekends': False,
        'allow_holidays': False,
        'min_advance_days': 1,
        'max_advance_days': 90,
        'preferred_slots': ['09:00', '10:00', '11:00', '14:00', '15:00', '16:00'],
        'avoided_slots': ['12:00', '13:00'],
    },
}

RECURRING_CONFLICT_MODES = ('skip', 'abort')


class SchedulingSettings:
    """Attribute access to ``settings.SCHEDULING`` with defaults."""

    def __getattr__(self, name):
        if name not in DEFAULTS:
            raise AttributeError(f"Invalid scheduling setting: '{name}'")

        user_settings = getattr(settings, 'SCHEDULING', {}) or {}
        default = DEFAULTS[name]
        if isinstance(default, dict):
            return {**default, **user_settings.get(name, {})}
        return user_settings.get(name, default)

    def dispatcher_class(self):
        """Resolve the configured notification dispatcher class."""
        return import_string(self.NOTIFICATION_DISPATCHER)


scheduling_settings = SchedulingSettings()
