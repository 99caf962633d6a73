"""
Admin configuration for the scheduling app.
"""

from django.contrib import admin
from .models import BookedSession, SchedulingRule, WorkingSchedule


@admin.register(WorkingSchedule)
class WorkingScheduleAdmin(admin.ModelAdmin):
    """Admin interface for WorkingSchedule model."""

    list_display = ['therapist_id', 'weekday_name', 'start_time', 'end_time', 'break_start', 'break_end', 'is_active']
    list_filter = ['is_active', 'weekday']
    search_fields = ['therapist_id']

    fieldsets = (
        ('Therapist', {
            'fields': ('therapist_id', 'weekday', 'is_active')
        }),
        ('Working Hours', {
            'fields': ('start_time', 'end_time')
        }),
        ('Break', {
            'fields': ('break_start', 'break_end')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(BookedSession)
class BookedSessionAdmin(admin.ModelAdmin):
    """Admin interface for BookedSession model."""

    list_display = ['therapist_id', 'patient_id', 'scheduled_date', 'scheduled_time', 'duration_minutes', 'status', 'series_id']
    list_filter = ['status', 'scheduled_date']
    search_fields = ['therapist_id', 'patient_id', 'notes']
    date_hierarchy = 'scheduled_date'

    fieldsets = (
        ('Participants', {
            'fields': ('patient_id', 'therapist_id', 'service_id', 'series_id')
        }),
        ('Schedule', {
            'fields': ('scheduled_date', 'scheduled_time', 'duration_minutes')
        }),
        ('Status', {
            'fields': ('status', 'notes')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(SchedulingRule)
class SchedulingRuleAdmin(admin.ModelAdmin):
    """Admin interface for SchedulingRule model."""

    list_display = ['scope', 'scope_id', 'allow_weekends', 'min_advance_days', 'max_advance_days', 'is_active']
    list_filter = ['scope', 'is_active']
    search_fields = ['scope_id']

    fieldsets = (
        ('Scope', {
            'fields': ('scope', 'scope_id', 'is_active')
        }),
        ('Rules', {
            'fields': (
                'allow_weekends',
                'allow_holidays',
                'min_advance_days',
                'max_advance_days',
                'preferred_slots',
                'avoided_slots',
            )
        }),
    )
