"""
Management command to list a therapist's free slots on a date.
"""

import uuid

from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from scheduling import services


class Command(BaseCommand):
    help = 'List free session start times for a therapist on a date'

    def add_arguments(self, parser):
        parser.add_argument('therapist_id', help='Therapist UUID')
        parser.add_argument('date', help='Date in YYYY-MM-DD format')
        parser.add_argument(
            '--duration',
            type=int,
            default=60,
            help='Session length in minutes (default: 60)'
        )

    def handle(self, *args, **options):
        try:
            therapist_id = uuid.UUID(options['therapist_id'])
        except ValueError:
            raise CommandError(f"Invalid therapist id: {options['therapist_id']}")

        day = parse_date(options['date'])
        if day is None:
            raise CommandError(f"Invalid date: {options['date']}")

        result = services.check_availability(
            therapist_id=therapist_id,
            service_id=None,
            day=day,
            duration_minutes=options['duration'],
        )

        if result.reason:
            self.stdout.write(self.style.WARNING(result.reason))
            return

        self.stdout.write(
            f"{len(result.available_slots)} free slot(s) of {options['duration']} min on {day}:"
        )
        for slot in result.available_slots:
            self.stdout.write(slot)
