"""
Django Management Command: Compliance Statistics

Prints compliance classification counts for each active unit, or for one
unit, as of today or a given date.

Usage:
    python manage.py compliance_statistics                   # Every active unit
    python manage.py compliance_statistics --unit 4          # A single unit
    python manage.py compliance_statistics --date 2025-06-30 # As of a date
    python manage.py compliance_statistics --json            # Machine-readable output
"""

import json
from datetime import date

from django.core.management.base import BaseCommand, CommandError
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from accounts.models import Unit
from compliance.config import EngineConfig
from compliance.credit_engine import get_compliance_statistics
from compliance.queries import active_practitioner_ids_by_unit


class Command(BaseCommand):
    help = 'Show compliance statistics per unit'

    def add_arguments(self, parser):
        parser.add_argument(
            '--unit',
            type=int,
            metavar='ID',
            help='Only report this unit',
        )
        parser.add_argument(
            '--date',
            type=str,
            metavar='YYYY-MM-DD',
            help='Evaluate cycles as of this date (default: today)',
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help='Print one JSON document instead of a table',
        )

    def handle(self, *args, **options):
        today = self._parse_date(options['date'])
        config = EngineConfig.from_settings()

        units = Unit.objects.filter(is_active=True).order_by('name')
        if options['unit'] is not None:
            units = units.filter(pk=options['unit'])
            if not units.exists():
                raise CommandError(f"Unit {options['unit']} does not exist or is inactive")

        units = list(units)
        practitioners = active_practitioner_ids_by_unit([unit.id for unit in units])

        report = []
        for unit in units:
            stats = get_compliance_statistics(practitioners[unit.id], today, config)
            report.append({'unit_id': unit.id, 'unit_name': unit.name, **stats.as_dict()})

        if options['json']:
            self.stdout.write(json.dumps(
                {'date': today, 'units': report}, cls=DjangoJSONEncoder, indent=2
            ))
            return

        self.stdout.write(self.style.SUCCESS(f'Compliance statistics as of {today}'))
        self.stdout.write('=' * 80)
        self.stdout.write(
            f"{'Unit':<30} {'Total':>6} {'OK':>6} {'Risk':>6} {'Non':>6} {'None':>6} {'Avg %':>8}"
        )
        self.stdout.write('-' * 80)
        for row in report:
            self.stdout.write(
                f"{row['unit_name'][:30]:<30} {row['total']:>6} {row['compliant']:>6} "
                f"{row['at_risk']:>6} {row['non_compliant']:>6} {row['unclassified']:>6} "
                f"{row['average_completion']:>8}"
            )

    def _parse_date(self, value):
        if not value:
            return timezone.localdate()
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise CommandError(f'Invalid date: {value}. Use YYYY-MM-DD.')
