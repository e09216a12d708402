"""
Reconcile the membership registry against recent on-chain history.

Usage:
  python manage.py backfill_membership_registry --window 2000
"""
from django.core.management.base import BaseCommand

from membership.services import get_issuance_stack


class Command(BaseCommand):
    help = 'Re-scan recent blocks and correct drift in membership registry entries.'

    def add_arguments(self, parser):
        parser.add_argument('--window', type=int, default=None, help='How many blocks to look back from the chain head')

    def handle(self, *args, **options):
        report = get_issuance_stack().synchronizer.backfill(options['window'])
        if report.skipped:
            self.stdout.write(self.style.WARNING('Another backfill is running; nothing done'))
            return

        self.stdout.write(self.style.NOTICE(f"Scanned blocks {report.start_block}-{report.end_block}"))
        self.stdout.write(f"  created:     {report.created}")
        self.stdout.write(f"  corrected:   {report.corrected}")
        self.stdout.write(f"  deactivated: {report.deactivated}")
        self.stdout.write(f"  unchanged:   {report.unchanged}")
        self.stdout.write(self.style.SUCCESS('Backfill complete'))
