# backend/apps/group_buying/management/commands/process_expired_sessions.py

from django.core.management.base import BaseCommand

from apps.group_buying.services.group_buying_service import GroupBuyingService


class Command(BaseCommand):
    help = """Run the scheduler's group buying passes once, outside Celery Beat.

    By default settles every expired session. With --near-expiration it
    runs the bot pre-fill pass for sessions 8-10 minutes from expiry instead.
    """

    def add_arguments(self, parser):
        parser.add_argument(
            '--near-expiration',
            action='store_true',
            help='Run the near-expiration bot pre-fill instead of settlement',
        )

    def handle(self, *args, **options):
        service = GroupBuyingService()

        if options['near_expiration']:
            result = service.process_sessions_nearing_expiration()
        else:
            result = service.process_expired_sessions()

        rows = result.data or []
        if not rows:
            self.stdout.write('No sessions to process')
            return

        for row in rows:
            line = f"{row['session_code']}: {row['action']}"
            if 'bot_quantity' in row:
                line += f" (bot quantity {row['bot_quantity']})"
            if 'final_tier' in row:
                line += f" (tier {row['final_tier']}, {row['orders_created']} orders)"
            if 'grosir_needed' in row:
                line += f" ({row['grosir_needed']} grosir units needed)"

            style = self.style.ERROR if row['action'] == GroupBuyingService.ACTION_FAILED \
                else self.style.SUCCESS
            self.stdout.write(style(line))

        self.stdout.write(f'Processed {len(rows)} session(s)')
