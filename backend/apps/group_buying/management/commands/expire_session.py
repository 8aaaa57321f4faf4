# backend/apps/group_buying/management/commands/expire_session.py

import uuid

from django.core.management.base import BaseCommand, CommandError

from apps.group_buying.services.group_buying_service import GroupBuyingService


class Command(BaseCommand):
    help = 'End a session now and settle it immediately (ops/testing)'

    def add_arguments(self, parser):
        parser.add_argument('session', help='Session id or session code')

    def handle(self, *args, **options):
        service = GroupBuyingService()
        identifier = options['session']

        lookup = service.get_session_by_code(identifier)
        if not lookup.success:
            lookup = service.get_session(identifier) if self._looks_like_uuid(identifier) else lookup
        if not lookup.success:
            raise CommandError(lookup.error)

        session = lookup.data
        result = service.manually_expire_and_process(session.id)
        if not result.success:
            raise CommandError(result.error)

        rows = result.data['process_results']
        if not rows:
            self.stdout.write(self.style.WARNING(
                f'{session.session_code} expired but was not processed (status {session.status})'))
            return

        for row in rows:
            self.stdout.write(self.style.SUCCESS(f"{row['session_code']}: {row['action']}"))

    @staticmethod
    def _looks_like_uuid(value):
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True
