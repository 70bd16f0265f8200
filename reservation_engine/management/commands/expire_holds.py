from django.core.management.base import BaseCommand

from reservation_engine.settlement import expire_stale_holds


class Command(BaseCommand):
    help = 'Expire unpaid booking holds past their deadline (one sweep; celery beat runs it periodically)'

    def handle(self, *args, **options):
        expired = expire_stale_holds()
        self.stdout.write(
            self.style.SUCCESS(f'Expired {expired} hold(s)')
        )
