"""
Management command to expire trials and paid periods that have ended.

Runs the lifecycle ``expire`` transition for every subscription whose trial
(status trial) or paid period (status active) ended before now. Each owner
is handled independently; one failure does not stop the sweep.

Usage:
    python manage.py expire_subscriptions
    python manage.py expire_subscriptions --dry-run
"""

import logging

from django.core.management.base import BaseCommand
from django.utils import timezone

from piopi.billing.exceptions import BillingError
from piopi.billing.services import get_lifecycle
from piopi.billing.storage import DjangoSubscriptionStore

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Expire subscriptions whose trial or paid period has ended."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be expired without changing anything",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        now = timezone.now()

        owner_ids = DjangoSubscriptionStore().expirable_owner_ids(now)
        count = len(owner_ids)

        if count == 0:
            self.stdout.write(self.style.SUCCESS("No subscriptions to expire."))
            return

        if dry_run:
            self.stdout.write(
                self.style.WARNING(f"[DRY RUN] Would expire {count} subscription(s)."),
            )
            return

        lifecycle = get_lifecycle()
        expired = 0
        failed = 0
        for owner_id in owner_ids:
            try:
                result = lifecycle.expire(owner_id)
            except BillingError as exc:
                failed += 1
                logger.warning("Could not expire subscription of owner=%s: %s", owner_id, exc)
                continue
            if result.changed:
                expired += 1

        self.stdout.write(self.style.SUCCESS(f"Expired {expired} subscription(s)."))
        if failed:
            self.stdout.write(
                self.style.ERROR(f"Failed to expire {failed} subscription(s)."),
            )
