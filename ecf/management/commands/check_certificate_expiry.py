"""Management command: Check e-CF signing certificate expiry. Run daily via cron."""

import logging
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from ecf.services import certificate_vault

logger = logging.getLogger("ecf")


class Command(BaseCommand):
    help = "Check the e-CF signing certificate expiry. Alert if < 30 days remaining."

    def add_arguments(self, parser):
        parser.add_argument("--days", type=int, default=30, help="Alert threshold in days")

    def handle(self, *args, **options):
        threshold_days = options["days"]
        now = timezone.now()
        threshold = now + timedelta(days=threshold_days)

        info = certificate_vault.metadata()
        if info is None:
            self.stderr.write("No signing certificate stored")
            return

        label = info["subject"] or info["serial_number"] or "certificate"
        valid_until = info["valid_until"]
        if not valid_until:
            self.stdout.write(f"{label}: no expiry date recorded")
            return
        if valid_until < now:
            logger.error("Signing certificate expired on %s", valid_until)
            self.stderr.write(f"{label}: CERTIFICATE EXPIRED ({valid_until})")
        elif valid_until < threshold:
            logger.warning("Signing certificate expires in %d days", (valid_until - now).days)
            self.stderr.write(f"{label}: Certificate expires in {(valid_until - now).days} days")
        else:
            self.stdout.write(f"{label}: Certificate valid until {valid_until}")
