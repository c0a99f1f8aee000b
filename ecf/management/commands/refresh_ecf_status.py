"""Management command: poll the authority for submitted invoices and resubmit pending ones."""

from django.core.management.base import BaseCommand

from ecf.services.submission_service import default_pipeline


class Command(BaseCommand):
    help = "Refresh e-CF status for SUBMITTED invoices; with --retry also resubmit PENDING ones."

    def add_arguments(self, parser):
        parser.add_argument("--retry", action="store_true", help="Also resubmit PENDING / FAILED_TRANSIENT invoices")
        parser.add_argument("--invoice", type=int, help="Refresh a single invoice by id")

    def handle(self, *args, **options):
        pipeline = default_pipeline()
        if options.get("invoice"):
            status = pipeline.refresh_status(options["invoice"])
            self.stdout.write(f"Invoice {options['invoice']}: {status}")
            return

        if options["retry"]:
            retried = pipeline.retry_pending()
            self.stdout.write(
                f"Retry: {retried['submitted']} submitted, {retried['pending']} pending, "
                f"{retried['failed']} failed, {retried['skipped']} skipped"
            )

        polled = pipeline.poll_submitted()
        self.stdout.write(
            f"Status: {polled['accepted']} accepted, {polled['rejected']} rejected, "
            f"{polled['processing']} processing, {polled['errors']} errors"
        )
