# Generated manually - Invoice, InvoiceLine, SigningCertificate, SequenceCounter,
# SubmissionRecord, SubmissionAttempt, AuthorityApiLog

from decimal import Decimal

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("fiscal_number", models.CharField(blank=True, max_length=13, null=True, unique=True)),
                ("document_type", models.CharField(default="01", max_length=2)),
                ("issued_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("currency", models.CharField(default="DOP", max_length=3)),
                ("payment_method", models.CharField(default="1", max_length=2)),
                ("issuer_snapshot", models.JSONField(blank=True, null=True)),
                ("recipient_name", models.CharField(max_length=255)),
                ("recipient_fiscal_id", models.CharField(max_length=11)),
                ("recipient_address", models.TextField(blank=True)),
                ("recipient_email", models.EmailField(blank=True, max_length=254)),
                ("recipient_phone", models.CharField(blank=True, max_length=50)),
                ("subtotal", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=15)),
                ("tax", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=15)),
                ("total", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=15)),
                ("status", models.CharField(
                    choices=[
                        ("DRAFT", "Draft"),
                        ("PENDING", "Pending"),
                        ("SUBMITTING", "Submitting"),
                        ("SUBMITTED", "Submitted"),
                        ("ACCEPTED", "Accepted"),
                        ("REJECTED", "Rejected"),
                        ("FAILED_TRANSIENT", "Failed (transient)"),
                        ("FAILED_FATAL", "Failed (fatal)"),
                    ],
                    db_index=True,
                    default="DRAFT",
                    max_length=20,
                )),
                ("track_id", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("status_detail", models.TextField(blank=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("last_status_check_at", models.DateTimeField(blank=True, null=True)),
                ("signed_document", models.TextField(blank=True, null=True)),
                ("document_digest", models.CharField(blank=True, max_length=64)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"verbose_name": "Invoice", "verbose_name_plural": "Invoices", "ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="InvoiceLine",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("line_number", models.PositiveIntegerField()),
                ("description", models.CharField(max_length=500)),
                ("quantity", models.DecimalField(decimal_places=4, max_digits=15)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=15)),
                ("tax_rate", models.DecimalField(decimal_places=4, default=Decimal("0.18"), max_digits=5)),
                ("invoice", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="lines", to="ecf.invoice")),
            ],
            options={
                "verbose_name": "Invoice Line",
                "verbose_name_plural": "Invoice Lines",
                "ordering": ["invoice", "line_number"],
            },
        ),
        migrations.AddConstraint(
            model_name="invoiceline",
            constraint=models.UniqueConstraint(fields=("invoice", "line_number"), name="ecf_unique_line_number"),
        ),
        migrations.CreateModel(
            name="SigningCertificate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("certificate_blob", models.TextField()),
                ("private_key_blob", models.TextField()),
                ("issuer", models.CharField(blank=True, max_length=500)),
                ("subject", models.CharField(blank=True, max_length=500)),
                ("serial_number", models.CharField(blank=True, max_length=100)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"verbose_name": "Signing Certificate", "verbose_name_plural": "Signing Certificates"},
        ),
        migrations.CreateModel(
            name="SequenceCounter",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("document_type", models.CharField(max_length=2, unique=True)),
                ("next_value", models.PositiveBigIntegerField(default=1)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"verbose_name": "Sequence Counter", "verbose_name_plural": "Sequence Counters"},
        ),
        migrations.CreateModel(
            name="SubmissionRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("track_id", models.CharField(db_index=True, max_length=128)),
                ("submitted_at", models.DateTimeField()),
                ("raw_response", models.JSONField(blank=True, null=True)),
                ("last_checked_at", models.DateTimeField(blank=True, null=True)),
                ("last_status_response", models.JSONField(blank=True, null=True)),
                ("invoice", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="submission", to="ecf.invoice")),
            ],
            options={"verbose_name": "Submission Record", "verbose_name_plural": "Submission Records"},
        ),
        migrations.CreateModel(
            name="SubmissionAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempt_no", models.PositiveIntegerField()),
                ("outcome", models.CharField(
                    choices=[
                        ("SUBMITTED", "Submitted"),
                        ("TRANSIENT", "Transient failure"),
                        ("REJECTED", "Rejected"),
                        ("FATAL", "Fatal failure"),
                    ],
                    max_length=20,
                )),
                ("response_status_code", models.IntegerField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("invoice", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="submission_attempts", to="ecf.invoice")),
            ],
            options={
                "verbose_name": "Submission Attempt",
                "verbose_name_plural": "Submission Attempts",
                "ordering": ["invoice", "attempt_no"],
            },
        ),
        migrations.CreateModel(
            name="AuthorityApiLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("endpoint", models.CharField(max_length=255)),
                ("method", models.CharField(max_length=10)),
                ("request_payload", models.JSONField(default=dict)),
                ("response_payload", models.JSONField(blank=True, null=True)),
                ("status_code", models.IntegerField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("track_id", models.CharField(blank=True, db_index=True, max_length=128)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"verbose_name": "Authority API Log", "verbose_name_plural": "Authority API Logs", "ordering": ["-created_at"]},
        ),
    ]
