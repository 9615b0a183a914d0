import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models
from django.db.models import Q


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Visitor",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("category", models.CharField(choices=[("day_guest", "Day Guest"), ("accommodation_guest", "Accommodation Guest"), ("supplier", "Supplier"), ("reciprocating_member", "Reciprocating Member")], db_index=True, max_length=30)),
                ("name", models.CharField(max_length=255)),
                ("phone", models.CharField(help_text="Normalized phone number, unique within the category", max_length=50)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("identity_document", models.CharField(blank=True, help_text="ID/passport number bound at first sign-in", max_length=100, null=True)),
                ("status", models.CharField(choices=[("active", "Active"), ("suspended", "Suspended"), ("banned", "Banned")], default="active", max_length=20)),
                ("suspension_reason", models.CharField(blank=True, choices=[("quota", "Visit limit reached"), ("manual", "Suspended by staff")], help_text="Why the visitor is suspended; only quota suspensions are lifted by the reset jobs", max_length=20, null=True)),
                ("receive_emails", models.BooleanField(default=False)),
                ("receive_messages", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Visitor",
                "verbose_name_plural": "Visitors",
                "db_table": "visits_visitors",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Visit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("host_id", models.CharField(blank=True, db_index=True, help_text="Reference of the sponsoring member in the external identity system (day guests only)", max_length=64, null=True)),
                ("visit_date", models.DateField()),
                ("status", models.CharField(choices=[("unapproved", "Unapproved"), ("approved", "Approved"), ("cancelled", "Cancelled")], default="unapproved", max_length=20)),
                ("purpose", models.CharField(blank=True, max_length=50, null=True)),
                ("courtesy", models.BooleanField(default=False, help_text="Courtesy visits have no host but still count toward quotas")),
                ("sign_in_time", models.DateTimeField(blank=True, null=True)),
                ("sign_out_time", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("visitor", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="visits", to="visits.visitor")),
            ],
            options={
                "verbose_name": "Visit",
                "verbose_name_plural": "Visits",
                "db_table": "visits_visits",
                "ordering": ["visit_date", "created_at", "id"],
            },
        ),
        migrations.AddConstraint(
            model_name="visitor",
            constraint=models.UniqueConstraint(fields=("category", "phone"), name="unique_visitor_phone_per_category"),
        ),
        migrations.AddConstraint(
            model_name="visitor",
            constraint=models.UniqueConstraint(condition=Q(("identity_document__isnull", False)), fields=("category", "identity_document"), name="unique_visitor_document_per_category"),
        ),
        migrations.AddIndex(
            model_name="visitor",
            index=models.Index(fields=["category", "status"], name="visits_visitor_cat_status_idx"),
        ),
        migrations.AddConstraint(
            model_name="visit",
            constraint=models.UniqueConstraint(condition=Q(("status", "cancelled"), _negated=True), fields=("visitor", "visit_date"), name="unique_live_visit_per_visitor_date"),
        ),
        migrations.AddIndex(
            model_name="visit",
            index=models.Index(fields=["host_id", "visit_date"], name="visits_visit_host_date_idx"),
        ),
        migrations.AddIndex(
            model_name="visit",
            index=models.Index(fields=["visit_date", "status"], name="visits_visit_date_status_idx"),
        ),
    ]
