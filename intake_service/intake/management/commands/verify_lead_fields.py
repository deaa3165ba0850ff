"""
Compare the vendor payload of a lead job against its practice area schema.

Usage:
    python manage.py verify_lead_fields job_<id>
    python manage.py verify_lead_fields --session <session_id>
"""
import json

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from intake.models import LeadJob
from intake.services.mapping import MissingRequiredFieldError, compare_vendor_fields, map_to_vendor
from intake.services.schema_registry import get_registry


class Command(BaseCommand):
    help = "Show missing, empty and unexpected vendor fields for a lead job"

    def add_arguments(self, parser):
        parser.add_argument('job_id', nargs='?', help="Lead job id")
        parser.add_argument('--session', dest='session_id', help="Use the latest job of this session")
        parser.add_argument('--show-payload', action='store_true', help="Print the mapped vendor payload")

    def handle(self, *args, **options):
        job = self._find_job(options['job_id'], options['session_id'])
        registry = get_registry()
        if not registry.has_category(job.category):
            raise CommandError(f"Job {job.job_id} has unknown category '{job.category}'")

        field_map = settings.LEADPROSPER_FIELD_MAP
        try:
            payload, omitted = map_to_vendor(job.lead_data, field_map, registry.field_formats(job.category))
        except MissingRequiredFieldError as e:
            raise CommandError(str(e)) from e

        report = compare_vendor_fields(payload, job.category, registry, field_map)

        self.stdout.write(f"Job {job.job_id} ({job.category}, {job.status})")
        self.stdout.write(f"Fields submitted: {len(payload)}")
        if options['show_payload']:
            self.stdout.write(json.dumps(payload, indent=2, ensure_ascii=False))
        if omitted:
            self.stdout.write(f"Omitted empty fields: {', '.join(omitted)}")

        for label in ('missing', 'empty', 'unexpected'):
            fields = report[label]
            if fields:
                style = self.style.ERROR if label == 'missing' else self.style.WARNING
                self.stdout.write(style(f"{label.capitalize()}: {', '.join(fields)}"))

        if report['missing']:
            raise CommandError(f"{len(report['missing'])} required fields missing")
        self.stdout.write(self.style.SUCCESS("All required fields present"))

    @staticmethod
    def _find_job(job_id, session_id) -> LeadJob:
        if job_id:
            job = LeadJob.objects.filter(job_id=job_id).first()
        elif session_id:
            job = LeadJob.objects.filter(session_id=session_id).order_by('-created_at', '-id').first()
        else:
            raise CommandError("Provide a job id or --session")
        if job is None:
            raise CommandError("Lead job not found")
        return job
