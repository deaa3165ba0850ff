# Generated migration for ChatSession, TranscriptEntry, LeadJob and DeliveryAttempt models

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='ChatSession',
            fields=[
                ('session_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('stage', models.CharField(choices=[('INIT', 'Init'), ('CATEGORIZED', 'Categorized'), ('COLLECTING', 'Collecting'), ('READY_TO_SUBMIT', 'Ready to submit'), ('SUBMITTED', 'Submitted')], db_index=True, default='INIT', max_length=20)),
                ('main_category', models.CharField(blank=True, max_length=64, null=True)),
                ('sub_category', models.CharField(blank=True, max_length=64, null=True)),
                ('answers', models.JSONField(blank=True, default=dict)),
                ('asked_fields', models.JSONField(blank=True, default=list)),
                ('last_asked_field', models.CharField(blank=True, max_length=64, null=True)),
                ('repeat_count', models.PositiveIntegerField(default=0)),
                ('detection_attempts', models.PositiveIntegerField(default=0)),
                ('ip_address', models.CharField(blank=True, default='', max_length=64)),
                ('user_agent', models.TextField(blank=True, default='')),
                ('landing_page_url', models.TextField(blank=True, default='')),
                ('lead_status', models.CharField(blank=True, choices=[('queued', 'Queued'), ('sent', 'Sent'), ('failed', 'Failed')], max_length=10, null=True)),
                ('vendor_response', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('expires_at', models.DateTimeField(db_index=True)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='LeadJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('job_id', models.CharField(max_length=64, unique=True)),
                ('session_id', models.CharField(db_index=True, max_length=64)),
                ('category', models.CharField(max_length=64)),
                ('lead_data', models.JSONField()),
                ('status', models.CharField(choices=[('queued', 'Queued'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed'), ('dead_letter', 'Dead letter')], db_index=True, default='queued', max_length=20)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('max_attempts', models.PositiveIntegerField(default=3)),
                ('error', models.TextField(blank=True, null=True)),
                ('vendor_response', models.JSONField(blank=True, null=True)),
                ('enqueued_at', models.DateTimeField(db_index=True)),
                ('claimed_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('expires_at', models.DateTimeField(blank=True, db_index=True, null=True)),
            ],
            options={
                'ordering': ['enqueued_at', 'id'],
                'indexes': [models.Index(fields=['status', 'enqueued_at'], name='intake_job_status_enq_idx')],
            },
        ),
        migrations.CreateModel(
            name='TranscriptEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('user', 'User'), ('assistant', 'Assistant'), ('system', 'System')], max_length=10)),
                ('text', models.TextField()),
                ('metadata', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('session', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='transcript', to='intake.chatsession')),
            ],
            options={
                'ordering': ['session', 'id'],
            },
        ),
        migrations.CreateModel(
            name='DeliveryAttempt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('attempt_no', models.PositiveIntegerField()),
                ('requested_at', models.DateTimeField(auto_now_add=True)),
                ('request_payload', models.JSONField(blank=True, null=True)),
                ('response_status', models.PositiveIntegerField(blank=True, null=True)),
                ('response_body', models.TextField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('success', models.BooleanField(default=False)),
                ('job', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='delivery_attempts', to='intake.leadjob')),
            ],
            options={
                'ordering': ['job', 'attempt_no'],
                'indexes': [models.Index(fields=['job', 'attempt_no'], name='intake_attempt_job_no_idx')],
            },
        ),
    ]
