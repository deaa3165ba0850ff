"""
Data models for the legal intake service.
"""
from django.db import models


class ChatSession(models.Model):
    """
    One visitor conversation.
    Holds the intake stage, collected answers and the outcome of lead submission.
    """

    class Stage(models.TextChoices):
        INIT = 'INIT', 'Init'
        CATEGORIZED = 'CATEGORIZED', 'Categorized'
        COLLECTING = 'COLLECTING', 'Collecting'
        READY_TO_SUBMIT = 'READY_TO_SUBMIT', 'Ready to submit'
        SUBMITTED = 'SUBMITTED', 'Submitted'

    class LeadStatus(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    session_id = models.CharField(max_length=64, primary_key=True)
    stage = models.CharField(
        max_length=20,
        choices=Stage.choices,
        default=Stage.INIT,
        db_index=True
    )
    main_category = models.CharField(max_length=64, null=True, blank=True)
    sub_category = models.CharField(max_length=64, null=True, blank=True)
    answers = models.JSONField(default=dict, blank=True)
    asked_fields = models.JSONField(default=list, blank=True)
    last_asked_field = models.CharField(max_length=64, null=True, blank=True)
    repeat_count = models.PositiveIntegerField(default=0)
    detection_attempts = models.PositiveIntegerField(default=0)
    ip_address = models.CharField(max_length=64, blank=True, default='')
    user_agent = models.TextField(blank=True, default='')
    landing_page_url = models.TextField(blank=True, default='')
    lead_status = models.CharField(
        max_length=10,
        choices=LeadStatus.choices,
        null=True,
        blank=True
    )
    vendor_response = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    expires_at = models.DateTimeField(db_index=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Session {self.session_id} - {self.stage}"


class TranscriptEntry(models.Model):
    """A single message in a session's conversation history."""

    class Role(models.TextChoices):
        USER = 'user', 'User'
        ASSISTANT = 'assistant', 'Assistant'
        SYSTEM = 'system', 'System'

    session = models.ForeignKey(
        ChatSession,
        on_delete=models.CASCADE,
        related_name='transcript'
    )
    role = models.CharField(max_length=10, choices=Role.choices)
    text = models.TextField()
    metadata = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['session', 'id']

    def __str__(self):
        return f"{self.role}: {self.text[:40]}"


class LeadJob(models.Model):
    """
    Durable queue entry for delivering one completed lead to the vendor.
    Retained after completion for audit until the retention window passes.
    """

    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        PROCESSING = 'processing', 'Processing'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'
        DEAD_LETTER = 'dead_letter', 'Dead letter'

    job_id = models.CharField(max_length=64, unique=True)
    # Weak reference: the queue does not own the session lifecycle.
    session_id = models.CharField(max_length=64, db_index=True)
    category = models.CharField(max_length=64)
    lead_data = models.JSONField()
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.QUEUED,
        db_index=True
    )
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    error = models.TextField(null=True, blank=True)
    vendor_response = models.JSONField(null=True, blank=True)
    enqueued_at = models.DateTimeField(db_index=True)
    claimed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)

    class Meta:
        ordering = ['enqueued_at', 'id']
        indexes = [
            models.Index(fields=['status', 'enqueued_at'], name='intake_job_status_enq_idx'),
        ]

    def __str__(self):
        return f"Job {self.job_id} - {self.status} ({self.attempts}/{self.max_attempts})"


class DeliveryAttempt(models.Model):
    """
    Records each HTTP attempt to deliver a lead job to the vendor.
    Maintains full audit trail of delivery attempts.
    """

    job = models.ForeignKey(
        LeadJob,
        on_delete=models.CASCADE,
        related_name='delivery_attempts'
    )
    attempt_no = models.PositiveIntegerField()
    requested_at = models.DateTimeField(auto_now_add=True)
    request_payload = models.JSONField(null=True, blank=True)
    response_status = models.PositiveIntegerField(null=True, blank=True)
    response_body = models.TextField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    success = models.BooleanField(default=False)

    class Meta:
        ordering = ['job', 'attempt_no']
        indexes = [
            models.Index(fields=['job', 'attempt_no'], name='intake_attempt_job_no_idx'),
        ]

    def __str__(self):
        return f"Attempt {self.attempt_no} for Job {self.job_id} - {'Success' if self.success else 'Failed'}"
