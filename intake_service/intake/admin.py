"""
Django admin configuration for intake app.
"""
from django.contrib import admin, messages

from intake.models import ChatSession, DeliveryAttempt, LeadJob, TranscriptEntry
from intake.services.lead_queue import LeadQueue, LeadQueueError


class TranscriptEntryInline(admin.TabularInline):
    """Inline display of the conversation transcript."""
    model = TranscriptEntry
    extra = 0
    readonly_fields = ('created_at', 'role', 'text', 'metadata')
    can_delete = False
    ordering = ('created_at', 'id')


class DeliveryAttemptInline(admin.TabularInline):
    """Inline display of vendor delivery attempts for a job."""
    model = DeliveryAttempt
    extra = 0
    readonly_fields = ('attempt_no', 'requested_at', 'response_status', 'response_body', 'error_message', 'success')
    exclude = ('request_payload',)
    can_delete = False


@admin.register(ChatSession)
class ChatSessionAdmin(admin.ModelAdmin):
    list_display = ('session_id', 'stage', 'main_category', 'sub_category', 'lead_status', 'updated_at')
    list_filter = ('stage', 'main_category', 'lead_status')
    search_fields = ('session_id', 'ip_address')
    readonly_fields = ('session_id', 'created_at', 'updated_at', 'expires_at', 'answers', 'asked_fields',
                       'vendor_response')

    fieldsets = (
        ('Conversation', {
            'fields': ('session_id', 'stage', 'main_category', 'sub_category', 'lead_status')
        }),
        ('Answers', {
            'fields': ('answers', 'asked_fields', 'last_asked_field', 'repeat_count', 'detection_attempts'),
        }),
        ('Visitor', {
            'fields': ('ip_address', 'user_agent', 'landing_page_url'),
            'classes': ('collapse',)
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at', 'expires_at', 'vendor_response'),
            'classes': ('collapse',)
        }),
    )

    inlines = [TranscriptEntryInline]

    def has_add_permission(self, request):
        """Sessions are only created by the chat endpoint."""
        return False


@admin.register(LeadJob)
class LeadJobAdmin(admin.ModelAdmin):
    list_display = ('job_id', 'session_id', 'category', 'status', 'attempts', 'max_attempts', 'enqueued_at')
    list_filter = ('status', 'category')
    search_fields = ('job_id', 'session_id', 'error')
    readonly_fields = ('job_id', 'session_id', 'category', 'status', 'attempts', 'max_attempts', 'error',
                       'lead_data', 'vendor_response', 'enqueued_at', 'claimed_at', 'completed_at',
                       'created_at', 'updated_at', 'expires_at')
    actions = ['requeue_jobs']

    fieldsets = (
        ('Status', {
            'fields': ('job_id', 'session_id', 'category', 'status', 'attempts', 'max_attempts', 'error')
        }),
        ('Timestamps', {
            'fields': ('enqueued_at', 'claimed_at', 'completed_at', 'created_at', 'updated_at', 'expires_at')
        }),
        ('Payloads', {
            'fields': ('lead_data', 'vendor_response'),
            'classes': ('collapse',)
        }),
    )

    inlines = [DeliveryAttemptInline]

    @admin.action(description="Requeue selected failed or dead-lettered jobs")
    def requeue_jobs(self, request, queryset):
        queue = LeadQueue()
        requeued = 0
        for job in queryset:
            try:
                queue.requeue(job.job_id)
            except LeadQueueError as e:
                self.message_user(request, str(e), level=messages.WARNING)
                continue
            requeued += 1
        if requeued:
            self.message_user(request, f"Requeued {requeued} jobs")

    def has_add_permission(self, request):
        """Jobs are only created by submission."""
        return False

    def has_delete_permission(self, request, obj=None):
        """Jobs are retained for audit and removed by the cleanup task."""
        return False
