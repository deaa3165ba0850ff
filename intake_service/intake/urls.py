"""
URL configuration for intake app.
"""
from django.urls import path
from intake.views import ChatResetView, ChatSubmitView, ChatView, ProcessLeadsView, SessionStatusView

urlpatterns = [
    path('chat/', ChatView.as_view(), name='chat'),
    path('chat/reset/', ChatResetView.as_view(), name='chat-reset'),
    path('chat/submit/', ChatSubmitView.as_view(), name='chat-submit'),
    path('chat/<str:session_id>/status/', SessionStatusView.as_view(), name='chat-status'),
    path('cron/process-leads/', ProcessLeadsView.as_view(), name='cron-process-leads'),
]
