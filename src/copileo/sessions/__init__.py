"""Bot session and transcript synchronization engine.

Provides the data layer (Pydantic schemas, SQLAlchemy models,
MeetingRepository), the Vexa API client, and the services that keep local
meeting records in sync with remote transcription bots: SessionManager,
TranscriptReconciler, PollScheduler, and WebhookDispatcher.
"""
