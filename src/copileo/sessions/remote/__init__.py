"""Remote transcription provider -- Vexa bot control and transcript retrieval.

Provides VexaClient, the async facade the session services use to start
and stop bots, pull cumulative transcript snapshots, enumerate running
bots, and register the account-level provider webhook.
"""
