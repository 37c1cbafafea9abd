"""
DivineNex backend.

Guests publish short posts with an optional attachment. Post metadata lives
in a SQL-backed document store, attachments in S3-compatible blob storage,
and both are garbage-collected once a post's time-to-live elapses.
"""
