"""Meeting bot reconciliation -- schemas, persistence, bot lifecycle and transcripts.

Keeps calendar events, persisted meeting records and externally hosted
recording bots consistent: dispatches bots with a duplicate guard, links
orphaned bots by URL equivalence, drives the meeting lifecycle from polled
bot status, and retrieves transcripts once a recording completes.
"""
