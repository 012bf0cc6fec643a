"""Bot lifecycle -- bot directory client, status derivation and reconciliation.

Provides RecallClient for the external bot directory, pure derivation of
bot timelines from status histories, and BotReconciler for dispatch,
discovery, polling and withdrawal.
"""
