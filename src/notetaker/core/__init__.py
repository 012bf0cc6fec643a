"""Core infrastructure: database, logging, metrics, batching and job queues."""
