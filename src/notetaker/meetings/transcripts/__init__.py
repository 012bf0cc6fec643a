"""Transcript retrieval for meetings whose bot finished recording."""
