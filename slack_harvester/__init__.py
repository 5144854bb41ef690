"""Slack channel history harvester: pagination, thread replies, batching and sink delivery."""

__version__ = "0.1.0"
