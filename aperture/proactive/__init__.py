"""Proactive triggers: cron heartbeats, dropped event files, reconciliation."""
