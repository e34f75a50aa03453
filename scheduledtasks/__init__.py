"""Cron-driven task group orchestrator with a persistent run history."""
