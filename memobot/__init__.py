"""Telegram chat bot with bounded context, rolling summaries and usage quotas."""
