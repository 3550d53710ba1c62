"""Fluentdesk shared package: settings, database access, models and schemas."""
