"""Publish/subscribe transport for telemetry and engine events."""
