"""Scheduled PushPlus delivery of a login QR code until the login completes."""

__version_label__ = "0.3.0"
__release_date__ = "2026-10-19"
