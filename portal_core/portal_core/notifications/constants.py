"""Timing constants for deadline reminders.

Kept here so they can be promoted to per-plan or per-portal configuration
without touching the sweep itself.  ``portal_core.config.Settings`` reads
these as defaults.
"""

from __future__ import annotations

# Days between "today" and the due date that triggers a reminder.
REMINDER_HORIZON_DAYS = 7

# Minimum spacing between two deadline reminders for the same portal.
DEDUP_WINDOW_HOURS = 24
