"""DayFlow calendar core: recurrence expansion and Google Calendar sync."""

__version__ = "0.1.0"
