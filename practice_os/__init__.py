"""PracticeOS - appointment scheduling core for multi-practitioner clinics."""

__version__ = "0.1.0"
