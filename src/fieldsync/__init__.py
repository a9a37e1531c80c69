"""Appointment and quote reconciliation between a field-service system and a CRM."""

__version__ = "0.1.0"
