"""Care dispatch core: reminders, emergency alerts, notifications and audit.

This package contains the business logic and domain models,
isolated from storage and delivery channels for easy testing and reasoning.
"""

__version__ = "0.1.0"
