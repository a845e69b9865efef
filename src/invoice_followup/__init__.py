"""
Invoice follow-up service.

A Flask API deployed on Google Cloud Run that schedules payment reminders
and client follow-up emails, delivers them when an external trigger polls,
and correlates engagement and payment events back onto each send.
"""

__version__ = "1.0.0"
