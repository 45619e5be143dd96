"""Notifications app module.

Holds the routers for notification jobs and the notification log (``api``,
``api_internal``) and their SQL repositories (``repository``).
"""
