"""Licenses app module.

Holds the router for license records, verification, renewal and reminder
dispatch (``api``) and its SQL repository (``repository``).
"""
