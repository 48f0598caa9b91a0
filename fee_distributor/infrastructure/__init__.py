"""Adapters to the outside: database sessions, transfer gateway, signing, logging.

Failures leave these modules as DistributorError subclasses from core.errors.
"""
