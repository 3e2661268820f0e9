"""
Database package: declarative base, async connection management and models.
"""
