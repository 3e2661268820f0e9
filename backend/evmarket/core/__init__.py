"""
Core package for configuration, logging, identity and the error taxonomy.
"""
