"""
pgbranch - PostgreSQL database branching for development and testing
"""
__version__ = "1.0.0"
