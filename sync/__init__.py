"""
Sync - reconciliation engine, status tracking, cursor persistence and scheduling
"""
