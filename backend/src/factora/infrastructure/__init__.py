"""
Infrastructure package - Record store interface and its SQLAlchemy implementation.
"""
