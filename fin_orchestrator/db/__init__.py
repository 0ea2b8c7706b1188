# =============================================================================
# Database Package
# =============================================================================
# Provides the SQLAlchemy engine, session management and ORM models backing
# the Job Store.
#
# Key exports:
#   - get_session_factory: lazily built sessionmaker for the Job Store
#   - Base: declarative base for ORM models
#   - JobRecord, TaskRecord, TaskEventRecord: orchestration tables
# =============================================================================
