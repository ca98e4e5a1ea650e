"""Release services: validation, analysis, traffic, rollback, and orchestration."""
