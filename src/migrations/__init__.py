"""Forward-only SQL migrations for the PostgreSQL manifest store."""
