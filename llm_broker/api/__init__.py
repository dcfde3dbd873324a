"""HTTP surface: thin FastAPI routes over the Orchestrator."""
