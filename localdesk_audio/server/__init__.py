"""HTTP control surface (FastAPI) over the dictation and asset operations."""
