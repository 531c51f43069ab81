"""Service layer: sync engine, storage façade and scheduling."""
