"""Calendar domain services: payloads, storage, CRUD and overview orchestration."""
