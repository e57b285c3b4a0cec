"""
Pydantic schemas for validation and serialization.

Schemas:
    records: Insert-ready rows and typed partial updates per entity
    checkpoints: Typed cursors for the fetch stages
    queue: Fail-queue / dead-letter messages
    api: API endpoint responses
"""
