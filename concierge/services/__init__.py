"""Service layer - business logic for the messaging pipeline."""
