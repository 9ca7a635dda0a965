"""Shared configuration, logging, schemas and errors."""
