"""Persistence for jobs, candidates, duplicate matches, and corpus entities."""
