"""Shared configuration, logging, and provider client helpers."""
